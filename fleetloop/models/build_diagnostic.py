"""
Build Diagnostic Model
======================
One compiler message parsed out of a failed local build.

Fields:
    level       — "error" or "warning"
    code        — rustc error code (e.g. "E0308"), empty when absent
    message     — headline message
    file_path   — workspace-relative source file
    line_number — 1-based line, 0 when unknown
    column      — 1-based column, 0 when unknown
"""
from pydantic import BaseModel


class BuildDiagnostic(BaseModel):
    level: str = "error"
    code: str = ""
    message: str = ""
    file_path: str = ""
    line_number: int = 0
    column: int = 0

    def location(self) -> str:
        if not self.file_path:
            return ""
        return f"{self.file_path}:{self.line_number}:{self.column}"
