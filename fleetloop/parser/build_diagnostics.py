"""
Build Diagnostics Parser
========================
Converts raw compiler output into structured BuildDiagnostic objects.

Pipeline:
    1. Split output into lines
    2. Detect rustc headline lines (``error[E0308]: mismatched types``)
    3. Attach the following ``--> file:line:col`` location to the headline
    4. Normalize file paths (workspace-relative, forward slashes)
    5. Drop summary noise (``aborting due to``, ``could not compile``)
    6. Deduplicate by (file_path, line_number, code, message)

Contract:
    - DETERMINISTIC: same output → same diagnostics, always.
    - Regex only. Tolerant: partial results, never raises.
"""
import re
import logging
from typing import List

from fleetloop.models.build_diagnostic import BuildDiagnostic

logger = logging.getLogger(__name__)

_HEADLINE = re.compile(r"^(error|warning)(?:\[(E\d{4})\])?:\s*(.+)$")
_LOCATION = re.compile(r"^\s*-->\s+(.+?):(\d+):(\d+)\s*$")
_NOISE_PREFIXES = (
    "aborting due to",
    "could not compile",
    "build failed",
)


def normalize_path(raw_path: str, workspace_path: str = "") -> str:
    """Workspace-relative path with forward slashes."""
    path = raw_path.strip().strip("'\"").replace("\\", "/")
    if workspace_path:
        ws = workspace_path.replace("\\", "/").rstrip("/")
        if path.startswith(ws):
            path = path[len(ws):]
    # docker-mode builds report container paths
    if path.startswith("/workspace/"):
        path = path[len("/workspace/"):]
    return path.lstrip("/")


def parse_build_output(output: str, workspace_path: str = "",
                       include_warnings: bool = False) -> List[BuildDiagnostic]:
    """
    Parse cargo / rustc output.

    Parameters
    ----------
    output : str
        Combined stdout + stderr of the build.
    workspace_path : str
        Prefix stripped from reported paths.
    include_warnings : bool
        Keep ``warning`` diagnostics as well as errors.

    Returns
    -------
    list[BuildDiagnostic]
        Errors first, in order of appearance.
    """
    diagnostics: List[BuildDiagnostic] = []
    current = None

    for line in output.splitlines():
        headline = _HEADLINE.match(line.strip())
        if headline:
            level, code, message = headline.group(1), headline.group(2) or "", headline.group(3).strip()
            if message.lower().startswith(_NOISE_PREFIXES):
                current = None
                continue
            current = BuildDiagnostic(level=level, code=code, message=message)
            diagnostics.append(current)
            continue

        location = _LOCATION.match(line)
        if location and current is not None and not current.file_path:
            current.file_path = normalize_path(location.group(1), workspace_path)
            current.line_number = int(location.group(2))
            current.column = int(location.group(3))

    seen = set()
    unique: List[BuildDiagnostic] = []
    for diag in diagnostics:
        if diag.level == "warning" and not include_warnings:
            continue
        key = (diag.file_path, diag.line_number, diag.code, diag.message)
        if key in seen:
            continue
        seen.add(key)
        unique.append(diag)

    unique.sort(key=lambda d: 0 if d.level == "error" else 1)
    logger.debug("Parsed %d build diagnostics", len(unique))
    return unique
