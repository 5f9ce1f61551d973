"""
Fix Record Model
Append-only record of a committed fix: what was wrong and which change fixed it.
"""
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class FixRecord(BaseModel):
    fix_id: str
    description: str            # root-cause summary + rationale
    change_ref: str = ""        # commit sha
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Unfixable(BaseModel):
    """The fix controller could not produce a change; escalate to the operator."""
    reason: str
    attempts: int = 0
