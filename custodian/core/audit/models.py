from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditAction(str, Enum):
    HOLD_BLOCKED = "HOLD_BLOCKED"
    REDACTED = "REDACTED"
    DISPOSED = "DISPOSED"
    DISPOSAL_FAILED = "DISPOSAL_FAILED"
    RUN_PAUSED = "RUN_PAUSED"
    RUN_INTERRUPTED = "RUN_INTERRUPTED"


class AuditChainEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    sequence_index: int = Field(ge=0)
    tenant_id: str
    record_id: str = ""
    action: AuditAction
    timestamp_utc: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    payload_hash: str
    previous_entry_hash: str = ""
    entry_hash: str


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at: Optional[int] = None
    message: str = ""
    head_hash: Optional[str] = None
