from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from custodian.core.clock import as_utc
from custodian.core.policy.models import DisposalMethod


class DisposalStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


# PENDING is the only state with outgoing transitions.
ALLOWED_TRANSITIONS = {
    DisposalStatus.PENDING: frozenset({DisposalStatus.PROCESSED, DisposalStatus.FAILED}),
    DisposalStatus.PROCESSED: frozenset(),
    DisposalStatus.FAILED: frozenset(),
}


class LegalHold(BaseModel):
    model_config = ConfigDict(extra="forbid")

    active: bool = False
    expires_at: Optional[datetime] = None
    reason: str = ""

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None


class TenantHold(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    active: bool = True
    reason: str = ""
    placed_at: datetime
    released_at: Optional[datetime] = None


class Record(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    policy_name: Optional[str] = None
    legal_hold: LegalHold = Field(default_factory=LegalHold)
    created_at: Optional[datetime] = None
    disposal_due_at: Optional[datetime] = None
    disposal_status: DisposalStatus = DisposalStatus.PENDING
    size_bytes: int = Field(default=0, ge=0)
    disposal_method_used: Optional[DisposalMethod] = None
    disposal_at: Optional[datetime] = None
    archive_ref: Optional[str] = None
    filename: str = ""
    personal_fields: Dict[str, Any] = Field(default_factory=dict)
    redacted: bool = False

    @field_validator("created_at", "disposal_due_at", "disposal_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None
