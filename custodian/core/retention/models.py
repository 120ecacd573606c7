from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from custodian.core.disposal.certificate import DisposalCertificate


class RunStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PAUSED = "PAUSED"
    INTERRUPTED = "INTERRUPTED"
    ABORTED = "ABORTED"


@dataclass
class RunOptions:
    batch_size: Optional[int] = None
    max_workers: Optional[int] = None
    deadline: Optional[datetime] = None
    policy_name: Optional[str] = None
    dry_run: bool = False
    cancel: threading.Event = field(default_factory=threading.Event)


class RecordFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str
    reason: str
    stage: str = ""


class CleanupRun(BaseModel):
    """Result of one tenant batch. Owned by the caller."""

    model_config = ConfigDict(extra="forbid")

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    status: RunStatus = RunStatus.COMPLETED
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    eligible: int = 0
    processed: int = 0
    deleted: int = 0
    archived: int = 0
    failed: int = 0
    skipped: int = 0
    storage_freed_bytes: int = 0
    failures: List[RecordFailure] = Field(default_factory=list)
    disposed_record_ids: List[str] = Field(default_factory=list)
    methods: Dict[str, str] = Field(default_factory=dict)
    certificate: Optional[DisposalCertificate] = None
    message: str = ""

    def summary(self) -> Dict[str, object]:
        return self.model_dump(mode="json", exclude={"failures", "disposed_record_ids", "methods", "certificate"}) | {
            "failures": len(self.failures),
            "certificate_id": self.certificate.certificate_id if self.certificate else None,
        }


class ComplianceReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    generated_at: datetime
    total_records: int = 0
    expired_unprocessed: int = 0
    on_hold: int = 0
    processed: int = 0
    failed: int = 0
    chain_valid: bool = True
    chain_entries: int = 0
    compliance_rate: int = 100
    policy_coverage: Dict[str, Dict[str, object]] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
