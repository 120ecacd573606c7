from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from custodian.core.records.models import LegalHold, Record


def make_record(
    *,
    now: datetime,
    record_id: str,
    tenant_id: str = "tenant_alpha",
    policy_name: Optional[str] = "COMPANIES_ACT_7YR",
    due_in: timedelta = timedelta(days=-1),
    hold: Optional[LegalHold] = None,
    size_bytes: int = 1024,
    personal_fields: Optional[Dict[str, Any]] = None,
    filename: str = "",
) -> Record:
    return Record(
        id=record_id,
        tenant_id=tenant_id,
        policy_name=policy_name,
        legal_hold=hold or LegalHold(),
        created_at=now - timedelta(days=365 * 8),
        disposal_due_at=now + due_in,
        size_bytes=size_bytes,
        personal_fields=personal_fields or {},
        filename=filename,
    )
