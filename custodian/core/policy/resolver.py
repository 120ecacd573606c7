from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from custodian.core.clock import Clock, SystemClock, add_years, as_utc
from custodian.core.errors import PolicyNotFoundError
from custodian.core.policy.catalog import PolicyCatalog
from custodian.core.policy.models import RetentionPolicy


@dataclass(frozen=True)
class Resolution:
    policy: RetentionPolicy
    is_eligible: bool
    used_fallback: bool = False


class PolicyResolver:
    """
    Maps a record to its retention policy and decides disposal eligibility.

    Never raises for a missing or unknown policy: the catalog fallback is
    used and a warning is logged.
    """

    def __init__(self, *, catalog: PolicyCatalog, clock: Optional[Clock] = None, logger=None):
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.logger = logger

    def policy_for(self, policy_name: Optional[str], *, record_id: str = "") -> tuple[RetentionPolicy, bool]:
        if not policy_name:
            if self.logger:
                self.logger.warning(f"record {record_id or '?'} has no retention policy; using {self.catalog.fallback().name}")
            return self.catalog.fallback(), True
        try:
            return self.catalog.get_policy(policy_name), False
        except PolicyNotFoundError:
            if self.logger:
                self.logger.warning(f"record {record_id or '?'} references unknown policy {policy_name!r}; using {self.catalog.fallback().name}")
            return self.catalog.fallback(), True

    def resolve(self, record: Any) -> Resolution:
        policy, used_fallback = self.policy_for(getattr(record, "policy_name", None), record_id=str(getattr(record, "id", "")))
        due = getattr(record, "disposal_due_at", None)
        eligible = due is not None and as_utc(self.clock.now()) >= as_utc(due)
        return Resolution(policy=policy, is_eligible=bool(eligible), used_fallback=used_fallback)

    def disposal_due_at(self, created_at: datetime, policy_name: Optional[str]) -> datetime:
        policy, _ = self.policy_for(policy_name)
        return add_years(as_utc(created_at), policy.retention_years)
