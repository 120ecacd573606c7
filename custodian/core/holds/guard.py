from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from custodian.core.clock import Clock, SystemClock, as_utc


@dataclass(frozen=True)
class HoldDecision:
    allowed: bool
    reason: str = ""


ALLOW = HoldDecision(allowed=True, reason="no_active_hold")


class LegalHoldGuard:
    """
    Veto gate for disposal.

    A hold with no expiry never lapses. Any failure while evaluating a hold
    is reported as a block: an unreadable hold is treated as an active one.
    """

    def __init__(self, *, tenant_holds: Any = None, clock: Optional[Clock] = None, logger=None):
        # tenant_holds: anything exposing get_tenant_hold(tenant_id) (the record store)
        self.tenant_holds = tenant_holds
        self.clock = clock or SystemClock()
        self.logger = logger

    def _hold_in_force(self, active: bool, expires_at) -> bool:
        if not active:
            return False
        if expires_at is None:
            return True
        return as_utc(expires_at) > as_utc(self.clock.now())

    def check(self, record: Any) -> HoldDecision:
        try:
            hold = record.legal_hold
            if hold is None:
                return ALLOW
            if self._hold_in_force(bool(hold.active), hold.expires_at):
                reason = "legal_hold_active" if hold.expires_at is None else "legal_hold_until_expiry"
                return HoldDecision(allowed=False, reason=reason)
            return ALLOW
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.error(f"hold check failed for record {getattr(record, 'id', '?')}: {e}; treating as held")
            return HoldDecision(allowed=False, reason="hold_check_failed")

    def check_tenant(self, tenant_id: str) -> HoldDecision:
        if self.tenant_holds is None:
            return ALLOW
        try:
            hold = self.tenant_holds.get_tenant_hold(tenant_id)
            if hold is not None and bool(hold.active):
                return HoldDecision(allowed=False, reason="tenant_hold_active")
            return ALLOW
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.error(f"tenant hold lookup failed for {tenant_id}: {e}; treating as held")
            return HoldDecision(allowed=False, reason="hold_check_failed")
