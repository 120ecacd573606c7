from __future__ import annotations

from typing import Any, Dict, Optional

from custodian.core.clock import Clock, SystemClock, as_utc
from custodian.core.records.models import DisposalStatus
from custodian.core.retention.models import ComplianceReport


class ComplianceReporter:
    """Read-only aggregate view over the record store and the ledger."""

    def __init__(self, *, record_store: Any, chain: Any, resolver: Any, guard: Any, clock: Optional[Clock] = None):
        self.record_store = record_store
        self.chain = chain
        self.resolver = resolver
        self.guard = guard
        self.clock = clock or SystemClock()

    def report(self, tenant_id: str) -> ComplianceReport:
        now = as_utc(self.clock.now())
        total = expired = on_hold = processed = failed = 0
        per_policy: Dict[str, Dict[str, int]] = {name: {"records": 0, "overdue": 0} for name in self.resolver.catalog.names()}

        for rec in self.record_store.iter_records(tenant_id):
            total += 1
            policy, _ = self.resolver.policy_for(rec.policy_name, record_id=rec.id)
            bucket = per_policy.setdefault(policy.name, {"records": 0, "overdue": 0})
            bucket["records"] += 1
            held = not self.guard.check(rec).allowed
            if held:
                on_hold += 1
            if rec.disposal_status == DisposalStatus.PROCESSED:
                processed += 1
            elif rec.disposal_status == DisposalStatus.FAILED:
                failed += 1
            elif rec.disposal_due_at is not None and as_utc(rec.disposal_due_at) <= now and not held:
                # held records are never overdue
                expired += 1
                bucket["overdue"] += 1

        verify = self.chain.verify_report(tenant_id)
        rate = 100 if total == 0 else round((total - expired) / total * 100)
        coverage: Dict[str, Dict[str, object]] = {}
        for name, b in per_policy.items():
            coverage[name] = {
                "records": b["records"],
                "percentage": 0 if total == 0 else round(b["records"] / total * 100),
                "compliant": b["overdue"] == 0,
            }

        recs = []
        if expired:
            recs.append(f"{expired} record(s) are past their disposal date; schedule a retention run.")
        if failed:
            recs.append(f"{failed} record(s) failed disposal; investigate blob store errors.")
        if not verify.ok:
            recs.append("Audit ledger failed verification; escalate as a potential tampering incident.")

        return ComplianceReport(
            tenant_id=tenant_id,
            generated_at=now,
            total_records=total,
            expired_unprocessed=expired,
            on_hold=on_hold,
            processed=processed,
            failed=failed,
            chain_valid=verify.ok,
            chain_entries=self.chain.count(tenant_id),
            compliance_rate=int(rate),
            policy_coverage=coverage,
            recommendations=recs,
        )
