from __future__ import annotations

from datetime import timedelta

import pytest

from custodian.core.audit.hasher import compute_record_hash
from custodian.core.audit.models import AuditAction
from custodian.core.disposal.certificate import verify_certificate
from custodian.core.errors import RecordStoreError, ValidationError
from custodian.core.holds.guard import LegalHoldGuard
from custodian.core.records.models import DisposalStatus, LegalHold
from custodian.core.retention.models import RunOptions, RunStatus
from custodian.core.retention.orchestrator import RetentionCleanupOrchestrator
from custodian.core.run_log import RunLogger

from .helpers.builders import make_record
from .helpers.fakes import FakeBlobStore

T = "tenant_alpha"


def _actions(chain, tenant=T):
    return [e.action for e in chain.entries(tenant)]


def test_expired_record_is_securely_deleted(orchestrator, record_store, chain, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1", size_bytes=2048))

    run = orchestrator.run(T)

    assert run.status == RunStatus.COMPLETED
    assert (run.processed, run.deleted, run.archived, run.failed, run.skipped) == (1, 1, 0, 0, 0)
    assert run.storage_freed_bytes == 2048
    assert blobs.deleted == ["doc-1"]
    rec = record_store.get("doc-1")
    assert rec.disposal_status == DisposalStatus.PROCESSED
    assert rec.disposal_method_used.value == "SECURE_DELETION"
    assert _actions(chain) == [AuditAction.DISPOSED]
    entry = chain.entries(T)[0]
    assert entry.record_id == "doc-1"
    assert entry.payload["legal_reference"] == "Companies Act 71 of 2008, Section 24"
    assert chain.verify(T) is True


def test_open_ended_hold_blocks_disposal(orchestrator, record_store, chain, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1", hold=LegalHold(active=True, expires_at=None, reason="litigation")))

    run = orchestrator.run(T)

    assert run.processed == 0
    assert run.skipped == 1
    assert blobs.calls == 0
    assert record_store.get("doc-1").disposal_status == DisposalStatus.PENDING
    entries = chain.entries(T)
    assert [e.action for e in entries] == [AuditAction.HOLD_BLOCKED]
    assert entries[0].record_id == "doc-1"
    assert entries[0].payload["reason"] == "legal_hold_active"


def test_lapsed_hold_does_not_block(orchestrator, record_store, chain, clock):
    hold = LegalHold(active=True, expires_at=clock.now() - timedelta(hours=1))
    record_store.add(make_record(now=clock.now(), record_id="doc-1", hold=hold))

    run = orchestrator.run(T)

    assert run.deleted == 1
    assert _actions(chain) == [AuditAction.DISPOSED]


def test_tenant_hold_pauses_run_without_touching_records(orchestrator, record_store, chain, blobs, clock):
    for i in range(3):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}"))
    record_store.place_tenant_hold(T, reason="regulator inquiry", now=clock.now())

    run = orchestrator.run(T)

    assert run.status == RunStatus.PAUSED
    assert (run.processed, run.deleted, run.skipped) == (0, 0, 0)
    assert blobs.calls == 0
    assert all(r.disposal_status == DisposalStatus.PENDING for r in record_store.iter_records(T))
    assert _actions(chain) == [AuditAction.RUN_PAUSED]
    assert chain.entries(T)[0].record_id == ""

    record_store.release_tenant_hold(T, now=clock.now())
    run2 = orchestrator.run(T)
    assert run2.status == RunStatus.COMPLETED
    assert run2.deleted == 3


def test_one_blob_failure_does_not_abort_batch(orchestrator, record_store, chain, blobs, clock):
    for i in range(3):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}", due_in=timedelta(days=-(10 - i))))
    blobs.fail_delete.add("doc-1")

    run = orchestrator.run(T)

    assert (run.processed, run.deleted, run.failed) == (3, 2, 1)
    assert [f.record_id for f in run.failures] == ["doc-1"]
    assert record_store.get("doc-1").disposal_status == DisposalStatus.FAILED
    assert record_store.get("doc-0").disposal_status == DisposalStatus.PROCESSED
    assert record_store.get("doc-2").disposal_status == DisposalStatus.PROCESSED
    failed = [e for e in chain.entries(T) if e.action == AuditAction.DISPOSAL_FAILED]
    assert len(failed) == 1
    assert failed[0].record_id == "doc-1"
    assert failed[0].payload["stage"] == "blob_delete"
    assert sorted(a.value for a in _actions(chain)) == ["DISPOSAL_FAILED", "DISPOSED", "DISPOSED"]
    assert chain.verify(T) is True


def test_redact_then_delete_journals_redaction_before_disposal(orchestrator, record_store, chain, clock):
    fields = {"full_name": "Thandi Nkosi", "email": "thandi@example.co.za", "matter": "ref 8001015009087"}
    record_store.add(make_record(now=clock.now(), record_id="paia-1", policy_name="PAIA_5YR", personal_fields=fields, filename="request_nkosi.pdf"))

    run = orchestrator.run(T)

    assert run.deleted == 1
    entries = chain.entries(T)
    assert [e.action for e in entries] == [AuditAction.REDACTED, AuditAction.DISPOSED]
    assert entries[0].record_id == entries[1].record_id == "paia-1"
    assert entries[1].previous_entry_hash == entries[0].entry_hash
    assert "Thandi" not in str(entries[0].payload)
    rec = record_store.get("paia-1")
    assert rec.redacted is True
    assert rec.personal_fields["email"] == "***@example.co.za"
    assert rec.filename == "REDACTED_osi.pdf"


def test_archive_policies_record_archive_refs(orchestrator, record_store, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="lpc-1", policy_name="LPC_6YR", size_bytes=100))
    record_store.add(make_record(now=clock.now(), record_id="perm-1", policy_name="PERMANENT", size_bytes=100))

    run = orchestrator.run(T)

    assert (run.processed, run.archived, run.deleted) == (2, 2, 0)
    # permanent archive keeps the bytes, so only the archive-then-delete frees space
    assert run.storage_freed_bytes == 100
    assert record_store.get("lpc-1").archive_ref == "archive/lpc-1"
    assert record_store.get("perm-1").archive_ref == "cold/perm-1"


def test_second_run_is_a_no_op(orchestrator, record_store, chain, blobs, clock):
    for i in range(4):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}"))
    first = orchestrator.run(T)
    calls = blobs.calls
    entries = len(chain.entries(T))

    second = orchestrator.run(T)

    assert first.processed == 4
    assert second.processed == 0
    assert blobs.calls == calls
    assert len(chain.entries(T)) == entries


def test_failed_records_are_not_retried(orchestrator, record_store, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1"))
    blobs.fail_delete.add("doc-1")
    orchestrator.run(T)
    blobs.fail_delete.clear()

    run = orchestrator.run(T)

    assert run.processed == 0
    assert record_store.get("doc-1").disposal_status == DisposalStatus.FAILED


def test_records_not_yet_due_are_left_alone(orchestrator, record_store, chain, clock):
    record_store.add(make_record(now=clock.now(), record_id="future", due_in=timedelta(days=30)))

    run = orchestrator.run(T)

    assert run.eligible == 0
    assert chain.entries(T) == []

    clock.advance(days=31)
    assert orchestrator.run(T).deleted == 1


def test_unknown_policy_falls_back_and_warns(orchestrator, record_store, chain, logger, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1", policy_name="RETIRED_POLICY"))

    run = orchestrator.run(T)

    assert run.deleted == 1
    assert any("RETIRED_POLICY" in w for w in logger.warnings)
    payload = chain.entries(T)[0].payload
    assert payload["policy"] == "COMPANIES_ACT_7YR"
    assert payload["fallback_policy"] is True


def test_policy_filter_limits_the_batch(orchestrator, record_store, clock):
    record_store.add(make_record(now=clock.now(), record_id="c-1", policy_name="COMPANIES_ACT_7YR"))
    record_store.add(make_record(now=clock.now(), record_id="l-1", policy_name="LPC_6YR"))

    run = orchestrator.run(T, RunOptions(policy_name="LPC_6YR"))

    assert run.processed == 1
    assert record_store.get("l-1").disposal_status == DisposalStatus.PROCESSED
    assert record_store.get("c-1").disposal_status == DisposalStatus.PENDING


def test_batch_size_bounds_work_per_run(orchestrator, record_store, clock):
    for i in range(5):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}", due_in=timedelta(days=-(10 - i))))

    run = orchestrator.run(T, RunOptions(batch_size=2))

    assert run.processed == 2
    # oldest due first
    assert record_store.get("doc-0").disposal_status == DisposalStatus.PROCESSED
    assert record_store.get("doc-1").disposal_status == DisposalStatus.PROCESSED
    assert record_store.get("doc-4").disposal_status == DisposalStatus.PENDING


def test_past_deadline_interrupts_before_any_work(orchestrator, record_store, chain, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1"))

    run = orchestrator.run(T, RunOptions(deadline=clock.now() - timedelta(seconds=1)))

    assert run.status == RunStatus.INTERRUPTED
    assert run.processed == 0
    assert blobs.calls == 0
    entries = chain.entries(T)
    assert [e.action for e in entries] == [AuditAction.RUN_INTERRUPTED]
    assert entries[0].payload["reason"] == "deadline"
    assert entries[0].payload["not_started"] == 1


class _StoppingBlobStore(FakeBlobStore):
    def __init__(self, on_delete):
        super().__init__()
        self.on_delete = on_delete

    def delete(self, blob_id: str) -> None:
        super().delete(blob_id)
        self.on_delete()


def _orch(record_store, resolver, chain, blobs, clock, **kw):
    return RetentionCleanupOrchestrator(
        record_store=record_store,
        resolver=resolver,
        guard=LegalHoldGuard(tenant_holds=record_store, clock=clock),
        chain=chain,
        blob_store=blobs,
        clock=clock,
        **kw,
    )


def test_deadline_reached_mid_batch_finishes_in_flight_and_stops(record_store, resolver, chain, clock):
    for i in range(3):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}", due_in=timedelta(days=-(10 - i))))
    deadline = clock.now() + timedelta(minutes=5)
    blobs = _StoppingBlobStore(on_delete=lambda: clock.advance(minutes=10))
    orch = _orch(record_store, resolver, chain, blobs, clock, max_workers=1)

    run = orch.run(T, RunOptions(deadline=deadline))

    assert run.status == RunStatus.INTERRUPTED
    assert run.processed == 1
    assert record_store.get("doc-0").disposal_status == DisposalStatus.PROCESSED
    assert record_store.get("doc-1").disposal_status == DisposalStatus.PENDING
    assert _actions(chain) == [AuditAction.DISPOSED, AuditAction.RUN_INTERRUPTED]
    assert chain.verify(T) is True


def test_emergency_stop_cancels_active_run(record_store, resolver, chain, clock):
    for i in range(3):
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i}", due_in=timedelta(days=-(10 - i))))
    holder = {}

    def _stop():
        for run_id in holder["orch"].active_runs():
            holder["stopped"] = holder["orch"].emergency_stop(run_id)

    orch = _orch(record_store, resolver, chain, _StoppingBlobStore(on_delete=_stop), clock, max_workers=1)
    holder["orch"] = orch

    run = orch.run(T)

    assert holder["stopped"] is True
    assert run.status == RunStatus.INTERRUPTED
    assert run.message == "cancelled"
    assert run.processed == 1
    assert orch.active_runs() == []
    assert orch.emergency_stop(run.run_id) is False


def test_parallel_workers_keep_chain_gapless(orchestrator, record_store, chain, clock):
    for i in range(40):
        pol = ["COMPANIES_ACT_7YR", "LPC_6YR", "PAIA_5YR", "PERMANENT"][i % 4]
        record_store.add(make_record(now=clock.now(), record_id=f"doc-{i:02d}", policy_name=pol, personal_fields={"email": f"u{i}@example.com"}))

    run = orchestrator.run(T, RunOptions(max_workers=8))

    assert run.processed == 40
    assert run.failed == 0
    entries = chain.entries(T)
    # 40 DISPOSED + 10 REDACTED
    assert len(entries) == 50
    assert [e.sequence_index for e in entries] == list(range(50))
    assert chain.verify(T) is True
    for e in entries:
        if e.action == AuditAction.REDACTED:
            later = [x for x in entries if x.record_id == e.record_id and x.action == AuditAction.DISPOSED]
            assert later and later[0].sequence_index > e.sequence_index


def test_certificate_issued_for_disposed_records(orchestrator, record_store, chain, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-b"))
    record_store.add(make_record(now=clock.now(), record_id="doc-a", policy_name="LPC_6YR"))

    run = orchestrator.run(T)

    cert = run.certificate
    assert cert is not None
    assert cert.record_ids == ["doc-a", "doc-b"]
    assert cert.head_entry_hash == chain.head_hash(T)
    assert cert.legal_references["LPC_6YR"] == "Legal Practice Council Rule 7.3"
    assert verify_certificate(cert, salt="test-salt") is True
    assert verify_certificate(cert, salt="other") is False


def test_no_certificate_when_nothing_disposed(orchestrator):
    assert orchestrator.run(T).certificate is None


def test_dry_run_touches_nothing(orchestrator, record_store, chain, blobs, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1"))
    record_store.add(make_record(now=clock.now(), record_id="doc-2", hold=LegalHold(active=True)))

    run = orchestrator.run(T, RunOptions(dry_run=True))

    assert run.eligible == 2
    assert run.skipped == 1
    assert run.processed == 0
    assert blobs.calls == 0
    assert chain.entries(T) == []


@pytest.mark.parametrize("tenant", ["", "short", "tenant with spaces", "../../etc/passwd", "x" * 65])
def test_invalid_tenant_id_rejected(orchestrator, tenant):
    with pytest.raises(ValidationError):
        orchestrator.run(tenant)


def test_record_store_outage_propagates(resolver, chain, blobs, clock):
    class _DownStore:
        def find_eligible(self, *_a, **_k):
            raise RecordStoreError("database unavailable")

    orch = RetentionCleanupOrchestrator(
        record_store=_DownStore(),
        resolver=resolver,
        guard=LegalHoldGuard(clock=clock),
        chain=chain,
        blob_store=blobs,
        clock=clock,
    )
    with pytest.raises(RecordStoreError):
        orch.run(T)
    assert orch.active_runs() == []


def test_tenants_are_isolated(orchestrator, record_store, chain, clock):
    record_store.add(make_record(now=clock.now(), record_id="a-1", tenant_id="tenant_alpha"))
    record_store.add(make_record(now=clock.now(), record_id="b-1", tenant_id="tenant_bravo"))

    orchestrator.run("tenant_alpha")

    assert record_store.get("b-1").disposal_status == DisposalStatus.PENDING
    assert chain.entries("tenant_bravo") == []
    assert len(chain.entries("tenant_alpha")) == 1


def test_status_reports_capabilities(orchestrator):
    st = orchestrator.status()
    assert st["ready"] is True
    assert st["active_runs"] == []
    assert "PAIA_5YR" in st["policies"]
    assert set(st["disposal_methods"]) == {"SECURE_DELETION", "ARCHIVE_THEN_DELETE", "REDACT_THEN_DELETE", "PERMANENT_ARCHIVE"}


class _HoldingBlobStore(FakeBlobStore):
    """Places a hold on another record while the first delete is in progress."""

    def __init__(self, record_store, target):
        super().__init__()
        self.record_store = record_store
        self.target = target

    def delete(self, blob_id: str) -> None:
        super().delete(blob_id)
        if blob_id != self.target:
            self.record_store.set_record_hold(self.target, LegalHold(active=True, reason="late subpoena"))


def test_hold_placed_mid_batch_is_honoured(record_store, resolver, chain, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1", due_in=timedelta(days=-2)))
    record_store.add(make_record(now=clock.now(), record_id="doc-2", due_in=timedelta(days=-1)))
    blobs = _HoldingBlobStore(record_store, target="doc-2")
    orch = _orch(record_store, resolver, chain, blobs, clock, max_workers=1)

    run = orch.run(T)

    assert blobs.deleted == ["doc-1"]
    assert (run.deleted, run.skipped) == (1, 1)
    assert record_store.get("doc-2").disposal_status == DisposalStatus.PENDING
    held = chain.entries_for_record(T, "doc-2")
    assert [e.action for e in held] == [AuditAction.HOLD_BLOCKED]
    assert held[0].payload["reason"] == "legal_hold_active"


class _HoldAfterCheckBlobStore(FakeBlobStore):
    """Places a hold on the record being deleted, after the guard has passed it."""

    def __init__(self, record_store):
        super().__init__()
        self.record_store = record_store

    def delete(self, blob_id: str) -> None:
        super().delete(blob_id)
        self.record_store.set_record_hold(blob_id, LegalHold(active=True, reason="late subpoena"))


def test_hold_placed_during_disposal_blocks_processed_status(record_store, resolver, chain, clock):
    record_store.add(make_record(now=clock.now(), record_id="doc-1"))
    orch = _orch(record_store, resolver, chain, _HoldAfterCheckBlobStore(record_store), clock)

    run = orch.run(T)

    assert run.skipped == 1 and run.deleted == 0
    assert record_store.get("doc-1").disposal_status == DisposalStatus.PENDING
    entries = chain.entries_for_record(T, "doc-1")
    assert [e.action for e in entries] == [AuditAction.HOLD_BLOCKED]
    assert entries[0].payload["stage"] == "status_update"


def test_record_gone_from_store_is_skipped(resolver, chain, blobs, clock):
    rec = make_record(now=clock.now(), record_id="doc-1")

    class _VanishingStore:
        def find_eligible(self, *_a, **_k):
            return [rec]

        def get(self, record_id):
            return None

        def get_tenant_hold(self, tenant_id):
            return None

    orch = _orch(_VanishingStore(), resolver, chain, blobs, clock)

    run = orch.run(T)

    assert run.processed == 0
    assert blobs.calls == 0
    assert chain.entries(T) == []


def test_aborted_run_is_logged_as_aborted(resolver, chain, blobs, clock, tmp_path):
    class _DownStore:
        def find_eligible(self, *_a, **_k):
            raise RecordStoreError("database unavailable")

    run_log = RunLogger(path=str(tmp_path / "logs" / "runs.jsonl"))
    orch = RetentionCleanupOrchestrator(
        record_store=_DownStore(),
        resolver=resolver,
        guard=LegalHoldGuard(clock=clock),
        chain=chain,
        blob_store=blobs,
        clock=clock,
        run_logger=run_log,
    )
    with pytest.raises(RecordStoreError):
        orch.run(T)

    (line,) = run_log.tail()
    assert line["event"] == "run.aborted"
    assert line["details"]["status"] == RunStatus.ABORTED.value


def test_ledger_entries_fingerprint_the_disposed_record(orchestrator, record_store, chain, clock):
    rec = make_record(now=clock.now(), record_id="paia-1", policy_name="PAIA_5YR", personal_fields={"email": "a@b.co"}, filename="x_doc.pdf")
    record_store.add(rec)
    expected = compute_record_hash(rec.model_dump(mode="json"))

    orchestrator.run(T)

    entries = chain.entries_for_record(T, "paia-1")
    assert [e.action for e in entries] == [AuditAction.REDACTED, AuditAction.DISPOSED]
    assert entries[0].payload["record_hash"] == entries[1].payload["record_hash"] == expected


def test_record_hash_ignores_disposal_bookkeeping(clock):
    rec = make_record(now=clock.now(), record_id="doc-1")
    done = rec.model_copy(update={"disposal_status": DisposalStatus.PROCESSED, "archive_ref": "archive/doc-1", "disposal_at": clock.now()})
    changed = rec.model_copy(update={"size_bytes": 1})

    assert compute_record_hash(rec.model_dump(mode="json")) == compute_record_hash(done.model_dump(mode="json"))
    assert compute_record_hash(rec.model_dump(mode="json")) != compute_record_hash(changed.model_dump(mode="json"))
