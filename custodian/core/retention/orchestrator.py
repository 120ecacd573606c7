from __future__ import annotations

import re
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from custodian.core.audit.hasher import compute_record_hash
from custodian.core.audit.models import AuditAction
from custodian.core.clock import Clock, SystemClock, as_utc, iso_utc
from custodian.core.disposal.certificate import issue_certificate
from custodian.core.disposal.strategies import DisposalContext, strategy_for
from custodian.core.errors import DisposalFailedError, LegalHoldActiveError, RecordStoreError, StateTransitionError, ValidationError
from custodian.core.policy.models import ARCHIVING_METHODS, DisposalMethod
from custodian.core.records.models import DisposalStatus, Record
from custodian.core.retention.models import CleanupRun, RecordFailure, RunOptions, RunStatus


DEFAULT_TENANT_ID_PATTERN = r"^[a-zA-Z0-9_-]{8,64}$"


@dataclass(frozen=True)
class _RecordResult:
    record_id: str
    kind: str  # disposed | failed | held | noop
    method: Optional[DisposalMethod] = None
    policy_name: str = ""
    legal_reference: str = ""
    storage_freed_bytes: int = 0
    reason: str = ""
    stage: str = ""


class RetentionCleanupOrchestrator:
    """
    Runs one retention batch for one tenant.

    Per record: legal hold check, strategy dispatch by policy, status update,
    then a ledger entry. Holds and unknown policies never raise; a failing
    record is marked FAILED and the batch continues. Runs for the same tenant
    are serialized; different tenants may run concurrently.
    """

    def __init__(
        self,
        *,
        record_store: Any,
        resolver: Any,
        guard: Any,
        chain: Any,
        blob_store: Any,
        clock: Optional[Clock] = None,
        logger=None,
        run_logger: Any = None,
        batch_size: int = 100,
        max_workers: int = 4,
        tenant_id_pattern: str = DEFAULT_TENANT_ID_PATTERN,
        issue_certificates: bool = True,
        certificate_salt: str = "",
    ):
        self.record_store = record_store
        self.resolver = resolver
        self.guard = guard
        self.chain = chain
        self.blob_store = blob_store
        self.clock = clock or SystemClock()
        self.logger = logger
        self.run_logger = run_logger
        self.batch_size = int(batch_size)
        self.max_workers = int(max_workers)
        self._tenant_re = re.compile(tenant_id_pattern)
        self.issue_certificates = bool(issue_certificates)
        self.certificate_salt = str(certificate_salt or "")

        self._run_locks: Dict[str, threading.Lock] = {}
        self._active: Dict[str, threading.Event] = {}
        self._registry_lock = threading.Lock()

    # ---------- public API ----------
    def run(self, tenant_id: str, options: Optional[RunOptions] = None) -> CleanupRun:
        tenant_id = self._validate_tenant(tenant_id)
        opts = options or RunOptions()
        batch_size = int(opts.batch_size or self.batch_size)
        workers = int(opts.max_workers or self.max_workers)
        if batch_size < 1 or workers < 1:
            raise ValidationError("batch_size and max_workers must be positive.", batch_size=batch_size, max_workers=workers)

        run = CleanupRun(tenant_id=tenant_id, started_at=self.clock.now(), dry_run=bool(opts.dry_run))
        with self._registry_lock:
            self._active[run.run_id] = opts.cancel
        try:
            with self._run_lock(tenant_id):
                self._run_locked(run, opts, batch_size=batch_size, workers=workers)
        except Exception as e:
            run.status = RunStatus.ABORTED
            run.message = str(e)
            if self.logger:
                self.logger.error(f"retention run aborted tenant={tenant_id} run={run.run_id}: {e}")
            raise
        finally:
            with self._registry_lock:
                self._active.pop(run.run_id, None)
            run.finished_at = self.clock.now()
            self._log_run(run)
        return run

    def emergency_stop(self, run_id: str) -> bool:
        with self._registry_lock:
            ev = self._active.get(str(run_id))
        if ev is None:
            return False
        ev.set()
        if self.logger:
            self.logger.warning(f"emergency stop requested run={run_id}")
        return True

    def active_runs(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._active.keys())

    def status(self) -> Dict[str, Any]:
        return {
            "ready": True,
            "active_runs": self.active_runs(),
            "batch_size": self.batch_size,
            "max_workers": self.max_workers,
            "policies": list(self.resolver.catalog.names()),
            "disposal_methods": [m.value for m in DisposalMethod],
            "issue_certificates": self.issue_certificates,
        }

    # ---------- run body ----------
    def _run_locked(self, run: CleanupRun, opts: RunOptions, *, batch_size: int, workers: int) -> None:
        tenant_id = run.tenant_id
        tenant_decision = self.guard.check_tenant(tenant_id)
        if not tenant_decision.allowed:
            run.status = RunStatus.PAUSED
            run.message = tenant_decision.reason
            if not opts.dry_run:
                self.chain.append(tenant_id, "", AuditAction.RUN_PAUSED, {"run_id": run.run_id, "reason": tenant_decision.reason})
            if self.logger:
                self.logger.warning(f"retention run paused tenant={tenant_id} reason={tenant_decision.reason}")
            return

        # RecordStoreError here is an infrastructure failure and propagates.
        records = self.record_store.find_eligible(tenant_id, limit=batch_size, now=self.clock.now(), policy_name=opts.policy_name)
        run.eligible = len(records)
        if self.logger:
            self.logger.info(f"retention run start tenant={tenant_id} run={run.run_id} eligible={len(records)}")

        if opts.dry_run:
            run.skipped = sum(1 for r in records if not self.guard.check(r).allowed)
            run.message = "dry run"
            return

        remaining, legal_refs = self._process_batch(run, records, opts, workers=workers)
        if remaining is not None:
            run.status = RunStatus.INTERRUPTED
            reason = "cancelled" if opts.cancel.is_set() else "deadline"
            run.message = reason
            self.chain.append(
                tenant_id,
                "",
                AuditAction.RUN_INTERRUPTED,
                {"run_id": run.run_id, "reason": reason, "processed": run.processed, "not_started": remaining},
            )
            if self.logger:
                self.logger.warning(f"retention run interrupted tenant={tenant_id} run={run.run_id} reason={reason} not_started={remaining}")

        if self.issue_certificates and run.disposed_record_ids:
            run.certificate = issue_certificate(
                tenant_id=tenant_id,
                run_id=run.run_id,
                issued_at=iso_utc(self.clock.now()),
                record_ids=list(run.disposed_record_ids),
                methods=dict(run.methods),
                legal_references=legal_refs,
                head_entry_hash=self.chain.head_hash(tenant_id),
                salt=self.certificate_salt,
            )

    def _process_batch(self, run: CleanupRun, records: List[Record], opts: RunOptions, *, workers: int) -> tuple[Optional[int], Dict[str, str]]:
        """
        Returns (not_started, legal_refs). not_started is None when every
        record was submitted, else the count left unsubmitted by cancellation.
        """
        legal_refs: Dict[str, str] = {}
        in_flight: Set[Future] = set()
        not_started: Optional[int] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"retention-{run.tenant_id}") as pool:
            for idx, rec in enumerate(records):
                if len(in_flight) >= workers:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    for fut in done:
                        self._tally(run, fut.result(), legal_refs)
                if self._should_stop(opts):
                    not_started = len(records) - idx
                    break
                in_flight.add(pool.submit(self._process_record, run.run_id, run.tenant_id, rec))
            # In-flight records always finish, even when the run is interrupted.
            done, _ = wait(in_flight)
            for fut in done:
                self._tally(run, fut.result(), legal_refs)
        return not_started, legal_refs

    def _process_record(self, run_id: str, tenant_id: str, rec: Record) -> _RecordResult:
        # Re-read right before the hold check; the batch snapshot may predate a new hold.
        try:
            fresh = self.record_store.get(rec.id)
        except RecordStoreError as e:
            if self.logger:
                self.logger.error(f"record re-read failed tenant={tenant_id} record={rec.id}: {e}; treating as held")
            self.chain.append(tenant_id, rec.id, AuditAction.HOLD_BLOCKED, {"run_id": run_id, "reason": "hold_check_failed"})
            return _RecordResult(record_id=rec.id, kind="held", reason="hold_check_failed")
        if fresh is None or fresh.disposal_status != DisposalStatus.PENDING:
            return _RecordResult(record_id=rec.id, kind="noop", reason="no_longer_pending")
        rec = fresh

        decision = self.guard.check(rec)
        if not decision.allowed:
            self.chain.append(tenant_id, rec.id, AuditAction.HOLD_BLOCKED, {"run_id": run_id, "reason": decision.reason})
            return _RecordResult(record_id=rec.id, kind="held", reason=decision.reason)

        resolution = self.resolver.resolve(rec)
        policy = resolution.policy
        if not resolution.is_eligible:
            return _RecordResult(record_id=rec.id, kind="noop", reason="not_due")
        method = policy.disposal_method
        base = {
            "run_id": run_id,
            "policy": policy.name,
            "method": method.value,
            "fallback_policy": resolution.used_fallback,
            "record_hash": compute_record_hash(rec.model_dump(mode="json")),
        }

        def journal(action: AuditAction, payload: Dict[str, Any]) -> Any:
            return self.chain.append(tenant_id, rec.id, action, {**payload, **base})

        ctx = DisposalContext(blob_store=self.blob_store, record_store=self.record_store, journal=journal)
        try:
            outcome = strategy_for(method).dispose(rec, ctx)
        except DisposalFailedError as e:
            stage = str(e.context.get("stage") or "dispose")
            self._mark_failed(rec, method)
            journal(AuditAction.DISPOSAL_FAILED, {"stage": stage, "error": str(e.context.get("error") or e.user_message)})
            if self.logger:
                self.logger.error(f"disposal failed tenant={tenant_id} record={rec.id} stage={stage}")
            return _RecordResult(record_id=rec.id, kind="failed", method=method, policy_name=policy.name, reason=e.user_message, stage=stage)

        if outcome.already_processed:
            return _RecordResult(record_id=rec.id, kind="noop", method=outcome.method, reason="already_processed")

        try:
            self.record_store.update_disposal_status(
                rec.id,
                DisposalStatus.PROCESSED,
                method=outcome.method,
                archive_ref=outcome.archive_ref,
                disposal_at=self.clock.now(),
            )
        except StateTransitionError:
            # Another run finished this record first; its ledger entry stands.
            return _RecordResult(record_id=rec.id, kind="noop", method=outcome.method, reason="already_processed")
        except LegalHoldActiveError:
            # Hold arrived after the check. The record stays PENDING and is never marked PROCESSED under hold.
            journal(AuditAction.HOLD_BLOCKED, {"reason": "legal_hold_active", "stage": "status_update"})
            if self.logger:
                self.logger.error(f"legal hold placed during disposal tenant={tenant_id} record={rec.id}; status left PENDING")
            return _RecordResult(record_id=rec.id, kind="held", reason="legal_hold_active")
        except RecordStoreError as e:
            # Bytes are gone but the status could not be recorded. The record stays
            # PENDING; a retry is safe because delete/archive of absent bytes is a no-op.
            journal(AuditAction.DISPOSAL_FAILED, {"stage": "status_update", "error": e.user_message})
            if self.logger:
                self.logger.error(f"status update failed after disposal tenant={tenant_id} record={rec.id}")
            return _RecordResult(record_id=rec.id, kind="failed", method=method, policy_name=policy.name, reason=e.user_message, stage="status_update")

        journal(
            AuditAction.DISPOSED,
            {
                "legal_reference": policy.legal_reference,
                "archive_ref": outcome.archive_ref,
                "storage_freed_bytes": outcome.storage_freed_bytes,
            },
        )
        return _RecordResult(
            record_id=rec.id,
            kind="disposed",
            method=outcome.method,
            policy_name=policy.name,
            legal_reference=policy.legal_reference,
            storage_freed_bytes=outcome.storage_freed_bytes,
        )

    def _mark_failed(self, rec: Record, method: DisposalMethod) -> None:
        try:
            self.record_store.update_disposal_status(rec.id, DisposalStatus.FAILED, method=method, disposal_at=self.clock.now())
        except (RecordStoreError, StateTransitionError) as e:
            if self.logger:
                self.logger.error(f"could not mark record {rec.id} FAILED: {e}")

    # ---------- helpers ----------
    @staticmethod
    def _tally(run: CleanupRun, res: _RecordResult, legal_refs: Dict[str, str]) -> None:
        if res.kind == "held":
            run.skipped += 1
        elif res.kind == "failed":
            run.processed += 1
            run.failed += 1
            run.failures.append(RecordFailure(record_id=res.record_id, reason=res.reason, stage=res.stage))
        elif res.kind == "disposed":
            run.processed += 1
            if res.method in ARCHIVING_METHODS:
                run.archived += 1
            else:
                run.deleted += 1
            run.storage_freed_bytes += int(res.storage_freed_bytes)
            run.disposed_record_ids.append(res.record_id)
            if res.method is not None:
                run.methods[res.record_id] = res.method.value
            if res.policy_name:
                legal_refs[res.policy_name] = res.legal_reference

    def _should_stop(self, opts: RunOptions) -> bool:
        if opts.cancel.is_set():
            return True
        return opts.deadline is not None and as_utc(self.clock.now()) >= as_utc(opts.deadline)

    def _validate_tenant(self, tenant_id: str) -> str:
        tid = str(tenant_id or "")
        if not self._tenant_re.match(tid):
            raise ValidationError("Invalid tenant id.", tenant_id=tid)
        return tid

    def _run_lock(self, tenant_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._run_locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._run_locks[tenant_id] = lock
            return lock

    def _log_run(self, run: CleanupRun) -> None:
        if self.logger:
            self.logger.info(
                f"retention run {run.status.value.lower()} tenant={run.tenant_id} run={run.run_id} "
                f"processed={run.processed} deleted={run.deleted} archived={run.archived} failed={run.failed} skipped={run.skipped}"
            )
        if self.run_logger is not None:
            try:
                event = "run.aborted" if run.status == RunStatus.ABORTED else "run.finished"
                self.run_logger.log(run_id=run.run_id, tenant_id=run.tenant_id, event=event, details=run.summary())
            except OSError as e:
                if self.logger:
                    self.logger.error(f"run log write failed: {e}")
