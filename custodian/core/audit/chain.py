from __future__ import annotations

import json
import os
import threading
from typing import Any, Dict, List, Optional

from custodian.core.audit.hasher import canonical_json, compute_entry_hash, compute_payload_hash
from custodian.core.audit.models import AuditAction, AuditChainEntry, IntegrityReport
from custodian.core.clock import Clock, SystemClock, iso_utc
from custodian.core.errors import ChainConflictError, ChainIntegrityViolation


class AuditChain:
    """
    Per-tenant hash-linked ledger over a chain store.

    entry_hash = sha256(payload_hash, previous_entry_hash, timestamp_utc);
    the first entry of a tenant links to "". Appends for one tenant are
    serialized in-process; the store's compare-and-swap guards against other
    writers. No update or delete is exposed.
    """

    def __init__(self, *, store: Any, clock: Optional[Clock] = None, logger=None, max_conflict_retries: int = 3):
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = logger
        self.max_conflict_retries = max(0, int(max_conflict_retries))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _tenant_lock(self, tenant_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tenant_id] = lock
            return lock

    def append(self, tenant_id: str, record_id: str, action: AuditAction, payload: Optional[Dict[str, Any]] = None) -> AuditChainEntry:
        action = AuditAction(action)
        # Normalize through JSON so the hashed payload equals what a reload yields.
        data = json.loads(canonical_json(dict(payload or {})))
        with self._tenant_lock(tenant_id):
            for attempt in range(self.max_conflict_retries + 1):
                entry = self._build_entry(tenant_id, str(record_id or ""), action, data)
                try:
                    self.store.append(entry, expected_previous_hash=entry.previous_entry_hash)
                    break
                except ChainConflictError:
                    # Another process moved the tail; rebuild on the new tail.
                    if attempt >= self.max_conflict_retries:
                        raise
                    if self.logger:
                        self.logger.warning(f"ledger append conflict tenant={tenant_id}; retrying")
        if self.logger:
            self.logger.info(f"ledger tenant={tenant_id} seq={entry.sequence_index} action={action.value} record={record_id or '-'}")
        return entry

    def _build_entry(self, tenant_id: str, record_id: str, action: AuditAction, data: Dict[str, Any]) -> AuditChainEntry:
        tail = self.store.tail(tenant_id)
        prev_hash = tail.entry_hash if tail else ""
        seq = tail.sequence_index + 1 if tail else 0
        ts = self._timestamp(tail)
        payload_hash = compute_payload_hash(
            tenant_id=tenant_id,
            record_id=record_id,
            action=action.value,
            sequence_index=seq,
            payload=data,
        )
        return AuditChainEntry(
            sequence_index=seq,
            tenant_id=tenant_id,
            record_id=record_id,
            action=action,
            timestamp_utc=ts,
            payload=data,
            payload_hash=payload_hash,
            previous_entry_hash=prev_hash,
            entry_hash=compute_entry_hash(payload_hash, prev_hash, ts),
        )

    def _timestamp(self, tail: Optional[AuditChainEntry]) -> str:
        ts = iso_utc(self.clock.now())
        # Keep timestamps non-decreasing along a chain even if the wall clock steps back.
        if tail is not None and ts < tail.timestamp_utc:
            return tail.timestamp_utc
        return ts

    # ---------- reads ----------
    def entries(self, tenant_id: str) -> List[AuditChainEntry]:
        return list(self.store.iter_entries(tenant_id))

    def entries_for_record(self, tenant_id: str, record_id: str) -> List[AuditChainEntry]:
        return [e for e in self.store.iter_entries(tenant_id) if e.record_id == record_id]

    def count(self, tenant_id: str) -> int:
        return self.store.count(tenant_id)

    def head_hash(self, tenant_id: str) -> str:
        tail = self.store.tail(tenant_id)
        return tail.entry_hash if tail else ""

    def tenants(self) -> List[str]:
        return self.store.tenants()

    # ---------- integrity ----------
    def verify_report(self, tenant_id: str) -> IntegrityReport:
        checked = 0
        prev_hash = ""
        expected_index = 0
        try:
            for e in self.store.iter_entries(tenant_id):
                if e.tenant_id != tenant_id:
                    return IntegrityReport(ok=False, checked=checked, broken_at=expected_index, message="foreign tenant entry")
                if e.sequence_index != expected_index:
                    return IntegrityReport(ok=False, checked=checked, broken_at=expected_index, message="sequence gap")
                if e.previous_entry_hash != prev_hash:
                    return IntegrityReport(ok=False, checked=checked, broken_at=e.sequence_index, message="previous_entry_hash mismatch")
                ph = compute_payload_hash(
                    tenant_id=e.tenant_id,
                    record_id=e.record_id,
                    action=e.action.value,
                    sequence_index=e.sequence_index,
                    payload=e.payload,
                )
                if ph != e.payload_hash:
                    return IntegrityReport(ok=False, checked=checked, broken_at=e.sequence_index, message="payload_hash mismatch")
                if compute_entry_hash(e.payload_hash, e.previous_entry_hash, e.timestamp_utc) != e.entry_hash:
                    return IntegrityReport(ok=False, checked=checked, broken_at=e.sequence_index, message="entry_hash mismatch")
                prev_hash = e.entry_hash
                expected_index += 1
                checked += 1
        except (ValueError, KeyError, TypeError) as ex:
            # Unparseable rows (pydantic errors are ValueErrors) count as tampering.
            return IntegrityReport(ok=False, checked=checked, broken_at=expected_index, message=f"unreadable entry: {type(ex).__name__}")
        return IntegrityReport(ok=True, checked=checked, message="ok" if checked else "no entries", head_hash=prev_hash or None)

    def verify(self, tenant_id: str) -> bool:
        rep = self.verify_report(tenant_id)
        if not rep.ok and self.logger:
            self.logger.error(f"ledger integrity failure tenant={tenant_id} at={rep.broken_at} reason={rep.message}")
        return rep.ok

    def assert_intact(self, tenant_id: str) -> IntegrityReport:
        rep = self.verify_report(tenant_id)
        if not rep.ok:
            raise ChainIntegrityViolation(tenant_id=tenant_id, broken_at=rep.broken_at, reason=rep.message)
        return rep

    # ---------- export ----------
    def export_json(self, path: str, *, tenant_id: str) -> str:
        rows = [e.model_dump(mode="json") for e in self.store.iter_entries(tenant_id)]
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"tenant_id": tenant_id, "exported_at": iso_utc(self.clock.now()), "entries": rows}, f, indent=2, ensure_ascii=False)
        return path
