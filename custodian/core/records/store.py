from __future__ import annotations

import json
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from custodian.core.clock import iso_utc, parse_iso
from custodian.core.errors import LegalHoldActiveError, RecordStoreError, StateTransitionError
from custodian.core.policy.models import DisposalMethod
from custodian.core.records.models import ALLOWED_TRANSITIONS, DisposalStatus, LegalHold, Record, TenantHold


def _iso_or_none(dt: Optional[datetime]) -> Optional[str]:
    return iso_utc(dt) if dt is not None else None


def _dt_or_none(s: Optional[str]) -> Optional[datetime]:
    return parse_iso(s) if s else None


class SqliteRecordStore:
    """
    Record store backed by a single sqlite file.

    Timestamps are stored as fixed-width ISO-8601 UTC strings so that string
    comparison orders them chronologically.
    """

    def __init__(self, *, db_path: str, logger=None):
        self.db_path = str(db_path)
        self.logger = logger
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                      record_id TEXT PRIMARY KEY,
                      tenant_id TEXT NOT NULL,
                      policy_name TEXT,
                      hold_active INTEGER NOT NULL DEFAULT 0,
                      hold_expires_at TEXT,
                      hold_reason TEXT,
                      created_at TEXT,
                      disposal_due_at TEXT,
                      disposal_status TEXT NOT NULL,
                      size_bytes INTEGER NOT NULL DEFAULT 0,
                      disposal_method_used TEXT,
                      disposal_at TEXT,
                      archive_ref TEXT,
                      filename TEXT,
                      personal_fields TEXT,
                      redacted INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_records_eligible ON records(tenant_id, disposal_status, disposal_due_at)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS tenant_holds (
                      tenant_id TEXT PRIMARY KEY,
                      active INTEGER NOT NULL,
                      reason TEXT,
                      placed_at TEXT NOT NULL,
                      released_at TEXT
                    )
                    """
                )
                conn.commit()
            finally:
                conn.close()

    # ---------- mapping ----------
    @staticmethod
    def _row_to_record(r: sqlite3.Row) -> Record:
        method = r["disposal_method_used"]
        return Record(
            id=str(r["record_id"]),
            tenant_id=str(r["tenant_id"]),
            policy_name=r["policy_name"],
            legal_hold=LegalHold(active=bool(r["hold_active"]), expires_at=_dt_or_none(r["hold_expires_at"]), reason=str(r["hold_reason"] or "")),
            created_at=_dt_or_none(r["created_at"]),
            disposal_due_at=_dt_or_none(r["disposal_due_at"]),
            disposal_status=DisposalStatus(str(r["disposal_status"])),
            size_bytes=int(r["size_bytes"] or 0),
            disposal_method_used=DisposalMethod(method) if method else None,
            disposal_at=_dt_or_none(r["disposal_at"]),
            archive_ref=r["archive_ref"],
            filename=str(r["filename"] or ""),
            personal_fields=json.loads(r["personal_fields"] or "{}"),
            redacted=bool(r["redacted"]),
        )

    @staticmethod
    def _hold_in_force(row: sqlite3.Row, at: Optional[datetime]) -> bool:
        if not row["hold_active"]:
            return False
        if not row["hold_expires_at"]:
            return True
        now = iso_utc(at if at is not None else datetime.now(timezone.utc))
        return str(row["hold_expires_at"]) > now

    # ---------- records ----------
    def add(self, record: Record) -> str:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT INTO records(record_id, tenant_id, policy_name, hold_active, hold_expires_at, hold_reason, created_at,
                                        disposal_due_at, disposal_status, size_bytes, disposal_method_used, disposal_at, archive_ref,
                                        filename, personal_fields, redacted)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.tenant_id,
                        record.policy_name,
                        1 if record.legal_hold.active else 0,
                        _iso_or_none(record.legal_hold.expires_at),
                        record.legal_hold.reason,
                        _iso_or_none(record.created_at),
                        _iso_or_none(record.disposal_due_at),
                        record.disposal_status.value,
                        int(record.size_bytes),
                        record.disposal_method_used.value if record.disposal_method_used else None,
                        _iso_or_none(record.disposal_at),
                        record.archive_ref,
                        record.filename,
                        json.dumps(record.personal_fields, ensure_ascii=False, sort_keys=True),
                        1 if record.redacted else 0,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise RecordStoreError("Record already exists.", record_id=record.id) from e
            finally:
                conn.close()
        return record.id

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT * FROM records WHERE record_id=?", (str(record_id),)).fetchone()
            except sqlite3.Error as e:
                raise RecordStoreError("Record lookup failed.", record_id=record_id, error=str(e)) from e
            finally:
                conn.close()
        return self._row_to_record(row) if row else None

    def iter_records(self, tenant_id: str) -> Iterator[Record]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute("SELECT * FROM records WHERE tenant_id=? ORDER BY record_id", (str(tenant_id),)).fetchall()
            finally:
                conn.close()
        for r in rows:
            yield self._row_to_record(r)

    def find_eligible(self, tenant_id: str, *, limit: int, now: datetime, policy_name: Optional[str] = None) -> List[Record]:
        """
        PENDING records of one tenant whose disposal date has passed, oldest due first.
        """
        sql = "SELECT * FROM records WHERE tenant_id=? AND disposal_status=? AND disposal_due_at IS NOT NULL AND disposal_due_at <= ?"
        params: List[Any] = [str(tenant_id), DisposalStatus.PENDING.value, iso_utc(now)]
        if policy_name:
            sql += " AND UPPER(policy_name)=?"
            params.append(str(policy_name).strip().upper())
        sql += " ORDER BY disposal_due_at ASC, record_id ASC LIMIT ?"
        params.append(max(1, int(limit)))
        try:
            with self._lock:
                conn = self._conn()
                try:
                    rows = conn.execute(sql, params).fetchall()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise RecordStoreError("Eligible-record query failed.", tenant_id=tenant_id, error=str(e)) from e
        return [self._row_to_record(r) for r in rows]

    def update_disposal_status(
        self,
        record_id: str,
        status: DisposalStatus,
        *,
        method: Optional[DisposalMethod] = None,
        archive_ref: Optional[str] = None,
        disposal_at: Optional[datetime] = None,
    ) -> Record:
        status = DisposalStatus(status)
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT disposal_status, hold_active, hold_expires_at FROM records WHERE record_id=?", (str(record_id),)
                ).fetchone()
                if row is None:
                    raise RecordStoreError("Record not found.", record_id=record_id)
                current = DisposalStatus(str(row["disposal_status"]))
                if status not in ALLOWED_TRANSITIONS[current]:
                    raise StateTransitionError(record_id=record_id, from_status=current.value, to_status=status.value)
                if status == DisposalStatus.PROCESSED and self._hold_in_force(row, disposal_at):
                    raise LegalHoldActiveError(record_id=record_id)
                # Compare-and-set on PENDING so a concurrent writer cannot double-transition.
                cur = conn.execute(
                    """
                    UPDATE records SET disposal_status=?, disposal_method_used=?, archive_ref=COALESCE(?, archive_ref), disposal_at=?
                    WHERE record_id=? AND disposal_status=?
                    """,
                    (
                        status.value,
                        method.value if method else None,
                        archive_ref,
                        _iso_or_none(disposal_at),
                        str(record_id),
                        current.value,
                    ),
                )
                if int(cur.rowcount or 0) != 1:
                    raise StateTransitionError(record_id=record_id, from_status=current.value, to_status=status.value)
                conn.commit()
                updated = conn.execute("SELECT * FROM records WHERE record_id=?", (str(record_id),)).fetchone()
            except sqlite3.Error as e:
                raise RecordStoreError("Status update failed.", record_id=record_id, error=str(e)) from e
            finally:
                conn.close()
        return self._row_to_record(updated)

    def apply_redaction(self, record_id: str, masked_fields: Dict[str, Any], *, filename: Optional[str] = None) -> None:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    "UPDATE records SET personal_fields=?, filename=COALESCE(?, filename), redacted=1 WHERE record_id=? AND disposal_status=?",
                    (json.dumps(masked_fields, ensure_ascii=False, sort_keys=True), filename, str(record_id), DisposalStatus.PENDING.value),
                )
                if int(cur.rowcount or 0) != 1:
                    raise RecordStoreError("Redaction target missing or no longer pending.", record_id=record_id)
                conn.commit()
            except sqlite3.Error as e:
                raise RecordStoreError("Redaction update failed.", record_id=record_id, error=str(e)) from e
            finally:
                conn.close()

    def set_record_hold(self, record_id: str, hold: LegalHold) -> None:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    "UPDATE records SET hold_active=?, hold_expires_at=?, hold_reason=? WHERE record_id=?",
                    (1 if hold.active else 0, _iso_or_none(hold.expires_at), hold.reason, str(record_id)),
                )
                if int(cur.rowcount or 0) != 1:
                    raise RecordStoreError("Record not found.", record_id=record_id)
                conn.commit()
            except sqlite3.Error as e:
                raise RecordStoreError("Hold update failed.", record_id=record_id, error=str(e)) from e
            finally:
                conn.close()

    # ---------- tenant-wide holds ----------
    def place_tenant_hold(self, tenant_id: str, *, reason: str, now: datetime) -> TenantHold:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO tenant_holds(tenant_id, active, reason, placed_at, released_at) VALUES (?, 1, ?, ?, NULL)",
                    (str(tenant_id), str(reason or ""), iso_utc(now)),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RecordStoreError("Tenant hold update failed.", tenant_id=tenant_id, error=str(e)) from e
            finally:
                conn.close()
        if self.logger:
            self.logger.info(f"tenant hold placed tenant={tenant_id}")
        return TenantHold(tenant_id=tenant_id, active=True, reason=str(reason or ""), placed_at=now)

    def release_tenant_hold(self, tenant_id: str, *, now: datetime) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    "UPDATE tenant_holds SET active=0, released_at=? WHERE tenant_id=? AND active=1",
                    (iso_utc(now), str(tenant_id)),
                )
                conn.commit()
                changed = int(cur.rowcount or 0) == 1
            except sqlite3.Error as e:
                raise RecordStoreError("Tenant hold update failed.", tenant_id=tenant_id, error=str(e)) from e
            finally:
                conn.close()
        if changed and self.logger:
            self.logger.info(f"tenant hold released tenant={tenant_id}")
        return changed

    def get_tenant_hold(self, tenant_id: str) -> Optional[TenantHold]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT * FROM tenant_holds WHERE tenant_id=?", (str(tenant_id),)).fetchone()
            except sqlite3.Error as e:
                raise RecordStoreError("Tenant hold lookup failed.", tenant_id=tenant_id, error=str(e)) from e
            finally:
                conn.close()
        if row is None:
            return None
        return TenantHold(
            tenant_id=str(row["tenant_id"]),
            active=bool(row["active"]),
            reason=str(row["reason"] or ""),
            placed_at=parse_iso(row["placed_at"]),
            released_at=_dt_or_none(row["released_at"]),
        )
