from __future__ import annotations

import json
import os
import sqlite3
from typing import Iterator, List, Optional

from custodian.core.audit.models import AuditAction, AuditChainEntry
from custodian.core.errors import ChainConflictError


class SqliteAuditChainStore:
    """
    Audit chain rows keyed by (tenant_id, sequence_index).

    The store exposes no update or delete. Appends run inside BEGIN IMMEDIATE
    and only succeed when the caller's expected previous hash is still the tail.
    """

    def __init__(self, *, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._init()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=FULL;")
        return conn

    def _init(self) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_chain (
                  tenant_id TEXT NOT NULL,
                  sequence_index INTEGER NOT NULL,
                  record_id TEXT NOT NULL,
                  action TEXT NOT NULL,
                  timestamp_utc TEXT NOT NULL,
                  payload TEXT NOT NULL,
                  payload_hash TEXT NOT NULL,
                  previous_entry_hash TEXT NOT NULL,
                  entry_hash TEXT NOT NULL,
                  PRIMARY KEY (tenant_id, sequence_index)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chain_record ON audit_chain(tenant_id, record_id)")
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(r: sqlite3.Row) -> AuditChainEntry:
        return AuditChainEntry(
            sequence_index=int(r["sequence_index"]),
            tenant_id=str(r["tenant_id"]),
            record_id=str(r["record_id"]),
            action=AuditAction(str(r["action"])),
            timestamp_utc=str(r["timestamp_utc"]),
            payload=json.loads(r["payload"]),
            payload_hash=str(r["payload_hash"]),
            previous_entry_hash=str(r["previous_entry_hash"]),
            entry_hash=str(r["entry_hash"]),
        )

    def tail(self, tenant_id: str) -> Optional[AuditChainEntry]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM audit_chain WHERE tenant_id=? ORDER BY sequence_index DESC LIMIT 1",
                (str(tenant_id),),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def append(self, entry: AuditChainEntry, *, expected_previous_hash: str) -> None:
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT sequence_index, entry_hash FROM audit_chain WHERE tenant_id=? ORDER BY sequence_index DESC LIMIT 1",
                    (entry.tenant_id,),
                ).fetchone()
                tail_hash = str(row["entry_hash"]) if row else ""
                next_index = int(row["sequence_index"]) + 1 if row else 0
                if tail_hash != expected_previous_hash or entry.sequence_index != next_index:
                    raise ChainConflictError(tenant_id=entry.tenant_id, expected_index=next_index, got_index=entry.sequence_index)
                conn.execute(
                    """
                    INSERT INTO audit_chain(tenant_id, sequence_index, record_id, action, timestamp_utc, payload, payload_hash, previous_entry_hash, entry_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.tenant_id,
                        entry.sequence_index,
                        entry.record_id,
                        entry.action.value,
                        entry.timestamp_utc,
                        json.dumps(entry.payload, ensure_ascii=False, sort_keys=True),
                        entry.payload_hash,
                        entry.previous_entry_hash,
                        entry.entry_hash,
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def iter_entries(self, tenant_id: str) -> Iterator[AuditChainEntry]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM audit_chain WHERE tenant_id=? ORDER BY sequence_index ASC", (str(tenant_id),)).fetchall()
        finally:
            conn.close()
        for r in rows:
            yield self._row_to_entry(r)

    def tenants(self) -> List[str]:
        conn = self._conn()
        try:
            return [str(r[0]) for r in conn.execute("SELECT DISTINCT tenant_id FROM audit_chain ORDER BY tenant_id")]
        finally:
            conn.close()

    def count(self, tenant_id: str) -> int:
        conn = self._conn()
        try:
            row = conn.execute("SELECT COUNT(1) FROM audit_chain WHERE tenant_id=?", (str(tenant_id),)).fetchone()
            return int(row[0] if row else 0)
        finally:
            conn.close()
