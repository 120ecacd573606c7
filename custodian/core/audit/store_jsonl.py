from __future__ import annotations

import json
import os
import re
import threading
from typing import Any, Dict, Iterator, List, Optional

from custodian.core.audit.models import AuditChainEntry
from custodian.core.errors import ChainConflictError, ValidationError


_TENANT_DIR_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _read_last_line(path: str, *, chunk: int = 65536) -> Optional[str]:
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        buf = b""
        pos = end
        while pos > 0:
            step = min(chunk, pos)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            lines = [ln for ln in buf.split(b"\n") if ln.strip()]
            if len(lines) >= 2 or (pos == 0 and lines):
                return lines[-1].decode("utf-8")
        return None


class JsonlAuditChainStore:
    """
    One append-only JSONL file per tenant:
      <root>/<tenant_id>/chain.jsonl
      <root>/<tenant_id>/head.json   (published head hash)
    """

    def __init__(self, *, root: str):
        self.root = str(root)
        self._lock = threading.Lock()
        os.makedirs(self.root, exist_ok=True)

    def _tenant_dir(self, tenant_id: str) -> str:
        tid = str(tenant_id or "")
        if not _TENANT_DIR_RE.match(tid):
            raise ValidationError("Invalid tenant id for ledger path.", tenant_id=tid)
        return os.path.join(self.root, tid)

    def chain_path(self, tenant_id: str) -> str:
        return os.path.join(self._tenant_dir(tenant_id), "chain.jsonl")

    def head_path(self, tenant_id: str) -> str:
        return os.path.join(self._tenant_dir(tenant_id), "head.json")

    def read_head_hash(self, tenant_id: str) -> str:
        try:
            with open(self.head_path(tenant_id), "r", encoding="utf-8") as f:
                obj = json.load(f)
            return str(obj.get("head_hash") or "")
        except (OSError, ValueError):
            return ""

    def _write_head(self, tenant_id: str, entry: AuditChainEntry) -> None:
        path = self.head_path(tenant_id)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"head_hash": entry.entry_hash, "sequence_index": entry.sequence_index}, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, path)

    def tail(self, tenant_id: str) -> Optional[AuditChainEntry]:
        path = self.chain_path(tenant_id)
        if not os.path.exists(path):
            return None
        line = _read_last_line(path)
        if not line:
            return None
        return AuditChainEntry.model_validate(json.loads(line))

    def append(self, entry: AuditChainEntry, *, expected_previous_hash: str) -> None:
        with self._lock:
            tail = self.tail(entry.tenant_id)
            tail_hash = tail.entry_hash if tail else ""
            next_index = tail.sequence_index + 1 if tail else 0
            if tail_hash != expected_previous_hash or entry.sequence_index != next_index:
                raise ChainConflictError(tenant_id=entry.tenant_id, expected_index=next_index, got_index=entry.sequence_index)
            os.makedirs(self._tenant_dir(entry.tenant_id), exist_ok=True)
            line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False, sort_keys=True)
            with open(self.chain_path(entry.tenant_id), "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._write_head(entry.tenant_id, entry)

    def iter_raw(self, tenant_id: str) -> Iterator[Dict[str, Any]]:
        path = self.chain_path(tenant_id)
        if not os.path.exists(path):
            return
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def iter_entries(self, tenant_id: str) -> Iterator[AuditChainEntry]:
        for obj in self.iter_raw(tenant_id):
            yield AuditChainEntry.model_validate(obj)

    def tenants(self) -> List[str]:
        out: List[str] = []
        for name in sorted(os.listdir(self.root)):
            if _TENANT_DIR_RE.match(name) and os.path.isfile(os.path.join(self.root, name, "chain.jsonl")):
                out.append(name)
        return out

    def count(self, tenant_id: str) -> int:
        return sum(1 for _ in self.iter_raw(tenant_id))
