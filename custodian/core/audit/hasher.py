from __future__ import annotations

import hashlib
import json
from typing import Any, Dict


def canonical_json(obj: Dict[str, Any]) -> str:
    # Deterministic JSON (no whitespace, sorted keys)
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def _sha256(*parts: str) -> str:
    h = hashlib.sha256()
    for i, p in enumerate(parts):
        if i:
            h.update(b"\n")
        h.update(p.encode("utf-8"))
    return h.hexdigest()


def payload_envelope(*, tenant_id: str, record_id: str, action: str, sequence_index: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    # Identity fields are hashed with the payload so none of them can be edited in place.
    return {
        "tenant_id": tenant_id,
        "record_id": record_id,
        "action": action,
        "sequence_index": int(sequence_index),
        "data": payload,
    }


def compute_payload_hash(*, tenant_id: str, record_id: str, action: str, sequence_index: int, payload: Dict[str, Any]) -> str:
    env = payload_envelope(tenant_id=tenant_id, record_id=record_id, action=action, sequence_index=sequence_index, payload=payload)
    return _sha256(canonical_json(env))


def compute_entry_hash(payload_hash: str, previous_entry_hash: str, timestamp_utc: str) -> str:
    return _sha256(payload_hash, previous_entry_hash, timestamp_utc)


# Disposal bookkeeping changes as a record is processed and is not part of its content.
RECORD_HASH_EXCLUDE = frozenset({"disposal_status", "disposal_method_used", "disposal_at", "archive_ref"})


def compute_record_hash(record_fields: Dict[str, Any]) -> str:
    """Fingerprint of a record's content, journalled before its bytes are destroyed."""
    data = {k: v for k, v in record_fields.items() if k not in RECORD_HASH_EXCLUDE}
    return _sha256(canonical_json(data))
