"""
Log-safe redaction.

Two layers:
- secret redaction (keys that look like credentials or salts)
- personal-data minimization (field values replaced with length + hash8)
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict


REDACT_KEYS = {
    "passphrase",
    "password",
    "secret",
    "token",
    "api_key",
    "key",
    "archive_key",
    "salt",
    "certificate_salt",
    "authorization",
}

_PERSONAL_KEYS = {"personal_fields", "email", "phone", "full_name", "name", "id_number", "address", "notes"}


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(x) for x in obj]
    return obj


def redact(obj: Any) -> Any:
    return _redact(obj)


def _hash8(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", errors="ignore")).hexdigest()[:8]


def privacy_redact(obj: Any) -> Any:
    """
    Redact secrets and drop personal values, keeping only their shape.
    """
    safe = redact(obj)
    if isinstance(safe, dict):
        out: Dict[str, Any] = {}
        for k, v in list(safe.items())[:200]:
            kk = str(k or "")
            if kk.lower() in _PERSONAL_KEYS:
                if isinstance(v, str):
                    out[f"{kk}_len"] = len(v)
                    out[f"{kk}_hash8"] = _hash8(v)
                elif isinstance(v, dict):
                    out[f"{kk}_keys"] = sorted(str(x) for x in v.keys())
                else:
                    out[f"{kk}_present"] = True
                continue
            out[kk] = privacy_redact(v)
        return out
    if isinstance(safe, list):
        return [privacy_redact(x) for x in safe[:50]]
    if isinstance(safe, str):
        return safe if len(safe) <= 200 else safe[:200] + "…"
    return safe
