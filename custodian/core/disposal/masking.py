"""
Field-level masking applied before REDACT_THEN_DELETE removes the bytes.

Known field names get a shape-preserving mask; anything else that looks
personal is replaced outright; free text has embedded identifiers scrubbed.
"""

from __future__ import annotations

import os
import re
from typing import Any, Callable, Dict, List, Tuple


REDACTED = "[REDACTED]"

EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
PHONE_RE = re.compile(r"(\+?\d{1,3}[-.\s]?)?(\(?\d{2,3}\)?[-.\s]?)\d{3}[-.\s]?(\d{4})")
# 13-digit national identity numbers
ID_NUMBER_RE = re.compile(r"\b\d{13}\b")

PERSONAL_KEY_PATTERNS = [
    re.compile(r"name"),
    re.compile(r"address"),
    re.compile(r"birth"),
    re.compile(r"passport"),
    re.compile(r"(^|_)id_?(number|no)$"),
]


def mask_email(value: str) -> str:
    match = EMAIL_RE.search(value)
    if not match:
        return REDACTED
    return f"***@{match.group(2)}"


def mask_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) < 4:
        return "***-***-****"
    return f"***-***-{digits[-4:]}"


def mask_name(value: str) -> str:
    value = value.strip()
    if not value:
        return REDACTED
    return f"{value[0]}. ***"


def mask_id_last4(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) < 4:
        return "****"
    return f"*********{digits[-4:]}"


def scrub_free_text(text: str) -> str:
    text = EMAIL_RE.sub(lambda m: f"***@{m.group(2)}", text)
    text = ID_NUMBER_RE.sub("*************", text)
    text = PHONE_RE.sub(lambda m: f"***-***-{m.group(3)}", text)
    return text


FIELD_MASKS: Dict[str, Callable[[str], str]] = {
    "full_name": mask_name,
    "first_name": mask_name,
    "last_name": mask_name,
    "client_name": mask_name,
    "email": mask_email,
    "phone": mask_phone,
    "mobile": mask_phone,
    "fax": mask_phone,
    "id_number": mask_id_last4,
    "account_number": mask_id_last4,
    "passport_number": mask_id_last4,
    "address": lambda _: REDACTED,
    "city": lambda _: REDACTED,
    "postal_code": lambda v: f"{str(v)[:2]}**" if v else REDACTED,
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        return {k: _mask_value(k, v) for k, v in value.items()}
    if isinstance(value, list):
        return [_mask_value(key, v) for v in value]
    k = (key or "").lower()
    if k in FIELD_MASKS:
        return FIELD_MASKS[k](str(value))
    if any(p.search(k) for p in PERSONAL_KEY_PATTERNS):
        return REDACTED
    if isinstance(value, str):
        return scrub_free_text(value)
    return value


def mask_fields(fields: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Returns (masked_fields, changed_keys). changed_keys lists top-level keys
    whose value differs after masking.
    """
    masked: Dict[str, Any] = {}
    changed: List[str] = []
    for k, v in (fields or {}).items():
        mv = _mask_value(str(k), v)
        masked[k] = mv
        if mv != v:
            changed.append(str(k))
    return masked, sorted(changed)


def redact_filename(filename: str) -> str:
    """report_smith.pdf -> REDACTED_ith.pdf"""
    if not filename:
        return ""
    stem, ext = os.path.splitext(filename)
    return f"REDACTED_{stem[-3:]}{ext}"
