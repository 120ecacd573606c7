from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
from typing import Dict

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class ArchiveKeyMissingError(RuntimeError):
    pass


def key_id_from_key_bytes(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_archive_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def write_archive_key(path: str, key_bytes: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(key_bytes)
    best_effort_restrict_permissions(path)


def read_archive_key(path: str) -> bytes:
    if not os.path.exists(path):
        raise ArchiveKeyMissingError(f"Archive key not found at {path!r}")
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != 32:
        raise ValueError("Archive key must be 32 bytes (AES-256).")
    return b


def best_effort_restrict_permissions(path: str) -> None:
    try:
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError:
        return


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, object]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": 1, "key_id": key_id_from_key_bytes(key), "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, object], aad: bytes = b"") -> bytes:
    if blob.get("v") != 1:
        raise ValueError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    nonce = _b64d(str(blob["nonce"]))
    ct = _b64d(str(blob["ciphertext"]))
    return aes.decrypt(nonce, ct, aad or None)


def encrypt_to_bytes(key: bytes, plaintext: bytes, aad: bytes = b"") -> bytes:
    return json.dumps(aesgcm_encrypt(key, plaintext, aad), sort_keys=True).encode("utf-8")


def decrypt_from_bytes(key: bytes, data: bytes, aad: bytes = b"") -> bytes:
    return aesgcm_decrypt(key, json.loads(data.decode("utf-8")), aad)
