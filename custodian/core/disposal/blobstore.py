from __future__ import annotations

import os
import re
import secrets
import stat
import tempfile
import threading
from typing import Optional, Protocol

from custodian.core.crypto import decrypt_from_bytes, encrypt_to_bytes, key_id_from_key_bytes
from custodian.core.errors import BlobStoreError


TIERS = ("archive", "cold")

_BLOB_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


class BlobStore(Protocol):
    def delete(self, blob_id: str) -> None: ...

    def archive(self, blob_id: str, tier: str = "archive") -> str: ...


def _fsync_dir(path: str) -> None:
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class FileBlobStore:
    """
    Filesystem blob store.

    Layout under root:
      live/<id>                 record bytes
      archive/<id>[.enc]        archive tier
      cold/<id>[.enc]           permanent tier (read-only files)

    Deletion overwrites the bytes before unlinking. When an archive key is
    configured, archived bytes are sealed with AES-GCM, bound to the blob id.
    """

    def __init__(self, *, root: str, archive_key: Optional[bytes] = None, logger=None):
        self.root = str(root)
        self.archive_key = archive_key
        self.logger = logger
        self._lock = threading.Lock()
        for d in ("live",) + TIERS:
            os.makedirs(os.path.join(self.root, d), exist_ok=True)

    # ---------- paths ----------
    def _check_id(self, blob_id: str) -> str:
        bid = str(blob_id or "")
        if not _BLOB_ID_RE.match(bid):
            raise BlobStoreError("Invalid blob id.", blob_id=bid)
        return bid

    def live_path(self, blob_id: str) -> str:
        return os.path.join(self.root, "live", self._check_id(blob_id))

    def _archive_name(self, blob_id: str) -> str:
        return blob_id + (".enc" if self.archive_key else "")

    def resolve_ref(self, archive_ref: str) -> str:
        tier, _, name = str(archive_ref or "").partition("/")
        if tier not in TIERS or not name or "/" in name or name.startswith("."):
            raise BlobStoreError("Invalid archive reference.", archive_ref=archive_ref)
        return os.path.join(self.root, tier, name)

    # ---------- write/read ----------
    def put(self, blob_id: str, data: bytes) -> str:
        path = self.live_path(blob_id)
        with self._lock:
            self._atomic_write(path, data)
        return path

    def exists(self, blob_id: str) -> bool:
        return os.path.exists(self.live_path(blob_id))

    def read_archived(self, archive_ref: str) -> bytes:
        path = self.resolve_ref(archive_ref)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise BlobStoreError("Archived blob unreadable.", archive_ref=archive_ref, error=str(e)) from e
        if path.endswith(".enc"):
            if not self.archive_key:
                raise BlobStoreError("Archive key required to read encrypted archive.", archive_ref=archive_ref)
            blob_id = os.path.basename(path)[: -len(".enc")]
            return decrypt_from_bytes(self.archive_key, data, aad=blob_id.encode("utf-8"))
        return data

    # ---------- disposal operations ----------
    def delete(self, blob_id: str) -> None:
        path = self.live_path(blob_id)
        with self._lock:
            if not os.path.exists(path):
                # Already gone (e.g. retry after a crash between unlink and status update).
                if self.logger:
                    self.logger.warning(f"blob {blob_id} already absent; delete treated as done")
                return
            try:
                self._secure_unlink(path)
            except OSError as e:
                raise BlobStoreError("Secure delete failed.", blob_id=blob_id, error=str(e)) from e

    def archive(self, blob_id: str, tier: str = "archive") -> str:
        if tier not in TIERS:
            raise BlobStoreError("Unknown archive tier.", tier=tier)
        src = self.live_path(blob_id)
        name = self._archive_name(blob_id)
        dst = os.path.join(self.root, tier, name)
        ref = f"{tier}/{name}"
        with self._lock:
            if not os.path.exists(src):
                if os.path.exists(dst):
                    return ref
                raise BlobStoreError("Blob to archive not found.", blob_id=blob_id)
            try:
                with open(src, "rb") as f:
                    data = f.read()
                if self.archive_key:
                    data = encrypt_to_bytes(self.archive_key, data, aad=blob_id.encode("utf-8"))
                self._atomic_write(dst, data)
                if tier == "cold":
                    os.chmod(dst, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
                self._secure_unlink(src)
            except OSError as e:
                raise BlobStoreError("Archive failed.", blob_id=blob_id, tier=tier, error=str(e)) from e
        if self.logger:
            key_id = key_id_from_key_bytes(self.archive_key) if self.archive_key else "none"
            self.logger.info(f"blob {blob_id} archived to {ref} key_id={key_id}")
        return ref

    # ---------- internals ----------
    def _atomic_write(self, path: str, data: bytes) -> None:
        d = os.path.dirname(path)
        fd, tmp = tempfile.mkstemp(prefix=".tmp_", dir=d)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if os.path.exists(path):
                os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
        _fsync_dir(d)

    def _secure_unlink(self, path: str) -> None:
        size = os.path.getsize(path)
        with open(path, "r+b") as f:
            remaining = size
            while remaining > 0:
                chunk = min(remaining, 1 << 20)
                f.write(secrets.token_bytes(chunk))
                remaining -= chunk
            f.flush()
            os.fsync(f.fileno())
        os.remove(path)
        _fsync_dir(os.path.dirname(path))
