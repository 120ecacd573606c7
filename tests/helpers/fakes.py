from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self._t = start or datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._t

    def advance(self, seconds: float = 0.0, **kw: float) -> None:
        with self._lock:
            self._t = self._t + timedelta(seconds=float(seconds), **kw)


class TickingClock(FakeClock):
    """Advances by `step` on every read, for deadline tests."""

    def __init__(self, start: Optional[datetime] = None, *, step: timedelta = timedelta(seconds=1)):
        super().__init__(start)
        self.step = step

    def now(self) -> datetime:
        with self._lock:
            t = self._t
            self._t = self._t + self.step
            return t


@dataclass
class FakeBlobStore:
    fail_delete: Set[str] = field(default_factory=set)
    fail_archive: Set[str] = field(default_factory=set)
    deleted: List[str] = field(default_factory=list)
    archived: Dict[str, str] = field(default_factory=dict)
    calls: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def delete(self, blob_id: str) -> None:
        with self._lock:
            self.calls += 1
            if blob_id in self.fail_delete:
                raise RuntimeError(f"storage backend refused delete of {blob_id}")
            self.deleted.append(blob_id)

    def archive(self, blob_id: str, tier: str = "archive") -> str:
        with self._lock:
            self.calls += 1
            if blob_id in self.fail_archive:
                raise RuntimeError(f"archive tier unavailable for {blob_id}")
            ref = f"{tier}/{blob_id}"
            self.archived[blob_id] = ref
            return ref


class BrokenHoldRegistry:
    def get_tenant_hold(self, tenant_id: str):
        raise RuntimeError("hold registry offline")
