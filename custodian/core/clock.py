from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # Naive datetimes are taken to be UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(s: str) -> datetime:
    s = str(s).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(s))


def add_years(dt: datetime, years: int) -> datetime:
    try:
        return dt.replace(year=dt.year + int(years))
    except ValueError:
        # Feb 29 -> Feb 28 in a non-leap target year
        return dt.replace(year=dt.year + int(years), day=28)
