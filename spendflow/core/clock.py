"""Time sources for the engine (real and test-controlled)."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Clock that only moves when told to. Used for escalation tests."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(hours=hours, minutes=minutes, seconds=seconds)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
