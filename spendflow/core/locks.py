"""
Keyed Locking

One logical lock per key (a request id, or a budget line + period):
- Writers on the same key are serialized
- Writers on different keys never contend
- Acquisition is bounded: a few attempts with exponential backoff, then Busy

No operation waits indefinitely. A caller that cannot get its lock
promptly receives BusyError and is expected to retry later.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional

from spendflow.services.errors import BusyError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLockManager:
    """
    Per-key mutual exclusion with bounded wait.

    Usage:
        locks = KeyedLockManager(timeout=0.5, attempts=3, backoff=0.05)
        with locks.hold("req-1"):
            ...  # single writer for req-1
    """

    def __init__(
        self,
        name: str = "locks",
        timeout: float = 0.5,
        attempts: int = 3,
        backoff: float = 0.05,
        max_backoff: float = 1.0,
    ):
        self.name = name
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.max_backoff = max_backoff
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def acquire(self, key: Hashable) -> _Entry:
        entry = self._checkout(key)
        for attempt in range(self.attempts):
            if entry.lock.acquire(timeout=self.timeout):
                return entry
            if attempt < self.attempts - 1:
                delay = min(self.backoff * (2 ** attempt), self.max_backoff)
                logger.debug(
                    f"{self.name}: lock {key!r} busy (attempt {attempt + 1}/{self.attempts}), "
                    f"retrying in {delay:.3f}s"
                )
                time.sleep(delay)
        self._checkin(key, entry)
        logger.warning(f"{self.name}: gave up on lock {key!r} after {self.attempts} attempts")
        raise BusyError(str(key), retry_after=self.timeout * self.attempts)

    def release(self, key: Hashable, entry: _Entry) -> None:
        entry.lock.release()
        self._checkin(key, entry)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        entry = self.acquire(key)
        try:
            yield
        finally:
            self.release(key, entry)

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            entry: Optional[_Entry] = self._entries.get(key)
            return bool(entry and entry.lock.locked())

    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)
