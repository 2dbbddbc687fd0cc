import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from mixwell.domain.errors import RefreshTimeout


class KeyedLocks:
    """One exclusive lock per key, created on first use.

    The registry itself is guarded by a single short-lived mutex; holders of
    different keys never contend with each other. An entry lives only while
    some caller holds or waits for its key.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, List] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def try_acquire(self, key: str) -> bool:
        """Acquire without waiting. Returns False if another caller holds the key."""
        if self._checkout(key).acquire(blocking=False):
            return True
        self._checkin(key)
        return False

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
        if entry is None:
            raise RuntimeError(f"Lock for {key!r} is not held")
        entry[0].release()
        self._checkin(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._locks and self._locks[key][0].locked()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Blocking acquire for short read-modify-write sections."""
        lock = self._checkout(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)


class Deadline:
    """Overall time budget for one refresh, checked between steps."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, stage: str, added: int = 0, removed: int = 0) -> None:
        if self.expired():
            raise RefreshTimeout(stage, added=added, removed=removed)
