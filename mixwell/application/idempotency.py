import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from mixwell.domain.entities import Trigger, UpdateMode


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManualRefreshCommand:
    """A user's request to refresh a playlist now."""

    playlist_id: str
    song_count: Optional[int] = None
    mode: Optional[UpdateMode] = None
    new_artists_only: Optional[bool] = None
    idempotency_key: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Serialize command to JSON."""
        return {
            "playlistId": self.playlist_id,
            "songCount": self.song_count,
            "mode": self.mode.value if self.mode else None,
            "newArtistsOnly": self.new_artists_only,
            "idempotencyKey": self.idempotency_key,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ManualRefreshCommand":
        """Deserialize command from JSON."""
        mode = data.get("mode")
        song_count = data.get("songCount")
        return cls(
            playlist_id=data["playlistId"],
            song_count=int(song_count) if song_count is not None else None,
            mode=UpdateMode(mode) if mode else None,
            new_artists_only=data.get("newArtistsOnly"),
            idempotency_key=data.get("idempotencyKey"),
        )


def calculate_command_key(command: ManualRefreshCommand) -> str:
    """Stable key for a command without an explicit idempotency key.

    The hash covers the playlist and the refresh parameters, so identical
    submissions collapse while a different song count or mode does not.
    """
    if command.idempotency_key:
        return f"{command.playlist_id}:{command.idempotency_key}"

    payload = json.dumps(
        {k: v for k, v in command.to_json().items() if k != "idempotencyKey"},
        sort_keys=True,
    )
    return f"{command.playlist_id}:{hashlib.sha256(payload.encode('utf-8')).hexdigest()}"


class ManualRefreshDispatcher:
    """Submits manual refreshes, collapsing duplicate submissions.

    A command carrying an idempotency key that was seen within ``ttl_s``
    returns the original future instead of queuing a second refresh. Without
    an explicit key a command only collapses into an identical one that is
    still running; once that finishes, the same request refreshes again. Refreshes of the same playlist with
    different keys still meet the orchestrator's per-playlist lock.
    """

    def __init__(self,
                 orchestrator,
                 executor: Executor,
                 ttl_s: float = 600,
                 clock: Callable[[], float] = time.monotonic):
        self.orchestrator = orchestrator
        self.executor = executor
        self.ttl_s = ttl_s
        self.clock = clock
        self._submissions: Dict[str, Tuple[Future, float, bool]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [
            key for key, (future, submitted_at, explicit) in self._submissions.items()
            if future.done() and (not explicit or now - submitted_at >= self.ttl_s)
        ]
        for key in expired:
            del self._submissions[key]

    def submit(self, command: ManualRefreshCommand) -> Tuple[Future, bool]:
        """Dispatch a refresh.

        Returns:
            (future resolving to RefreshOutcome, True if this was a duplicate)
        """
        key = calculate_command_key(command)
        now = self.clock()

        with self._lock:
            self._purge(now)
            existing = self._submissions.get(key)
            if existing is not None:
                logger.info(f"Duplicate manual refresh for {command.playlist_id} collapsed")
                return existing[0], True

            future = self.executor.submit(
                self.orchestrator.refresh,
                command.playlist_id,
                Trigger.MANUAL,
                command.song_count,
                command.mode,
                command.new_artists_only,
            )
            self._submissions[key] = (future, now, bool(command.idempotency_key))

        logger.info(f"Manual refresh for {command.playlist_id} submitted")
        return future, False

    def pending(self) -> int:
        with self._lock:
            return sum(1 for future, _, _ in self._submissions.values() if not future.done())
