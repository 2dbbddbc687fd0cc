import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from mixwell.application.history import RefinementLedger
from mixwell.application.locks import KeyedLocks
from mixwell.application.scheduling import compute_next_run
from mixwell.domain.entities import AutoUpdateConfig, Frequency, PlaylistSpec
from mixwell.domain.errors import PlaylistNotFound
from mixwell.domain.ports import Store


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaylistService:
    """Committed playlist specs: lookups and serialized read-modify-write updates.

    The refresh path, the scheduler and user settings changes all write the
    same record, so every change goes through ``update`` and only touches the
    fields it owns.
    """

    def __init__(self, store: Store, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock
        self._locks = KeyedLocks()

    def get(self, playlist_id: str) -> PlaylistSpec:
        spec = self.store.load_playlist_spec(playlist_id)
        if spec is None:
            raise PlaylistNotFound(f"Playlist {playlist_id} not found")
        return spec

    def list(self, owner_id: Optional[str] = None) -> List[PlaylistSpec]:
        specs = self.store.list_playlist_specs()
        if owner_id is not None:
            specs = [s for s in specs if s.owner_id == owner_id]
        return specs

    def create(self, spec: PlaylistSpec) -> PlaylistSpec:
        if spec.auto_update.frequency != Frequency.NONE and spec.timestamps.next_run_at is None:
            spec = spec.with_timestamps(next_run_at=compute_next_run(spec.auto_update, self.clock()))
        self.store.save_playlist_spec(spec)
        logger.info(f"Created playlist spec {spec.id} ({spec.name})")
        return spec

    def update(self, playlist_id: str, mutate: Callable[[PlaylistSpec], PlaylistSpec]) -> PlaylistSpec:
        with self._locks.hold(playlist_id):
            updated = mutate(self.get(playlist_id))
            self.store.save_playlist_spec(updated)
            return updated

    def update_settings(self, playlist_id: str, auto_update: AutoUpdateConfig) -> PlaylistSpec:
        """Change auto-update settings. ``nextRunAt`` is recomputed immediately."""
        now = self.clock()

        def mutate(spec: PlaylistSpec) -> PlaylistSpec:
            next_run = None
            if auto_update.frequency != Frequency.NONE:
                next_run = compute_next_run(auto_update, now)
            return replace(spec, auto_update=auto_update).with_timestamps(next_run_at=next_run)

        spec = self.update(playlist_id, mutate)
        logger.info(f"Updated auto-update settings for {playlist_id}: "
                    f"{auto_update.frequency.value} next_run_at={spec.timestamps.next_run_at}")
        return spec

    def add_refinement(self, playlist_id: str, instruction: str) -> PlaylistSpec:
        def mutate(spec: PlaylistSpec) -> PlaylistSpec:
            ledger = RefinementLedger(spec.refinements)
            ledger.add(instruction)
            return replace(spec, refinements=ledger.entries)

        return self.update(playlist_id, mutate)

    def delete(self, playlist_id: str) -> None:
        with self._locks.hold(playlist_id):
            self.get(playlist_id)
            self.store.delete_playlist_spec(playlist_id)
        logger.info(f"Deleted playlist spec {playlist_id}")
