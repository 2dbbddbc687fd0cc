import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from mixwell.application.diff import BatchApplier, compute_diff, partial_failure
from mixwell.application.generation import GenerationPipeline
from mixwell.application.history import SongHistoryService
from mixwell.application.identity import identity_keys
from mixwell.application.locks import Deadline, KeyedLocks
from mixwell.application.playlists import PlaylistService
from mixwell.crosscutting.logging import CorrelationContext, log_refresh_complete, log_refresh_start
from mixwell.domain.entities import (
    PlatformKind,
    PlaylistSpec,
    PromptContext,
    RefreshOutcome,
    RefreshStatus,
    Trigger,
    UpdateMode,
)
from mixwell.domain.errors import RefreshTimeout
from mixwell.domain.ports import PlatformAdapter


logger = logging.getLogger(__name__)

REFERENCE_TRACK_COUNT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshOrchestrator:
    """Runs one regeneration cycle for a committed playlist.

    Manual and automatic triggers share this code path and the same
    per-playlist lock. The lock is try-acquired: a second caller gets
    ``CONCURRENT_REFRESH_SKIPPED`` immediately instead of waiting.
    """

    def __init__(self,
                 playlists: PlaylistService,
                 history: SongHistoryService,
                 generation: GenerationPipeline,
                 applier: BatchApplier,
                 adapters: Dict[PlatformKind, PlatformAdapter],
                 timeout_s: Optional[float] = 300,
                 locks: Optional[KeyedLocks] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.playlists = playlists
        self.history = history
        self.generation = generation
        self.applier = applier
        self.adapters = adapters
        self.timeout_s = timeout_s
        self.locks = locks or KeyedLocks()
        self.clock = clock

    def refresh(self,
                playlist_id: str,
                trigger: Trigger = Trigger.MANUAL,
                song_count: Optional[int] = None,
                mode: Optional[UpdateMode] = None,
                new_artists_only: Optional[bool] = None) -> RefreshOutcome:
        """Regenerate a playlist and apply the result to the live platform playlist.

        Args:
            playlist_id: Committed playlist id
            trigger: Manual or automatic
            song_count: Tracks to select, defaults to the playlist's track count
            mode: Append or replace, defaults to the playlist's configured mode
            new_artists_only: Overrides the playlist's flag when given

        Returns:
            RefreshOutcome (status APPLIED or CONCURRENT_REFRESH_SKIPPED)

        Raises:
            PlaylistNotFound: Unknown playlist
            AICapabilityFailure: Reasoning kept failing; nothing applied
            NoCandidateTracks: Nothing usable found; nothing applied
            PartialApplyFailure: Some platform calls failed; what succeeded is persisted
            RefreshTimeout: Time budget exceeded; what was applied is persisted
        """
        if not self.locks.try_acquire(playlist_id):
            logger.info(f"Refresh of {playlist_id} skipped: another refresh is in progress")
            return RefreshOutcome(playlist_id=playlist_id,
                                  status=RefreshStatus.CONCURRENT_REFRESH_SKIPPED,
                                  trigger=trigger)
        try:
            with CorrelationContext(playlist_id=playlist_id, trigger=trigger.value):
                return self._refresh_locked(playlist_id, trigger, song_count, mode, new_artists_only)
        finally:
            self.locks.release(playlist_id)

    def is_refreshing(self, playlist_id: str) -> bool:
        return self.locks.is_held(playlist_id)

    def _refresh_locked(self,
                        playlist_id: str,
                        trigger: Trigger,
                        song_count: Optional[int],
                        mode: Optional[UpdateMode],
                        new_artists_only: Optional[bool]) -> RefreshOutcome:
        started = time.monotonic()
        deadline = Deadline(self.timeout_s)

        spec = self.playlists.get(playlist_id)
        mode = mode or spec.auto_update.mode
        song_count = song_count or spec.track_count
        if new_artists_only is None:
            new_artists_only = spec.new_artists_only

        log_refresh_start(logger, playlist_id, trigger.value, mode=mode.value, song_count=song_count)

        account = spec.account
        adapter = self.adapters[account.kind]
        constraints = self.history.constraints(spec.owner_id, spec.id)

        with CorrelationContext(stage='read_live'):
            live = adapter.get_playlist_tracks(account, spec.external_playlist_id)

        exclusions = set(constraints.excluded)
        if mode == UpdateMode.APPEND:
            exclusions |= constraints.seen
            for track in live:
                exclusions.update(identity_keys(track))

        context = PromptContext(
            prompt=spec.prompt,
            track_count=song_count,
            refinements=list(spec.refinements),
            allow_explicit=spec.allow_explicit,
            new_artists_only=new_artists_only,
            reference_tracks=[f"{t.name} by {t.artist}" for t in live[:REFERENCE_TRACK_COUNT]],
            liked_keys=constraints.liked,
            disliked_keys=constraints.disliked,
        )

        with CorrelationContext(stage='generate'):
            result = self.generation.generate(
                account,
                context,
                exclusions=exclusions,
                excluded_artists=constraints.excluded_artists,
                deadline=deadline,
            )
        deadline.check('apply')

        diff = compute_diff(mode, live, result.tracks)
        with CorrelationContext(stage='apply'):
            report = self.applier.apply(account, spec.external_playlist_id, diff, deadline)

        changed = report.added + report.removed > 0
        self._persist(spec, trigger, report.added_keys, changed or not (report.failed or report.timed_out))

        if report.aborted:
            raise partial_failure(report) from report.error
        if report.timed_out:
            raise RefreshTimeout('apply', added=report.added, removed=report.removed)
        if report.failed:
            raise partial_failure(report)

        duration_ms = int((time.monotonic() - started) * 1000)
        log_refresh_complete(logger, playlist_id, trigger.value, report.added, report.removed,
                             invalid=report.invalid, duration_ms=duration_ms)
        return RefreshOutcome(
            playlist_id=playlist_id,
            status=RefreshStatus.APPLIED,
            trigger=trigger,
            added=report.added,
            removed=report.removed,
            invalid=report.invalid,
            duration_ms=duration_ms,
        )

    def _persist(self, spec: PlaylistSpec, trigger: Trigger, added_keys, applied: bool) -> None:
        if added_keys:
            self.history.record_seen(spec.owner_id, spec.id, added_keys)
        if not applied:
            return

        now = self.clock()

        def mutate(current: PlaylistSpec) -> PlaylistSpec:
            if trigger == Trigger.MANUAL:
                return current.with_timestamps(last_manual_refresh_at=now)
            return current.with_timestamps(last_auto_refresh_at=now)

        self.playlists.update(spec.id, mutate)
