import threading
from datetime import datetime, timezone

import pytest

from mixwell.application.aggregator import CandidateAggregator
from mixwell.application.diff import BatchApplier
from mixwell.application.generation import GenerationPipeline
from mixwell.application.history import SongHistoryService
from mixwell.application.orchestrator import RefreshOrchestrator
from mixwell.application.playlists import PlaylistService
from mixwell.application.reasoning import FixedReasoning, ReasoningGateway
from mixwell.domain.entities import PlatformKind, RefreshStatus, Trigger, UpdateMode
from mixwell.domain.errors import (
    NoCandidateTracks,
    PartialApplyFailure,
    PermanentFailure,
    PlaylistNotFound,
    ReauthRequired,
    RefreshTimeout,
)
from mixwell.infrastructure.storage import InMemoryStore
from mixwell.tests.fakes import FakePlatform, generated_results, make_spec, make_track


NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestRefreshOrchestrator:
    """Tests for the refresh cycle."""

    def setup_method(self):
        self.store = InMemoryStore()
        self.playlists = PlaylistService(self.store, clock=lambda: NOW)
        self.history = SongHistoryService(self.store)
        self.platform = FakePlatform(search_fn=generated_results)
        self.old = [make_track("Old Song 1", "Old Artist"), make_track("Old Song 2", "Old Artist")]
        self.platform.seed_playlist("live-1", self.old)
        self.reasoning = FixedReasoning(["pop", "dance"])
        self.sleeps = []
        self.orchestrator = self._build()
        self.playlists.create(make_spec("pl-1", "live-1", track_count=3))

    def _build(self, batch_size=100, timeout_s=300):
        adapters = {PlatformKind.SPOTIFY: self.platform}
        generation = GenerationPipeline(
            adapters,
            CandidateAggregator(adapters, pacing_ms=0, sleep=self.sleeps.append),
            ReasoningGateway(self.reasoning, sleep=self.sleeps.append),
        )
        return RefreshOrchestrator(
            self.playlists,
            self.history,
            generation,
            BatchApplier(adapters, batch_size=batch_size, sleep=self.sleeps.append),
            adapters,
            timeout_s=timeout_s,
            clock=lambda: NOW,
        )

    def _live_names(self):
        return [t.name for t in self.platform.playlists["live-1"]]

    def test_append_adds_new_tracks_and_records_history(self):
        outcome = self.orchestrator.refresh("pl-1")

        assert outcome.status == RefreshStatus.APPLIED
        assert outcome.added == 3
        assert outcome.removed == 0
        assert self._live_names() == ["Old Song 1", "Old Song 2", "pop song 0", "pop song 1", "pop song 2"]
        assert len(self.history.load("user-1", "pl-1").seen) == 3
        spec = self.playlists.get("pl-1")
        assert spec.timestamps.last_manual_refresh_at == NOW
        assert spec.timestamps.last_auto_refresh_at is None

    def test_second_append_does_not_repeat_tracks(self):
        self.orchestrator.refresh("pl-1")
        self.orchestrator.refresh("pl-1")

        names = self._live_names()
        assert len(names) == 8
        assert len(set(names)) == 8

    def test_live_tracks_are_passed_as_reference(self):
        self.orchestrator.refresh("pl-1")
        context = self.reasoning.plan_calls[0]
        assert context.reference_tracks == ["Old Song 1 by Old Artist", "Old Song 2 by Old Artist"]
        assert context.track_count == 3

    def test_replace_swaps_the_playlist(self):
        outcome = self.orchestrator.refresh("pl-1", mode=UpdateMode.REPLACE)

        assert outcome.removed == 2
        assert outcome.added == 3
        assert self._live_names() == ["pop song 0", "pop song 1", "pop song 2"]

    def test_replace_honors_exclusions(self):
        excluded = generated_results("pop")[0]
        self.history.exclude_keys("user-1", "pl-1", [excluded.canonical_key])

        self.orchestrator.refresh("pl-1", mode=UpdateMode.REPLACE)

        assert "pop song 0" not in self._live_names()

    def test_song_count_override(self):
        outcome = self.orchestrator.refresh("pl-1", song_count=5)
        assert outcome.added == 5

    def test_auto_trigger_sets_auto_timestamp(self):
        outcome = self.orchestrator.refresh("pl-1", trigger=Trigger.AUTO)

        assert outcome.trigger == Trigger.AUTO
        spec = self.playlists.get("pl-1")
        assert spec.timestamps.last_auto_refresh_at == NOW
        assert spec.timestamps.last_manual_refresh_at is None

    def test_concurrent_refresh_is_skipped(self):
        self.platform.gate = threading.Event()
        results = {}

        def first():
            results["first"] = self.orchestrator.refresh("pl-1")

        thread = threading.Thread(target=first)
        thread.start()
        assert self.platform.reading.wait(5)
        assert self.orchestrator.is_refreshing("pl-1")

        second = self.orchestrator.refresh("pl-1", trigger=Trigger.AUTO)

        self.platform.gate.set()
        thread.join(5)

        assert second.status == RefreshStatus.CONCURRENT_REFRESH_SKIPPED
        assert second.trigger == Trigger.AUTO
        assert results["first"].status == RefreshStatus.APPLIED
        assert not self.orchestrator.is_refreshing("pl-1")

    def test_partial_failure_persists_what_was_applied(self):
        self.orchestrator = self._build(batch_size=2)
        self.platform.add_failures = [PermanentFailure("rejected")]

        with pytest.raises(PartialApplyFailure) as exc_info:
            self.orchestrator.refresh("pl-1")

        assert exc_info.value.added == 1
        assert exc_info.value.failed_adds == 2
        assert self.history.load("user-1", "pl-1").seen == {generated_results("pop")[2].canonical_key}
        assert self.playlists.get("pl-1").timestamps.last_manual_refresh_at == NOW

    def test_total_failure_leaves_timestamps_alone(self):
        self.platform.add_failures = [PermanentFailure("rejected")]

        with pytest.raises(PartialApplyFailure):
            self.orchestrator.refresh("pl-1")

        assert self.playlists.get("pl-1").timestamps.last_manual_refresh_at is None
        assert not self.orchestrator.is_refreshing("pl-1")

    def test_expired_authorization_mid_apply_persists_what_was_applied(self):
        self.platform.add_failures = [ReauthRequired("user-1", "spotify")]

        with pytest.raises(PartialApplyFailure) as exc_info:
            self.orchestrator.refresh("pl-1", mode=UpdateMode.REPLACE)

        assert isinstance(exc_info.value.__cause__, ReauthRequired)
        assert exc_info.value.removed == 2
        assert exc_info.value.failed_adds == 3
        assert self._live_names() == []
        assert self.playlists.get("pl-1").timestamps.last_manual_refresh_at == NOW
        assert not self.orchestrator.is_refreshing("pl-1")

    def test_invalid_references_are_counted(self):
        self.reasoning.queries = ["mixed"]
        self.platform.catalog["mixed"] = [
            make_track("Broken", "Artist A", uri="spotify:track:nope"),
            make_track("Fine", "Artist B"),
            make_track("Also Fine", "Artist C"),
        ]

        outcome = self.orchestrator.refresh("pl-1")

        assert outcome.status == RefreshStatus.APPLIED
        assert outcome.invalid == 1
        assert outcome.added == 2

    def test_no_candidates_changes_nothing(self):
        self.platform.search_fn = None

        with pytest.raises(NoCandidateTracks):
            self.orchestrator.refresh("pl-1")

        assert self._live_names() == ["Old Song 1", "Old Song 2"]
        assert self.playlists.get("pl-1").timestamps.last_manual_refresh_at is None

    def test_timeout(self):
        self.orchestrator = self._build(timeout_s=0)
        with pytest.raises(RefreshTimeout):
            self.orchestrator.refresh("pl-1")
        assert self.platform.add_calls == []

    def test_unknown_playlist(self):
        with pytest.raises(PlaylistNotFound):
            self.orchestrator.refresh("missing")
        assert not self.orchestrator.is_refreshing("missing")
