import threading

import pytest

from mixwell.application.aggregator import CandidateAggregator
from mixwell.application.history import RefinementLedger, SongHistoryService
from mixwell.domain.entities import GLOBAL_SCOPE, PlatformKind, Reaction
from mixwell.domain.errors import NoCandidateTracks
from mixwell.infrastructure.storage import InMemoryStore
from mixwell.tests.fakes import SPOTIFY_ACCOUNT, FakePlatform, make_track


class TestSongHistoryService:
    """Tests for seen/excluded/reaction bookkeeping."""

    def setup_method(self):
        self.store = InMemoryStore()
        self.history = SongHistoryService(self.store)

    def test_empty_history(self):
        record = self.history.load("owner", "pl-1")
        assert record.seen == set()
        assert record.scope == "pl-1"

    def test_record_seen_accumulates(self):
        self.history.record_seen("owner", "pl-1", ["k1", "k2"])
        self.history.record_seen("owner", "pl-1", ["k2", "k3"])
        assert self.history.load("owner", "pl-1").seen == {"k1", "k2", "k3"}

    def test_constraints_merge_global_exclusions_but_not_global_seen(self):
        self.history.record_seen("owner", GLOBAL_SCOPE, ["g-seen"])
        self.history.exclude_keys("owner", GLOBAL_SCOPE, ["g-excluded"])
        self.history.record_seen("owner", "pl-1", ["p-seen"])
        self.history.exclude_keys("owner", "pl-1", ["p-excluded"])

        constraints = self.history.constraints("owner", "pl-1")

        assert constraints.seen == {"p-seen"}
        assert constraints.excluded == {"g-excluded", "p-excluded"}

    def test_exclude_adds_identity_keys(self):
        track = make_track("Toxic", "Britney Spears", isrc="USJI10301067")
        record = self.history.exclude("owner", "pl-1", track)
        assert record.excluded == {"isrc:USJI10301067", "meta:toxic|britney spears"}

    def test_three_excluded_songs_exclude_the_artist(self):
        for title in ("Toxic", "Lucky", "Stronger"):
            record = self.history.exclude("owner", GLOBAL_SCOPE, make_track(title, "Britney Spears"))

        assert record.artist_strikes["britney spears"] == 3
        assert "britney spears" in record.excluded_artists

    def test_excluding_same_song_twice_is_one_strike(self):
        track = make_track("Toxic", "Britney Spears")
        self.history.exclude("owner", GLOBAL_SCOPE, track)
        record = self.history.exclude("owner", GLOBAL_SCOPE, track)
        assert record.artist_strikes["britney spears"] == 1

    def test_allow_artist_clears_strikes(self):
        for title in ("Toxic", "Lucky", "Stronger"):
            self.history.exclude("owner", GLOBAL_SCOPE, make_track(title, "Britney Spears"))

        record = self.history.allow_artist("owner", GLOBAL_SCOPE, "Britney Spears")

        assert "britney spears" not in record.excluded_artists
        assert "britney spears" not in record.artist_strikes

    def test_include_again_removes_exclusion(self):
        self.history.exclude_keys("owner", "pl-1", ["k1", "k2"])
        record = self.history.include_again("owner", "pl-1", "k1")
        assert record.excluded == {"k2"}

    def test_include_again_restores_the_whole_track(self):
        track = make_track("Toxic", "Britney Spears", isrc="USJI10301067")
        self.history.exclude("owner", "pl-1", track)
        aggregator = CandidateAggregator({PlatformKind.SPOTIFY: FakePlatform(catalog={"pop": [track]})},
                                         pacing_ms=0, sleep=lambda s: None)

        excluded = self.history.constraints("owner", "pl-1").excluded
        with pytest.raises(NoCandidateTracks):
            aggregator.aggregate(SPOTIFY_ACCOUNT, ["pop"], 10, exclusions=excluded)

        record = self.history.include_again("owner", "pl-1", "isrc:USJI10301067")

        assert record.excluded == set()
        excluded = self.history.constraints("owner", "pl-1").excluded
        assert aggregator.aggregate(SPOTIFY_ACCOUNT, ["pop"], 10, exclusions=excluded).pool == [track]

    def test_include_again_by_name_key_restores_the_whole_track(self):
        track = make_track("Toxic", "Britney Spears", isrc="USJI10301067")
        self.history.exclude("owner", "pl-1", track)

        record = self.history.include_again("owner", "pl-1", "meta:toxic|britney spears")

        assert record.excluded == set()
        assert self.store.load_song_history("owner", "pl-1").linked_keys == {}

    def test_exclude_keys_links_groups(self):
        self.history.exclude_keys("owner", "pl-1", ["a1", "a2", "b1"], groups=[["a1", "a2"]])

        record = self.history.include_again("owner", "pl-1", "a2")

        assert record.excluded == {"b1"}

    def test_reactions_scoped_reaction_wins(self):
        self.history.react("owner", GLOBAL_SCOPE, "k1", Reaction.LIKED)
        self.history.react("owner", GLOBAL_SCOPE, "k2", Reaction.DISLIKED)
        self.history.react("owner", "pl-1", "k1", Reaction.DISLIKED)

        constraints = self.history.constraints("owner", "pl-1")

        assert constraints.liked == set()
        assert constraints.disliked == {"k1", "k2"}

    def test_clear_reaction(self):
        self.history.react("owner", "pl-1", "k1", Reaction.LIKED)
        record = self.history.clear_reaction("owner", "pl-1", "k1")
        assert record.reactions == {}

    def test_concurrent_updates_are_not_lost(self):
        def add(prefix):
            for i in range(50):
                self.history.record_seen("owner", "pl-1", [f"{prefix}-{i}"])

        threads = [threading.Thread(target=add, args=(p,)) for p in ("a", "b", "c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(self.history.load("owner", "pl-1").seen) == 150


class TestRefinementLedger:
    """Tests for refinement instruction bookkeeping."""

    def test_add_cleans_and_dedupes(self):
        ledger = RefinementLedger()
        assert ledger.add("  more   upbeat ")
        assert not ledger.add("More Upbeat")
        assert not ledger.add("   ")
        assert ledger.add("no ballads")
        assert ledger.entries == ["more upbeat", "no ballads"]
        assert len(ledger) == 2
