from datetime import datetime, timezone

import pytest

from mixwell.domain.entities import (
    ChatMessage,
    DraftPlaylist,
    PlatformKind,
    Reaction,
    SongHistoryRecord,
    TokenRecord,
)
from mixwell.infrastructure.storage import InMemoryStore, JsonFileStore
from mixwell.tests.fakes import SPOTIFY_ACCOUNT, make_spec, make_track


NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_draft(draft_id="d-1", owner_id="user-1"):
    return DraftPlaylist(
        draft_id=draft_id,
        owner_id=owner_id,
        account=SPOTIFY_ACCOUNT,
        prompt="Early 2000's pop music",
        track_count=2,
        created_at=NOW,
        updated_at=NOW,
        tracks=[make_track("Toxic", "Britney Spears", isrc="USJI10301067")],
        excluded_songs={"meta:lucky|britney spears"},
        excluded_groups=[["meta:lucky|britney spears"]],
        chat_history=[ChatMessage("user", "Early 2000's pop music")],
    )


@pytest.fixture(params=["json", "memory"])
def store(request, tmp_path):
    if request.param == "json":
        return JsonFileStore(str(tmp_path / "data"))
    return InMemoryStore()


def test_playlist_specs(store):
    spec = make_spec("pl/1")
    store.save_playlist_spec(spec)

    assert store.load_playlist_spec("pl/1") == spec
    assert store.list_playlist_specs() == [spec]

    store.delete_playlist_spec("pl/1")
    assert store.load_playlist_spec("pl/1") is None
    store.delete_playlist_spec("pl/1")


def test_song_history(store):
    record = SongHistoryRecord(owner_id="user-1", scope="pl-1", seen={"k1"},
                               artist_strikes={"britney spears": 2}, reactions={"k1": Reaction.LIKED})
    record.link(["isrc:USJI10301067", "meta:toxic|britney spears"])
    store.save_song_history(record)

    assert store.load_song_history("user-1", "pl-1") == record
    assert store.load_song_history("user-1", "global") is None


def test_drafts_are_listed_per_owner(store):
    store.save_draft(make_draft("d-1", "user-1"))
    store.save_draft(make_draft("d-2", "user-2"))

    assert [d.draft_id for d in store.list_drafts("user-1")] == ["d-1"]
    assert store.load_draft("d-2").excluded_songs == {"meta:lucky|britney spears"}
    assert store.load_draft("d-2").excluded_groups == [["meta:lucky|britney spears"]]

    store.delete_draft("d-2")
    assert store.load_draft("d-2") is None


def test_token_records(store):
    record = TokenRecord(owner_id="user-1", platform=PlatformKind.SPOTIFY, access_token="a",
                         refresh_token="r", expires_at=NOW)
    store.save_token_record(record)

    assert store.load_token_record("user-1", PlatformKind.SPOTIFY) == record
    assert store.load_token_record("user-1", PlatformKind.APPLE_MUSIC) is None


def test_in_memory_store_returns_copies():
    store = InMemoryStore()
    store.save_song_history(SongHistoryRecord(owner_id="user-1", scope="pl-1", seen={"k1"}))

    loaded = store.load_song_history("user-1", "pl-1")
    loaded.seen.add("k2")

    assert store.load_song_history("user-1", "pl-1").seen == {"k1"}


class TestJsonFileStore:
    """Filesystem specifics."""

    def test_layout_and_atomic_write(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save_playlist_spec(make_spec("pl-1"))

        assert (tmp_path / "playlists" / "pl-1.json").exists()
        assert not list((tmp_path / "playlists").glob(".tmp-*"))

    def test_unreadable_record_is_skipped(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save_playlist_spec(make_spec("pl-1"))
        (tmp_path / "playlists" / "broken.json").write_text("{not json", encoding="utf-8")

        assert [s.id for s in store.list_playlist_specs()] == ["pl-1"]

    def test_records_survive_a_new_instance(self, tmp_path):
        JsonFileStore(str(tmp_path)).save_playlist_spec(make_spec("pl-1"))
        assert JsonFileStore(str(tmp_path)).load_playlist_spec("pl-1").name == "Throwback"
