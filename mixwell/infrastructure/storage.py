import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

from mixwell.domain.entities import (
    DraftPlaylist,
    PlatformKind,
    PlaylistSpec,
    SongHistoryRecord,
    TokenRecord,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _safe_name(*parts: str) -> str:
    return "__".join(quote(part, safe="") for part in parts) + ".json"


class JsonFileStore:
    """Persistence contract on the filesystem, one JSON file per record.

    Layout under ``data_dir``: ``playlists/``, ``history/``, ``drafts/`` and
    ``tokens/``. Writes go to a temporary file in the same directory which is
    then renamed over the target, so a reader never sees a half-written record.
    """

    def __init__(self, data_dir: str):
        """Initialize file store.

        Args:
            data_dir: Root directory for all records
        """
        self.data_dir = Path(data_dir)
        self.playlists_dir = self.data_dir / "playlists"
        self.history_dir = self.data_dir / "history"
        self.drafts_dir = self.data_dir / "drafts"
        self.tokens_dir = self.data_dir / "tokens"
        for directory in (self.playlists_dir, self.history_dir, self.drafts_dir, self.tokens_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def _write(self, path: Path, data: Dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug(f"Saved {path}")

    def _read(self, path: Path, parse: Callable[[Dict[str, Any]], T]) -> Optional[T]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return parse(json.load(f))

    def _delete(self, path: Path) -> None:
        if path.exists():
            path.unlink()
            logger.debug(f"Deleted {path}")

    def _read_all(self, directory: Path, parse: Callable[[Dict[str, Any]], T]) -> List[T]:
        records = []
        for path in sorted(directory.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                records.append(self._read(path, parse))
            except (ValueError, KeyError) as e:
                logger.error(f"Skipping unreadable record {path}: {e}")
        return [r for r in records if r is not None]

    # Playlist specs
    def load_playlist_spec(self, playlist_id: str) -> Optional[PlaylistSpec]:
        return self._read(self.playlists_dir / _safe_name(playlist_id), PlaylistSpec.from_json)

    def save_playlist_spec(self, spec: PlaylistSpec) -> None:
        self._write(self.playlists_dir / _safe_name(spec.id), spec.to_json())

    def delete_playlist_spec(self, playlist_id: str) -> None:
        self._delete(self.playlists_dir / _safe_name(playlist_id))

    def list_playlist_specs(self) -> List[PlaylistSpec]:
        return self._read_all(self.playlists_dir, PlaylistSpec.from_json)

    # Song history
    def load_song_history(self, owner_id: str, scope: str) -> Optional[SongHistoryRecord]:
        return self._read(self.history_dir / _safe_name(owner_id, scope), SongHistoryRecord.from_json)

    def save_song_history(self, record: SongHistoryRecord) -> None:
        self._write(self.history_dir / _safe_name(record.owner_id, record.scope), record.to_json())

    # Drafts
    def load_draft(self, draft_id: str) -> Optional[DraftPlaylist]:
        return self._read(self.drafts_dir / _safe_name(draft_id), DraftPlaylist.from_json)

    def save_draft(self, draft: DraftPlaylist) -> None:
        self._write(self.drafts_dir / _safe_name(draft.draft_id), draft.to_json())

    def delete_draft(self, draft_id: str) -> None:
        self._delete(self.drafts_dir / _safe_name(draft_id))

    def list_drafts(self, owner_id: str) -> List[DraftPlaylist]:
        return [d for d in self._read_all(self.drafts_dir, DraftPlaylist.from_json) if d.owner_id == owner_id]

    # Tokens
    def load_token_record(self, owner_id: str, platform: PlatformKind) -> Optional[TokenRecord]:
        return self._read(self.tokens_dir / _safe_name(owner_id, platform.value), TokenRecord.from_json)

    def save_token_record(self, record: TokenRecord) -> None:
        path = self.tokens_dir / _safe_name(record.owner_id, record.platform.value)
        self._write(path, record.to_json())


class InMemoryStore:
    """Persistence contract held in process memory.

    Records are kept in their JSON form so callers can never mutate stored
    state through a returned object.
    """

    def __init__(self):
        self._playlists: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[tuple, Dict[str, Any]] = {}
        self._drafts: Dict[str, Dict[str, Any]] = {}
        self._tokens: Dict[tuple, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _get(self, table: Dict, key, parse):
        with self._lock:
            data = table.get(key)
            return None if data is None else parse(copy.deepcopy(data))

    def _put(self, table: Dict, key, data: Dict[str, Any]) -> None:
        with self._lock:
            table[key] = copy.deepcopy(data)

    def load_playlist_spec(self, playlist_id: str) -> Optional[PlaylistSpec]:
        return self._get(self._playlists, playlist_id, PlaylistSpec.from_json)

    def save_playlist_spec(self, spec: PlaylistSpec) -> None:
        self._put(self._playlists, spec.id, spec.to_json())

    def delete_playlist_spec(self, playlist_id: str) -> None:
        with self._lock:
            self._playlists.pop(playlist_id, None)

    def list_playlist_specs(self) -> List[PlaylistSpec]:
        with self._lock:
            items = [copy.deepcopy(v) for v in self._playlists.values()]
        return [PlaylistSpec.from_json(v) for v in items]

    def load_song_history(self, owner_id: str, scope: str) -> Optional[SongHistoryRecord]:
        return self._get(self._history, (owner_id, scope), SongHistoryRecord.from_json)

    def save_song_history(self, record: SongHistoryRecord) -> None:
        self._put(self._history, (record.owner_id, record.scope), record.to_json())

    def load_draft(self, draft_id: str) -> Optional[DraftPlaylist]:
        return self._get(self._drafts, draft_id, DraftPlaylist.from_json)

    def save_draft(self, draft: DraftPlaylist) -> None:
        self._put(self._drafts, draft.draft_id, draft.to_json())

    def delete_draft(self, draft_id: str) -> None:
        with self._lock:
            self._drafts.pop(draft_id, None)

    def list_drafts(self, owner_id: str) -> List[DraftPlaylist]:
        with self._lock:
            items = [copy.deepcopy(v) for v in self._drafts.values() if v["ownerId"] == owner_id]
        return [DraftPlaylist.from_json(v) for v in items]

    def load_token_record(self, owner_id: str, platform: PlatformKind) -> Optional[TokenRecord]:
        return self._get(self._tokens, (owner_id, platform.value), TokenRecord.from_json)

    def save_token_record(self, record: TokenRecord) -> None:
        self._put(self._tokens, (record.owner_id, record.platform.value), record.to_json())
