import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from mixwell.application.identity import identity_keys
from mixwell.application.locks import KeyedLocks
from mixwell.domain.entities import GLOBAL_SCOPE, CandidateTrack, Reaction, SongHistoryRecord
from mixwell.domain.normalization import normalize_string
from mixwell.domain.ports import Store


logger = logging.getLogger(__name__)

ARTIST_STRIKE_THRESHOLD = 3


@dataclass
class HistoryConstraints:
    """Filters and biases for one generation, merged from a scope and the owner's global record."""

    seen: Set[str] = field(default_factory=set)
    excluded: Set[str] = field(default_factory=set)
    excluded_artists: Set[str] = field(default_factory=set)
    liked: Set[str] = field(default_factory=set)
    disliked: Set[str] = field(default_factory=set)


class SongHistoryService:
    """Read-modify-write access to SongHistoryRecords.

    Updates to the same (owner, scope) are serialized so concurrent refreshes
    and user actions never lose each other's additions.
    """

    def __init__(self, store: Store, artist_strike_threshold: int = ARTIST_STRIKE_THRESHOLD):
        self.store = store
        self.artist_strike_threshold = artist_strike_threshold
        self._locks = KeyedLocks()

    def load(self, owner_id: str, scope: str = GLOBAL_SCOPE) -> SongHistoryRecord:
        record = self.store.load_song_history(owner_id, scope)
        return record if record is not None else SongHistoryRecord(owner_id=owner_id, scope=scope)

    def constraints(self, owner_id: str, scope: str = GLOBAL_SCOPE) -> HistoryConstraints:
        """Seen keys come from ``scope`` only; exclusions and reactions also include the global record."""
        scoped = self.load(owner_id, scope)
        records = [scoped]
        if scope != GLOBAL_SCOPE:
            records.append(self.load(owner_id, GLOBAL_SCOPE))

        result = HistoryConstraints(seen=set(scoped.seen))
        for record in records:
            result.excluded |= record.excluded
            result.excluded_artists |= record.excluded_artists
            result.liked |= record.liked()
            result.disliked |= record.disliked()
        # A key reacted to in both records keeps the scoped reaction
        result.liked -= scoped.disliked()
        result.disliked -= scoped.liked()
        return result

    def _update(self, owner_id: str, scope: str, mutate) -> SongHistoryRecord:
        with self._locks.hold(f"{owner_id}:{scope}"):
            record = self.load(owner_id, scope)
            mutate(record)
            self.store.save_song_history(record)
            return record

    def record_seen(self, owner_id: str, scope: str, keys: Iterable[str]) -> SongHistoryRecord:
        keys = set(keys)

        def mutate(record: SongHistoryRecord) -> None:
            record.seen |= keys

        return self._update(owner_id, scope, mutate)

    def exclude(self, owner_id: str, scope: str, track: CandidateTrack) -> SongHistoryRecord:
        """Permanently exclude a track.

        Each newly excluded track is a strike against its primary artist; at
        the threshold the artist itself is excluded.
        """
        keys = identity_keys(track)
        artist = normalize_string(track.artist)

        def mutate(record: SongHistoryRecord) -> None:
            record.link(keys)
            if all(k in record.excluded for k in keys):
                return
            record.excluded.update(keys)
            if not artist:
                return
            record.artist_strikes[artist] = record.artist_strikes.get(artist, 0) + 1
            if record.artist_strikes[artist] >= self.artist_strike_threshold and artist not in record.excluded_artists:
                record.excluded_artists.add(artist)
                logger.info(f"Artist '{track.artist}' excluded after "
                            f"{record.artist_strikes[artist]} excluded songs")

        return self._update(owner_id, scope, mutate)

    def exclude_keys(self, owner_id: str, scope: str, keys: Iterable[str],
                     groups: Optional[Iterable[Iterable[str]]] = None) -> SongHistoryRecord:
        """Exclude raw identity keys.

        Each entry of ``groups`` lists the keys of one track, so a later
        ``include_again`` on any of them restores the track as a whole.
        """
        keys = set(keys)
        groups = [list(g) for g in groups or []]

        def mutate(record: SongHistoryRecord) -> None:
            record.excluded |= keys
            for group in groups:
                record.link(group)

        return self._update(owner_id, scope, mutate)

    def include_again(self, owner_id: str, scope: str, key: str) -> SongHistoryRecord:
        def mutate(record: SongHistoryRecord) -> None:
            linked = record.keys_linked_to(key)
            record.excluded -= linked
            for k in linked:
                record.linked_keys.pop(k, None)

        return self._update(owner_id, scope, mutate)

    def allow_artist(self, owner_id: str, scope: str, artist: str) -> SongHistoryRecord:
        name = normalize_string(artist)

        def mutate(record: SongHistoryRecord) -> None:
            record.excluded_artists.discard(name)
            record.artist_strikes.pop(name, None)

        return self._update(owner_id, scope, mutate)

    def react(self, owner_id: str, scope: str, key: str, reaction: Reaction) -> SongHistoryRecord:
        def mutate(record: SongHistoryRecord) -> None:
            record.reactions[key] = reaction

        return self._update(owner_id, scope, mutate)

    def clear_reaction(self, owner_id: str, scope: str, key: str) -> SongHistoryRecord:
        def mutate(record: SongHistoryRecord) -> None:
            record.reactions.pop(key, None)

        return self._update(owner_id, scope, mutate)


class RefinementLedger:
    """Ordered, de-duplicated refinement instructions."""

    def __init__(self, entries: Optional[Iterable[str]] = None):
        self._entries: List[str] = []
        for entry in entries or []:
            self.add(entry)

    @staticmethod
    def _clean(instruction: str) -> str:
        return " ".join((instruction or "").split())

    def add(self, instruction: str) -> bool:
        """Append an instruction. Returns False for blanks and case-insensitive repeats."""
        cleaned = self._clean(instruction)
        if not cleaned:
            return False
        if cleaned.lower() in (e.lower() for e in self._entries):
            return False
        self._entries.append(cleaned)
        return True

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

