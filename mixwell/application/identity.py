import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from mixwell.domain.entities import CandidateTrack, PlatformAccount
from mixwell.domain.normalization import meta_key, normalize_artist_tokens
from mixwell.domain.ports import PlatformAdapter


logger = logging.getLogger(__name__)


def identity_keys(track: CandidateTrack) -> List[str]:
    """Every key a track can be recognized by: its canonical key and its name|artist key."""
    keys = [track.canonical_key]
    fallback = meta_key(track.name, track.artist)
    if fallback != track.canonical_key:
        keys.append(fallback)
    return keys


def dedupe_by_key(tracks: Iterable[CandidateTrack]) -> List[CandidateTrack]:
    """Keep the first occurrence of each canonical key, preserving order.

    Idempotent: deduplicating the output again returns the same list.
    """
    seen = set()
    unique: List[CandidateTrack] = []
    for track in tracks:
        if track.canonical_key in seen:
            continue
        seen.add(track.canonical_key)
        unique.append(track)
    return unique


@dataclass
class ResolveResult:
    """Result of cross-platform track resolution."""

    track: Optional[CandidateTrack]
    reason: str
    artist_overlap: float = 0.0


class TrackIdentityResolver:
    """Matches a track on another platform by name and primary artist.

    Resolution is best effort: the target platform's top search result for
    ``"<name> <artist>"`` is accepted as the match. It is not guaranteed to be
    the same recording, so callers must treat the result as a heuristic.
    """

    def __init__(self, adapters: Dict, search_limit: int = 1):
        self.adapters = adapters
        self.search_limit = search_limit

    def resolve(self, track: CandidateTrack, target: PlatformAccount) -> ResolveResult:
        """Find ``track`` on the target account's platform.

        Args:
            track: Source track (any platform)
            target: Account on the platform to materialize the track on

        Returns:
            ResolveResult with the top search hit, or reason ``not_found``
        """
        if track.platform == target.kind:
            return ResolveResult(track=track, reason="same_platform", artist_overlap=1.0)

        adapter: PlatformAdapter = self.adapters[target.kind]
        query = f"{track.name} {track.artist}".strip()
        results = adapter.search_tracks(target, query, self.search_limit)
        if not results:
            logger.info(f"No {target.kind.value} match for '{track.name}' by {track.artist}")
            return ResolveResult(track=None, reason="not_found")

        top = results[0]
        overlap = self._artist_overlap(track.artist, top.artist)
        if overlap == 0.0:
            logger.warning(
                f"Top {target.kind.value} result for '{track.name}' has a different artist: "
                f"{top.artist!r} vs {track.artist!r}"
            )
        return ResolveResult(track=top, reason="top_result", artist_overlap=overlap)

    def resolve_all(self, tracks: Iterable[CandidateTrack], target: PlatformAccount) -> List[CandidateTrack]:
        """Resolve a list of tracks, dropping the ones with no match and keeping order."""
        resolved: List[CandidateTrack] = []
        for track in tracks:
            result = self.resolve(track, target)
            if result.track is not None:
                resolved.append(result.track)
        return dedupe_by_key(resolved)

    def _artist_overlap(self, source: str, target: str) -> float:
        src = set(normalize_artist_tokens([source]))
        tgt = set(normalize_artist_tokens([target]))
        if not src or not tgt:
            return 0.0
        return len(src & tgt) / len(src | tgt)
