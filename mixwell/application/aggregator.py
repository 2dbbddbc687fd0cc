import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from mixwell.application.identity import identity_keys
from mixwell.application.locks import Deadline
from mixwell.application.retry import call_with_retry
from mixwell.domain.entities import CandidateTrack, PlatformAccount, PlatformKind
from mixwell.domain.errors import (
    NoCandidateTracks,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)
from mixwell.domain.normalization import is_unique_variation, normalize_string, song_signature
from mixwell.domain.ports import PlatformAdapter


logger = logging.getLogger(__name__)

MIN_SEARCH_LIMIT = 5
MAX_SEARCH_LIMIT = 15


def search_limit_for(song_count: int, override: Optional[int] = None) -> int:
    """Per-query result cap: half the requested songs, clamped to [5, 15]."""
    if override:
        return override
    return min(max(MIN_SEARCH_LIMIT, -(-song_count // 2)), MAX_SEARCH_LIMIT)


@dataclass
class AggregationResult:
    """Ordered, deduplicated candidate pool plus query bookkeeping."""

    pool: List[CandidateTrack]
    queries_run: int = 0
    queries_failed: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)


class CandidateAggregator:
    """Runs search queries against a platform and builds a deduplicated pool.

    Candidates are dropped when their canonical key (or name|artist key) is
    excluded or already collected, when they repeat a song signature already in
    the pool (unless the title marks a distinct variation), when they are
    explicit and explicit content is not allowed, or when their artist is
    excluded or already known to the listener.
    """

    def __init__(self,
                 adapters: Dict[PlatformKind, PlatformAdapter],
                 pacing_ms: int = 100,
                 max_retries: int = 2,
                 sleep: Callable[[float], None] = time.sleep):
        self.adapters = adapters
        self.pacing_ms = pacing_ms
        self.max_retries = max_retries
        self.sleep = sleep

    def aggregate(self,
                  account: PlatformAccount,
                  queries: Iterable[str],
                  limit: int,
                  exclusions: Optional[Set[str]] = None,
                  allow_explicit: bool = True,
                  known_artists: Optional[Set[str]] = None,
                  excluded_artists: Optional[Set[str]] = None,
                  liked: Optional[Set[str]] = None,
                  disliked: Optional[Set[str]] = None,
                  deadline: Optional[Deadline] = None) -> AggregationResult:
        """Search every query and collect unique candidates in first-seen order.

        Args:
            account: Account whose platform is searched
            queries: Ordered search queries
            limit: Per-query result cap
            exclusions: Canonical keys that must not appear in the pool
            allow_explicit: Keep tracks flagged explicit
            known_artists: Artists to drop (new-artists-only)
            excluded_artists: Artists the user excluded
            liked: Keys moved to the front of the pool
            disliked: Keys moved to the back of the pool
            deadline: Checked between queries

        Returns:
            AggregationResult with the pool

        Raises:
            NoCandidateTracks: If the pool ends empty
        """
        adapter = self.adapters[account.kind]
        exclusions = exclusions or set()
        blocked_artists = {normalize_string(a) for a in (known_artists or set())}
        blocked_artists |= {normalize_string(a) for a in (excluded_artists or set())}

        collected: Set[str] = set()
        signatures: Set[str] = set()
        pool: List[CandidateTrack] = []
        dropped = {"excluded": 0, "duplicate": 0, "explicit": 0, "artist": 0}
        queries_run = 0
        queries_failed = 0

        for index, query in enumerate(queries):
            if deadline is not None:
                deadline.check("aggregate")
            if index > 0 and self.pacing_ms > 0:
                self.sleep(self.pacing_ms / 1000.0)

            queries_run += 1
            try:
                results = call_with_retry(
                    lambda: adapter.search_tracks(account, query, limit),
                    label=f"search '{query}'",
                    max_retries=self.max_retries,
                    sleep=self.sleep,
                    deadline=deadline,
                )
            except (RateLimited, TemporaryFailure, PermanentFailure, NotFound) as e:
                queries_failed += 1
                logger.warning(f"Search query '{query}' failed, skipping: {e}")
                continue

            for track in results[:limit]:
                keys = identity_keys(track)
                if any(k in exclusions for k in keys):
                    dropped["excluded"] += 1
                    continue
                if any(k in collected for k in keys):
                    dropped["duplicate"] += 1
                    continue
                if track.explicit and not allow_explicit:
                    dropped["explicit"] += 1
                    continue
                if normalize_string(track.artist) in blocked_artists:
                    dropped["artist"] += 1
                    continue
                signature = song_signature(track.name, track.artist)
                if signature in signatures and not is_unique_variation(track.name):
                    dropped["duplicate"] += 1
                    continue

                collected.update(keys)
                signatures.add(signature)
                pool.append(track)

        logger.info(f"Aggregated {len(pool)} candidates from {queries_run} queries "
                    f"({queries_failed} failed, dropped={dropped})")

        if not pool:
            raise NoCandidateTracks(queries_run=queries_run, queries_failed=queries_failed)

        return AggregationResult(
            pool=self._apply_reaction_bias(pool, liked or set(), disliked or set()),
            queries_run=queries_run,
            queries_failed=queries_failed,
            dropped=dropped,
        )

    def _apply_reaction_bias(self, pool: List[CandidateTrack],
                             liked: Set[str], disliked: Set[str]) -> List[CandidateTrack]:
        if not liked and not disliked:
            return pool

        def rank(track: CandidateTrack) -> int:
            keys = identity_keys(track)
            if any(k in liked for k in keys):
                return 0
            if any(k in disliked for k in keys):
                return 2
            return 1

        # sorted() is stable, so first-seen order holds within each group
        return sorted(pool, key=rank)
