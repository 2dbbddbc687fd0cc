import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from mixwell.application.aggregator import CandidateAggregator, search_limit_for
from mixwell.application.locks import Deadline
from mixwell.application.reasoning import ReasoningGateway
from mixwell.domain.entities import CandidateTrack, PlatformAccount, PlatformKind, PromptContext
from mixwell.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure
from mixwell.domain.ports import PlatformAdapter


logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """Output of one plan -> aggregate -> curate pass."""

    tracks: List[CandidateTrack]
    queries: List[str]
    pool_size: int
    queries_failed: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)


class GenerationPipeline:
    """Prompt context in, curated track list out. Shared by drafts and refreshes."""

    def __init__(self,
                 adapters: Dict[PlatformKind, PlatformAdapter],
                 aggregator: CandidateAggregator,
                 reasoning: ReasoningGateway,
                 search_limit: Optional[int] = None):
        self.adapters = adapters
        self.aggregator = aggregator
        self.reasoning = reasoning
        self.search_limit = search_limit

    def generate(self,
                 account: PlatformAccount,
                 context: PromptContext,
                 exclusions: Optional[Set[str]] = None,
                 excluded_artists: Optional[Set[str]] = None,
                 deadline: Optional[Deadline] = None) -> GenerationResult:
        """Plan queries, aggregate candidates and curate the final selection.

        Raises:
            AICapabilityFailure: If planning or curation keeps failing
            NoCandidateTracks: If no usable candidates were found
            RefreshTimeout: If the deadline passes between steps
        """
        queries = self.reasoning.plan_queries(context)
        logger.info(f"Planned {len(queries)} search queries")
        if deadline is not None:
            deadline.check("plan")

        known_artists = self._known_artists(account) if context.new_artists_only else set()
        limit = search_limit_for(context.track_count, self.search_limit)

        aggregation = self.aggregator.aggregate(
            account,
            queries,
            limit,
            exclusions=exclusions,
            allow_explicit=context.allow_explicit,
            known_artists=known_artists,
            excluded_artists=excluded_artists,
            liked=context.liked_keys,
            disliked=context.disliked_keys,
            deadline=deadline,
        )
        if deadline is not None:
            deadline.check("curate")

        indices = self.reasoning.curate(aggregation.pool, context)
        tracks = [aggregation.pool[i] for i in indices]
        logger.info(f"Curated {len(tracks)} of {len(aggregation.pool)} candidates")

        return GenerationResult(
            tracks=tracks,
            queries=queries,
            pool_size=len(aggregation.pool),
            queries_failed=aggregation.queries_failed,
            dropped=aggregation.dropped,
        )

    def _known_artists(self, account: PlatformAccount) -> Set[str]:
        try:
            return self.adapters[account.kind].known_artists(account)
        except (RateLimited, TemporaryFailure, PermanentFailure, NotFound) as e:
            logger.warning(f"Could not load known artists, new-artists-only filter disabled: {e}")
            return set()
