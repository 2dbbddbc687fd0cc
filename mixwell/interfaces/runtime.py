import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from mixwell.application.aggregator import CandidateAggregator
from mixwell.application.diff import BatchApplier
from mixwell.application.drafts import DraftService
from mixwell.application.generation import GenerationPipeline
from mixwell.application.history import SongHistoryService
from mixwell.application.idempotency import ManualRefreshDispatcher
from mixwell.application.identity import TrackIdentityResolver
from mixwell.application.orchestrator import RefreshOrchestrator
from mixwell.application.playlists import PlaylistService
from mixwell.application.reasoning import ReasoningGateway
from mixwell.application.scheduling import AutoUpdateScheduler
from mixwell.application.tokens import TokenLifecycleManager
from mixwell.crosscutting.config import ConfigError, Settings
from mixwell.domain.entities import CandidateTrack, PlatformKind, PromptContext
from mixwell.domain.ports import PlatformAdapter, ReasoningCapability, Store
from mixwell.infrastructure.providers.apple_music import AppleMusicAdapter
from mixwell.infrastructure.providers.spotify import SpotifyAdapter, SpotifyTokenRefresher
from mixwell.infrastructure.reasoning.openai_reasoning import OpenAIReasoning
from mixwell.infrastructure.storage import JsonFileStore


logger = logging.getLogger(__name__)


class UnconfiguredReasoning:
    """Stands in when no reasoning service is configured; every call raises ConfigError."""

    def plan_queries(self, context: PromptContext) -> Any:
        raise ConfigError("OPENAI_API_KEY not found in environment")

    def curate(self, pool: Sequence[CandidateTrack], context: PromptContext) -> Any:
        raise ConfigError("OPENAI_API_KEY not found in environment")


class Runtime:
    """Owns every long-lived component of the process.

    Constructed once at start; ``shutdown`` stops the scheduler and drains the
    refresh executor. Collaborators can be injected (tests pass an in-memory
    store, fake platforms and a fixed reasoning capability).
    """

    def __init__(self,
                 settings: Settings,
                 store: Optional[Store] = None,
                 adapters: Optional[Dict[PlatformKind, PlatformAdapter]] = None,
                 reasoning_capability: Optional[ReasoningCapability] = None,
                 tokens: Optional[TokenLifecycleManager] = None,
                 executor: Optional[ThreadPoolExecutor] = None,
                 sleep=None):
        self.settings = settings
        self.store = store or JsonFileStore(str(settings.data_dir))
        self.tokens = tokens or TokenLifecycleManager(self.store, self._build_refreshers())
        self.spotify_auth = self.tokens.refreshers.get(PlatformKind.SPOTIFY)
        self.adapters = adapters or self._build_adapters()

        sleep_kwargs = {} if sleep is None else {"sleep": sleep}
        self.reasoning = ReasoningGateway(
            reasoning_capability or self._build_reasoning(),
            attempts=settings.reasoning_attempts,
            **sleep_kwargs,
        )
        self.aggregator = CandidateAggregator(self.adapters, pacing_ms=settings.pacing_ms, **sleep_kwargs)
        self.generation = GenerationPipeline(self.adapters, self.aggregator, self.reasoning,
                                             search_limit=settings.search_limit)
        self.applier = BatchApplier(self.adapters, **sleep_kwargs)
        self.resolver = TrackIdentityResolver(self.adapters)
        self.history = SongHistoryService(self.store)
        self.playlists = PlaylistService(self.store)
        self.orchestrator = RefreshOrchestrator(
            self.playlists,
            self.history,
            self.generation,
            self.applier,
            self.adapters,
            timeout_s=settings.refresh_timeout_s,
        )
        self.drafts = DraftService(
            self.store,
            self.generation,
            self.history,
            self.playlists,
            self.resolver,
            self.applier,
            self.adapters,
        )
        self.executor = executor or ThreadPoolExecutor(max_workers=settings.max_workers,
                                                       thread_name_prefix='mixwell-refresh')
        self.scheduler = AutoUpdateScheduler(
            self.playlists,
            self.orchestrator,
            self.executor,
            cooldown=timedelta(hours=settings.cooldown_hours),
            interval_s=settings.scheduler_interval_s,
        )
        self.dispatcher = ManualRefreshDispatcher(self.orchestrator, self.executor)
        self._started = False

    def _build_refreshers(self):
        if not (self.settings.spotify_client_id and self.settings.spotify_client_secret):
            logger.warning("Spotify client credentials not configured; Spotify tokens cannot be refreshed")
            return {}
        config = self.settings.get_spotify_client_config()
        return {
            PlatformKind.SPOTIFY: SpotifyTokenRefresher(
                client_id=config['client_id'],
                client_secret=config['client_secret'],
                redirect_uri=config['redirect_uri'],
                scope=self.settings.get_spotify_scope_string(),
            )
        }

    def _build_adapters(self) -> Dict[PlatformKind, PlatformAdapter]:
        return {
            PlatformKind.SPOTIFY: SpotifyAdapter(self.tokens, market=self.settings.spotify_market),
            PlatformKind.APPLE_MUSIC: AppleMusicAdapter(
                self.tokens,
                developer_token=self.settings.apple_music_developer_token,
                default_storefront=self.settings.apple_music_storefront,
            ),
        }

    def _build_reasoning(self) -> ReasoningCapability:
        if not self.settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not configured; generation is unavailable")
            return UnconfiguredReasoning()
        return OpenAIReasoning(self.settings.openai_api_key, model=self.settings.openai_model)

    def start(self, scheduler: bool = True) -> None:
        if self._started:
            return
        if scheduler:
            self.scheduler.start()
        self._started = True
        logger.info("Runtime started")

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.stop(timeout=self.settings.scheduler_interval_s)
        self.executor.shutdown(wait=wait)
        self._started = False
        logger.info("Runtime shut down")
