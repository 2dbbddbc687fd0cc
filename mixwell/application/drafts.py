import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from mixwell.application.diff import BatchApplier, PlaylistDiff, partial_failure
from mixwell.application.generation import GenerationPipeline, GenerationResult
from mixwell.application.history import RefinementLedger, SongHistoryService
from mixwell.application.identity import TrackIdentityResolver, identity_keys
from mixwell.application.playlists import PlaylistService
from mixwell.crosscutting.logging import CorrelationContext
from mixwell.domain.entities import (
    GLOBAL_SCOPE,
    AutoUpdateConfig,
    ChatMessage,
    DraftPlaylist,
    PlatformAccount,
    PlatformKind,
    PlaylistSpec,
    PlaylistTimestamps,
    PromptContext,
)
from mixwell.domain.errors import DraftNotFound, EmptyDraft
from mixwell.domain.ports import PlatformAdapter, Store


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _summary(result: GenerationResult) -> str:
    return (f"Selected {len(result.tracks)} tracks from {result.pool_size} candidates "
            f"across {len(result.queries)} searches.")


class DraftService:
    """In-progress generations that survive across refinement turns.

    A draft keeps its id for its whole life: refining or re-starting with the
    same id overwrites the stored draft, never duplicates it.
    """

    def __init__(self,
                 store: Store,
                 generation: GenerationPipeline,
                 history: SongHistoryService,
                 playlists: PlaylistService,
                 resolver: TrackIdentityResolver,
                 applier: BatchApplier,
                 adapters: Dict[PlatformKind, PlatformAdapter],
                 clock: Callable[[], datetime] = _utcnow,
                 id_factory: Callable[[], str] = _new_id):
        self.store = store
        self.generation = generation
        self.history = history
        self.playlists = playlists
        self.resolver = resolver
        self.applier = applier
        self.adapters = adapters
        self.clock = clock
        self.id_factory = id_factory

    def get(self, draft_id: str) -> DraftPlaylist:
        draft = self.store.load_draft(draft_id)
        if draft is None:
            raise DraftNotFound(f"Draft {draft_id} not found")
        return draft

    def list(self, owner_id: str) -> List[DraftPlaylist]:
        return self.store.list_drafts(owner_id)

    def _generate(self, draft: DraftPlaylist) -> GenerationResult:
        constraints = self.history.constraints(draft.owner_id, GLOBAL_SCOPE)
        context = PromptContext(
            prompt=draft.prompt,
            track_count=draft.track_count,
            refinements=list(draft.refinements),
            allow_explicit=draft.allow_explicit,
            new_artists_only=draft.new_artists_only,
            reference_tracks=[f"{t.name} by {t.artist}" for t in draft.tracks[:5]],
            liked_keys=constraints.liked,
            disliked_keys=constraints.disliked,
        )
        return self.generation.generate(
            draft.account,
            context,
            exclusions=constraints.excluded | draft.excluded_songs,
            excluded_artists=constraints.excluded_artists,
        )

    def start(self,
              owner_id: str,
              account: PlatformAccount,
              prompt: str,
              song_count: int = 30,
              allow_explicit: bool = True,
              new_artists_only: bool = False,
              draft_id: Optional[str] = None) -> DraftPlaylist:
        """Generate a first track list for a prompt and save it as a draft."""
        draft_id = draft_id or self.id_factory()
        now = self.clock()
        existing = self.store.load_draft(draft_id)

        draft = DraftPlaylist(
            draft_id=draft_id,
            owner_id=owner_id,
            account=account,
            prompt=prompt,
            track_count=song_count,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            allow_explicit=allow_explicit,
            new_artists_only=new_artists_only,
        )

        with CorrelationContext(draft_id=draft_id, stage='generate'):
            result = self._generate(draft)

        draft = replace(
            draft,
            tracks=result.tracks,
            chat_history=[
                ChatMessage(role="user", content=prompt),
                ChatMessage(role="assistant", content=_summary(result)),
            ],
        )
        self.store.save_draft(draft)
        logger.info(f"Draft {draft_id} generated with {len(draft.tracks)} tracks")
        return draft

    def refine(self, draft_id: str, instruction: str) -> DraftPlaylist:
        """Add a refinement instruction and re-curate, keeping the chat history."""
        draft = self.get(draft_id)
        ledger = RefinementLedger(draft.refinements)
        ledger.add(instruction)
        draft = replace(draft, refinements=ledger.entries)

        with CorrelationContext(draft_id=draft_id, stage='refine'):
            result = self._generate(draft)

        draft = replace(
            draft,
            tracks=result.tracks,
            updated_at=self.clock(),
            chat_history=draft.chat_history + [
                ChatMessage(role="user", content=instruction),
                ChatMessage(role="assistant", content=_summary(result)),
            ],
        )
        self.store.save_draft(draft)
        logger.info(f"Draft {draft_id} refined ({len(ledger)} instructions)")
        return draft

    def remove_track(self, draft_id: str, canonical_key: str) -> DraftPlaylist:
        """Drop a track from the draft and keep it out of later turns."""
        draft = self.get(draft_id)
        removed = [t for t in draft.tracks if canonical_key in identity_keys(t)]
        keys = {canonical_key}
        for track in removed:
            keys.update(identity_keys(track))

        draft = replace(
            draft,
            tracks=[t for t in draft.tracks if t not in removed],
            excluded_songs=draft.excluded_songs | keys,
            excluded_groups=draft.excluded_groups + [sorted(keys)],
            updated_at=self.clock(),
        )
        self.store.save_draft(draft)
        return draft

    def commit(self,
               draft_id: str,
               name: str,
               description: str = "",
               auto_update: Optional[AutoUpdateConfig] = None,
               account: Optional[PlatformAccount] = None) -> PlaylistSpec:
        """Materialize a draft as a platform playlist and store its spec.

        When ``account`` is on a different platform than the draft, each track
        is matched on the target platform by name and artist (best effort,
        top search result). Tracks with malformed references are skipped and
        only logged.

        Raises:
            EmptyDraft: If the draft has no tracks
            PartialApplyFailure: If some tracks could not be added; the playlist is still stored
        """
        draft = self.get(draft_id)
        if not draft.tracks:
            raise EmptyDraft(f"Draft {draft_id} has no tracks")

        auto_update = auto_update or AutoUpdateConfig()
        target = account or draft.account
        tracks = draft.tracks
        if target.kind != draft.account.kind:
            tracks = self.resolver.resolve_all(draft.tracks, target)
            logger.info(f"Resolved {len(tracks)} of {len(draft.tracks)} tracks on {target.kind.value}")
            if not tracks:
                raise EmptyDraft(f"No tracks of draft {draft_id} could be found on {target.kind.value}")

        with CorrelationContext(draft_id=draft_id, stage='commit'):
            adapter = self.adapters[target.kind]
            external_id = adapter.create_playlist(target, name, description, auto_update.visibility)
            report = self.applier.apply(target, external_id, PlaylistDiff(to_add=tracks))

            spec = self.playlists.create(PlaylistSpec(
                id=self.id_factory(),
                owner_id=draft.owner_id,
                account=target,
                external_playlist_id=external_id,
                name=name,
                prompt=draft.prompt,
                track_count=draft.track_count,
                refinements=list(draft.refinements),
                allow_explicit=draft.allow_explicit,
                new_artists_only=draft.new_artists_only,
                auto_update=auto_update,
                timestamps=PlaylistTimestamps(created_at=self.clock()),
            ))

            if report.added_keys:
                self.history.record_seen(draft.owner_id, spec.id, report.added_keys)
            if draft.excluded_songs:
                self.history.exclude_keys(draft.owner_id, spec.id, draft.excluded_songs,
                                          groups=draft.excluded_groups)
            self.store.delete_draft(draft_id)

        logger.info(f"Draft {draft_id} committed as playlist {spec.id} ({external_id})")
        if report.aborted:
            raise partial_failure(report) from report.error
        if report.failed:
            raise partial_failure(report)
        return spec

    def discard(self, draft_id: str) -> None:
        self.get(draft_id)
        self.store.delete_draft(draft_id)
        logger.info(f"Draft {draft_id} discarded")
