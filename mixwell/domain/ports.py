from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence, Set

from mixwell.domain.entities import (
    CandidateTrack,
    DraftPlaylist,
    PlatformAccount,
    PlatformKind,
    PlaylistSpec,
    PlaylistSummary,
    PromptContext,
    SongHistoryRecord,
    TokenRecord,
    Visibility,
)


class PlatformAdapter(Protocol):
    """Port defining the uniform contract for a streaming platform.

    Every call carries the account explicitly. Implementations map
    platform-specific shapes into CandidateTrack and raise the domain errors
    (AuthExpired, RateLimited, TemporaryFailure, PermanentFailure, NotFound).
    Track references passed to add/remove use the platform's prefixed form.
    """

    kind: PlatformKind

    def search_tracks(self, account: PlatformAccount, query: str, limit: int) -> List[CandidateTrack]:
        """Return up to ``limit`` catalog tracks for a free-text query, best first."""

    def create_playlist(self, account: PlatformAccount, name: str, description: str,
                        visibility: Visibility) -> str:
        """Create a playlist owned by the account and return its external id."""

    def add_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        """Add tracks (one platform batch) and return how many were accepted."""

    def remove_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        """Remove tracks (one platform batch) and return how many were removed."""

    def get_playlist_tracks(self, account: PlatformAccount, playlist_id: str) -> List[CandidateTrack]:
        """Return the live track list of a playlist."""

    def get_library_playlists(self, account: PlatformAccount) -> List[PlaylistSummary]:
        """Return the account's library playlists."""

    def known_artists(self, account: PlatformAccount) -> Set[str]:
        """Lowercased names of artists the user already listens to."""


class TokenRefresher(Protocol):
    """Exchanges a refresh credential for a new access credential."""

    def refresh(self, record: TokenRecord) -> TokenRecord:
        """Return an updated record, or raise ReauthRequired."""


class ReasoningCapability(Protocol):
    """External reasoning service. Responses are raw and validated by ReasoningGateway."""

    def plan_queries(self, context: PromptContext) -> Any:
        """Return a query plan: a list of strings, a {'searchQueries': [...]} mapping, or JSON text."""

    def curate(self, pool: Sequence[CandidateTrack], context: PromptContext) -> Any:
        """Return selected pool indices: a list of ints, a {'selectedIndices': [...]} mapping, or JSON text."""


class Store(Protocol):
    """Persistence contract. Every write is atomic at the single-record level."""

    def load_playlist_spec(self, playlist_id: str) -> Optional[PlaylistSpec]: ...

    def save_playlist_spec(self, spec: PlaylistSpec) -> None: ...

    def delete_playlist_spec(self, playlist_id: str) -> None: ...

    def list_playlist_specs(self) -> List[PlaylistSpec]: ...

    def load_song_history(self, owner_id: str, scope: str) -> Optional[SongHistoryRecord]: ...

    def save_song_history(self, record: SongHistoryRecord) -> None: ...

    def load_draft(self, draft_id: str) -> Optional[DraftPlaylist]: ...

    def save_draft(self, draft: DraftPlaylist) -> None: ...

    def delete_draft(self, draft_id: str) -> None: ...

    def list_drafts(self, owner_id: str) -> List[DraftPlaylist]: ...

    def load_token_record(self, owner_id: str, platform: PlatformKind) -> Optional[TokenRecord]: ...

    def save_token_record(self, record: TokenRecord) -> None: ...
