from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set


class PlatformKind(str, Enum):
    SPOTIFY = "spotify"
    APPLE_MUSIC = "apple_music"


class Frequency(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class UpdateMode(str, Enum):
    APPEND = "append"
    REPLACE = "replace"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Trigger(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class Reaction(str, Enum):
    LIKED = "liked"
    DISLIKED = "disliked"


def _dt_to_json(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_json(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class PlatformAccount:
    """Which platform a user is connected to, resolved once when the session is established."""

    kind: PlatformKind
    external_account_id: str

    def to_json(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "externalAccountId": self.external_account_id}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlatformAccount":
        return cls(kind=PlatformKind(data["kind"]), external_account_id=data["externalAccountId"])


@dataclass(frozen=True)
class CandidateTrack:
    """Platform-neutral track shape used throughout generation and refresh."""

    canonical_key: str
    native_id: str
    name: str
    artist: str
    platform: PlatformKind
    uri: str = ""
    album: Optional[str] = None
    external_url: Optional[str] = None
    duration_ms: int = 0
    isrc: Optional[str] = None
    explicit: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "canonicalKey": self.canonical_key,
            "nativeId": self.native_id,
            "name": self.name,
            "artist": self.artist,
            "platform": self.platform.value,
            "uri": self.uri,
            "album": self.album,
            "externalUrl": self.external_url,
            "durationMs": self.duration_ms,
            "isrc": self.isrc,
            "explicit": self.explicit,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CandidateTrack":
        return cls(
            canonical_key=data["canonicalKey"],
            native_id=data["nativeId"],
            name=data["name"],
            artist=data["artist"],
            platform=PlatformKind(data["platform"]),
            uri=data.get("uri", ""),
            album=data.get("album"),
            external_url=data.get("externalUrl"),
            duration_ms=data.get("durationMs", 0),
            isrc=data.get("isrc"),
            explicit=data.get("explicit", False),
        )


@dataclass(frozen=True)
class PlaylistSummary:
    """Library playlist as listed by a platform."""

    id: str
    name: str
    platform: PlatformKind
    track_count: int = 0
    description: str = ""
    url: Optional[str] = None
    can_edit: bool = True

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform.value,
            "trackCount": self.track_count,
            "description": self.description,
            "url": self.url,
            "canEdit": self.can_edit,
        }


@dataclass(frozen=True)
class AutoUpdateConfig:
    frequency: Frequency = Frequency.NONE
    mode: UpdateMode = UpdateMode.APPEND
    time_of_day: time = time(9, 0)
    timezone: str = "UTC"
    visibility: Visibility = Visibility.PRIVATE

    def to_json(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "mode": self.mode.value,
            "timeOfDay": self.time_of_day.strftime("%H:%M"),
            "timezone": self.timezone,
            "visibility": self.visibility.value,
        }

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "AutoUpdateConfig":
        if not data:
            return cls()
        return cls(
            frequency=Frequency(data.get("frequency", "none")),
            mode=UpdateMode(data.get("mode", "append")),
            time_of_day=time.fromisoformat(data.get("timeOfDay", "09:00")),
            timezone=data.get("timezone", "UTC"),
            visibility=Visibility(data.get("visibility", "private")),
        )


@dataclass(frozen=True)
class PlaylistTimestamps:
    created_at: datetime
    last_manual_refresh_at: Optional[datetime] = None
    last_auto_refresh_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "createdAt": _dt_to_json(self.created_at),
            "lastManualRefreshAt": _dt_to_json(self.last_manual_refresh_at),
            "lastAutoRefreshAt": _dt_to_json(self.last_auto_refresh_at),
            "nextRunAt": _dt_to_json(self.next_run_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistTimestamps":
        return cls(
            created_at=_dt_from_json(data["createdAt"]),
            last_manual_refresh_at=_dt_from_json(data.get("lastManualRefreshAt")),
            last_auto_refresh_at=_dt_from_json(data.get("lastAutoRefreshAt")),
            next_run_at=_dt_from_json(data.get("nextRunAt")),
        )


@dataclass(frozen=True)
class PlaylistSpec:
    """A committed playlist and everything needed to regenerate it."""

    id: str
    owner_id: str
    account: PlatformAccount
    external_playlist_id: str
    name: str
    prompt: str
    track_count: int
    timestamps: PlaylistTimestamps
    refinements: List[str] = field(default_factory=list)
    allow_explicit: bool = True
    new_artists_only: bool = False
    auto_update: AutoUpdateConfig = field(default_factory=AutoUpdateConfig)

    def with_timestamps(self, **changes: Any) -> "PlaylistSpec":
        return replace(self, timestamps=replace(self.timestamps, **changes))

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "account": self.account.to_json(),
            "externalPlaylistId": self.external_playlist_id,
            "name": self.name,
            "prompt": self.prompt,
            "trackCount": self.track_count,
            "refinements": list(self.refinements),
            "allowExplicit": self.allow_explicit,
            "newArtistsOnly": self.new_artists_only,
            "autoUpdate": self.auto_update.to_json(),
            "timestamps": self.timestamps.to_json(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistSpec":
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            account=PlatformAccount.from_json(data["account"]),
            external_playlist_id=data["externalPlaylistId"],
            name=data.get("name", ""),
            prompt=data.get("prompt", ""),
            track_count=data.get("trackCount", 30),
            refinements=list(data.get("refinements", [])),
            allow_explicit=data.get("allowExplicit", True),
            new_artists_only=data.get("newArtistsOnly", False),
            auto_update=AutoUpdateConfig.from_json(data.get("autoUpdate")),
            timestamps=PlaylistTimestamps.from_json(data["timestamps"]),
        )


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_json(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=data["role"], content=data["content"])


@dataclass(frozen=True)
class DraftPlaylist:
    """Uncommitted generation state, keyed by a draft id that is stable across refinement turns."""

    draft_id: str
    owner_id: str
    account: PlatformAccount
    prompt: str
    track_count: int
    created_at: datetime
    updated_at: datetime
    tracks: List[CandidateTrack] = field(default_factory=list)
    excluded_songs: Set[str] = field(default_factory=set)
    excluded_groups: List[List[str]] = field(default_factory=list)
    refinements: List[str] = field(default_factory=list)
    chat_history: List[ChatMessage] = field(default_factory=list)
    allow_explicit: bool = True
    new_artists_only: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "draftId": self.draft_id,
            "ownerId": self.owner_id,
            "account": self.account.to_json(),
            "prompt": self.prompt,
            "trackCount": self.track_count,
            "createdAt": _dt_to_json(self.created_at),
            "updatedAt": _dt_to_json(self.updated_at),
            "tracks": [t.to_json() for t in self.tracks],
            "excludedSongs": sorted(self.excluded_songs),
            "excludedGroups": [list(g) for g in self.excluded_groups],
            "refinements": list(self.refinements),
            "chatHistory": [m.to_json() for m in self.chat_history],
            "allowExplicit": self.allow_explicit,
            "newArtistsOnly": self.new_artists_only,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "DraftPlaylist":
        return cls(
            draft_id=data["draftId"],
            owner_id=data["ownerId"],
            account=PlatformAccount.from_json(data["account"]),
            prompt=data["prompt"],
            track_count=data.get("trackCount", 30),
            created_at=_dt_from_json(data["createdAt"]),
            updated_at=_dt_from_json(data["updatedAt"]),
            tracks=[CandidateTrack.from_json(t) for t in data.get("tracks", [])],
            excluded_songs=set(data.get("excludedSongs", [])),
            excluded_groups=[list(g) for g in data.get("excludedGroups", [])],
            refinements=list(data.get("refinements", [])),
            chat_history=[ChatMessage.from_json(m) for m in data.get("chatHistory", [])],
            allow_explicit=data.get("allowExplicit", True),
            new_artists_only=data.get("newArtistsOnly", False),
        )


GLOBAL_SCOPE = "global"


@dataclass
class SongHistoryRecord:
    """Seen / excluded / reacted-to tracks for one owner and scope (a playlist id or global).

    ``seen`` and ``excluded`` only grow through normal operation. Removing an
    exclusion is a separate explicit action.

    ``linked_keys`` maps each key of a track excluded as a whole to every
    identity key of that track, so removing the exclusion clears all of them.
    """

    owner_id: str
    scope: str = GLOBAL_SCOPE
    seen: Set[str] = field(default_factory=set)
    excluded: Set[str] = field(default_factory=set)
    excluded_artists: Set[str] = field(default_factory=set)
    artist_strikes: Dict[str, int] = field(default_factory=dict)
    reactions: Dict[str, Reaction] = field(default_factory=dict)
    linked_keys: Dict[str, List[str]] = field(default_factory=dict)

    def link(self, keys: Iterable[str]) -> None:
        group = sorted(set(keys))
        if len(group) < 2:
            return
        for key in group:
            self.linked_keys[key] = group

    def keys_linked_to(self, key: str) -> Set[str]:
        return set(self.linked_keys.get(key, [])) | {key}

    def liked(self) -> Set[str]:
        return {k for k, r in self.reactions.items() if r == Reaction.LIKED}

    def disliked(self) -> Set[str]:
        return {k for k, r in self.reactions.items() if r == Reaction.DISLIKED}

    def to_json(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "scope": self.scope,
            "seen": sorted(self.seen),
            "excluded": sorted(self.excluded),
            "excludedArtists": sorted(self.excluded_artists),
            "artistStrikes": dict(self.artist_strikes),
            "reactions": {k: r.value for k, r in self.reactions.items()},
            "linkedKeys": {k: list(v) for k, v in self.linked_keys.items()},
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SongHistoryRecord":
        return cls(
            owner_id=data["ownerId"],
            scope=data.get("scope", GLOBAL_SCOPE),
            seen=set(data.get("seen", [])),
            excluded=set(data.get("excluded", [])),
            excluded_artists=set(data.get("excludedArtists", [])),
            artist_strikes=dict(data.get("artistStrikes", {})),
            reactions={k: Reaction(v) for k, v in data.get("reactions", {}).items()},
            linked_keys={k: list(v) for k, v in data.get("linkedKeys", {}).items()},
        )


@dataclass(frozen=True)
class TokenRecord:
    """Credentials for one (owner, platform). Only TokenLifecycleManager mutates these."""

    owner_id: str
    platform: PlatformKind
    access_token: str
    refresh_token: Optional[str] = None
    developer_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    storefront: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "platform": self.platform.value,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "developerToken": self.developer_token,
            "expiresAt": _dt_to_json(self.expires_at),
            "storefront": self.storefront,
            "updatedAt": _dt_to_json(self.updated_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            owner_id=data["ownerId"],
            platform=PlatformKind(data["platform"]),
            access_token=data["accessToken"],
            refresh_token=data.get("refreshToken"),
            developer_token=data.get("developerToken"),
            expires_at=_dt_from_json(data.get("expiresAt")),
            storefront=data.get("storefront"),
            updated_at=_dt_from_json(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class PromptContext:
    """Everything the reasoning capability sees about a generation request."""

    prompt: str
    track_count: int
    refinements: List[str] = field(default_factory=list)
    allow_explicit: bool = True
    new_artists_only: bool = False
    reference_tracks: List[str] = field(default_factory=list)
    liked_keys: Set[str] = field(default_factory=set)
    disliked_keys: Set[str] = field(default_factory=set)


class RefreshStatus(str, Enum):
    APPLIED = "applied"
    CONCURRENT_REFRESH_SKIPPED = "concurrent_refresh_skipped"


@dataclass(frozen=True)
class RefreshOutcome:
    playlist_id: str
    status: RefreshStatus
    trigger: Trigger
    added: int = 0
    removed: int = 0
    invalid: int = 0
    duration_ms: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "playlistId": self.playlist_id,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "added": self.added,
            "removed": self.removed,
            "invalid": self.invalid,
            "durationMs": self.duration_ms,
        }
