import logging
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import urljoin

import requests

from mixwell.domain.entities import (
    CandidateTrack,
    PlatformAccount,
    PlatformKind,
    PlaylistSummary,
    TokenRecord,
    Visibility,
)
from mixwell.domain.errors import AuthExpired, NotFound, PermanentFailure, RateLimited, TemporaryFailure
from mixwell.domain.normalization import build_canonical_key
from mixwell.domain.track_refs import decode_ref, encode_ref

logger = logging.getLogger(__name__)

APPLE_MUSIC_API = "https://api.music.apple.com/v1"
APPLE_MUSIC_SEARCH_LIMIT = 25
APPLE_MUSIC_PAGE_LIMIT = 100


class AppleMusicAdapter:
    """Apple Music implementation of the PlatformAdapter port.

    Requests carry the developer token as a bearer token and the user's
    Music-User-Token. Apple Music user tokens cannot be refreshed
    programmatically, so a 401/403 ends in ReauthRequired via the token manager.
    Removing tracks from library playlists is not offered by the Apple Music
    API; ``remove_tracks`` raises PermanentFailure.
    """

    kind = PlatformKind.APPLE_MUSIC

    def __init__(self,
                 tokens,
                 developer_token: Optional[str] = None,
                 default_storefront: str = "us",
                 session: Optional[requests.Session] = None,
                 timeout: int = 15,
                 base_url: str = APPLE_MUSIC_API):
        self.tokens = tokens
        self.developer_token = developer_token
        self.default_storefront = default_storefront
        self.session = session or requests.Session()
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def _headers(self, record: TokenRecord) -> Dict[str, str]:
        developer_token = record.developer_token or self.developer_token
        if not developer_token:
            raise PermanentFailure("Apple Music developer token is not configured")
        return {
            "Authorization": f"Bearer {developer_token}",
            "Music-User-Token": record.access_token,
            "Content-Type": "application/json",
        }

    def _request(self, record: TokenRecord, method: str, path: str,
                 params: Optional[Dict[str, Any]] = None,
                 body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if path.startswith("http") or path.startswith("/v1/"):
            # Pagination links are absolute or rooted at /v1
            url = urljoin(self.base_url, path)
        else:
            url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url,
                headers=self._headers(record),
                params=params,
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TemporaryFailure(f"Apple Music request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthExpired(f"Apple Music rejected credentials ({status})")
        if status == 429:
            retry_after = int(response.headers.get("Retry-After", 1) or 1)
            raise RateLimited(retry_after_ms=retry_after * 1000)
        if status == 404:
            raise NotFound(f"Apple Music resource not found: {path}")
        if status >= 500:
            raise TemporaryFailure(f"Apple Music error {status}: {response.text[:200]}")
        if status >= 400:
            raise PermanentFailure(f"Apple Music error {status}: {response.text[:200]}")

        if status == 204 or not response.content:
            return {}
        return response.json()

    def _call(self, account: PlatformAccount, method: str, path: str, **kwargs) -> Dict[str, Any]:
        return self.tokens.call(account, lambda record: self._request(record, method, path, **kwargs))

    def _storefront(self, account: PlatformAccount) -> str:
        record = self.tokens.current(account)
        if record.storefront:
            return record.storefront
        try:
            data = self._call(account, "GET", "/me/storefront")
            items = data.get("data") or []
            if items and items[0].get("id"):
                return items[0]["id"]
        except (NotFound, PermanentFailure) as e:
            logger.warning(f"Could not read Apple Music storefront, using default: {e}")
        return self.default_storefront

    def _song_to_candidate(self, song: Dict[str, Any], catalog: Optional[Dict[str, Any]] = None) -> Optional[CandidateTrack]:
        """Convert a catalog or library song resource; a related catalog song supplies id and ISRC."""
        if not song or not song.get("id"):
            return None
        attributes = song.get("attributes") or {}
        catalog_attributes = (catalog or {}).get("attributes") or {}
        native_id = (catalog or {}).get("id") or song["id"]

        name = attributes.get("name", "")
        artist = attributes.get("artistName", "")
        isrc = attributes.get("isrc") or catalog_attributes.get("isrc")

        return CandidateTrack(
            canonical_key=build_canonical_key(name, artist, isrc),
            native_id=native_id,
            name=name,
            artist=artist,
            platform=PlatformKind.APPLE_MUSIC,
            uri=encode_ref(PlatformKind.APPLE_MUSIC, native_id),
            album=attributes.get("albumName"),
            external_url=attributes.get("url") or catalog_attributes.get("url"),
            duration_ms=attributes.get("durationInMillis", 0) or 0,
            isrc=isrc,
            explicit=attributes.get("contentRating") == "explicit",
        )

    def search_tracks(self, account: PlatformAccount, query: str, limit: int) -> List[CandidateTrack]:
        storefront = self._storefront(account)
        data = self._call(account, "GET", f"/catalog/{storefront}/search", params={
            "term": query,
            "types": "songs",
            "limit": max(1, min(limit, APPLE_MUSIC_SEARCH_LIMIT)),
        })
        songs = (((data.get("results") or {}).get("songs") or {}).get("data")) or []
        tracks = [t for t in (self._song_to_candidate(s) for s in songs) if t is not None]
        logger.debug(f"Apple Music search '{query}' returned {len(tracks)} tracks")
        return tracks

    def create_playlist(self, account: PlatformAccount, name: str, description: str,
                        visibility: Visibility) -> str:
        if visibility == Visibility.PUBLIC:
            logger.info("Apple Music library playlists are private; visibility ignored")
        data = self._call(account, "POST", "/me/library/playlists", body={
            "attributes": {"name": name, "description": description or ""},
        })
        items = data.get("data") or []
        if not items:
            raise TemporaryFailure("Apple Music did not return the created playlist")
        logger.info(f"Created Apple Music playlist '{name}' ({items[0]['id']})")
        return items[0]["id"]

    def add_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        if not track_refs:
            return 0
        payload = []
        for ref in track_refs:
            native_id = decode_ref(PlatformKind.APPLE_MUSIC, ref)
            payload.append({
                "id": native_id,
                "type": "library-songs" if native_id.startswith("i.") else "songs",
            })
        self._call(account, "POST", f"/me/library/playlists/{playlist_id}/tracks", body={"data": payload})
        return len(payload)

    def remove_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        if not track_refs:
            return 0
        raise PermanentFailure("Apple Music does not support removing tracks from library playlists")

    def _paginate(self, account: PlatformAccount, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        data = self._call(account, "GET", path, params=params)
        while True:
            items.extend(data.get("data") or [])
            next_path = data.get("next")
            if not next_path:
                break
            data = self._call(account, "GET", next_path)
        return items

    def get_playlist_tracks(self, account: PlatformAccount, playlist_id: str) -> List[CandidateTrack]:
        try:
            songs = self._paginate(account, f"/me/library/playlists/{playlist_id}/tracks", {
                "include": "catalog",
                "limit": APPLE_MUSIC_PAGE_LIMIT,
            })
        except NotFound:
            # An empty library playlist has no tracks resource
            self._call(account, "GET", f"/me/library/playlists/{playlist_id}")
            return []

        tracks = []
        for song in songs:
            catalog = (((song.get("relationships") or {}).get("catalog") or {}).get("data")) or []
            track = self._song_to_candidate(song, catalog[0] if catalog else None)
            if track is not None:
                tracks.append(track)
        return tracks

    def get_library_playlists(self, account: PlatformAccount) -> List[PlaylistSummary]:
        items = self._paginate(account, "/me/library/playlists", {"limit": APPLE_MUSIC_PAGE_LIMIT})
        playlists = []
        for item in items:
            attributes = item.get("attributes") or {}
            description = attributes.get("description") or {}
            playlists.append(PlaylistSummary(
                id=item["id"],
                name=attributes.get("name", ""),
                platform=PlatformKind.APPLE_MUSIC,
                description=description.get("standard", "") if isinstance(description, dict) else str(description),
                can_edit=bool(attributes.get("canEdit", True)),
            ))
        return playlists

    def known_artists(self, account: PlatformAccount) -> Set[str]:
        # No listening-history endpoint is used for Apple Music
        return set()
