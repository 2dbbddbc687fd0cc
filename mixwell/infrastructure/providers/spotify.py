import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import requests
import spotipy
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError
from urllib3.exceptions import ReadTimeoutError

from mixwell.domain.entities import (
    CandidateTrack,
    PlatformAccount,
    PlatformKind,
    PlaylistSummary,
    TokenRecord,
    Visibility,
)
from mixwell.domain.errors import (
    AuthExpired,
    NotFound,
    PermanentFailure,
    RateLimited,
    ReauthRequired,
    TemporaryFailure,
)
from mixwell.domain.normalization import build_canonical_key
from mixwell.domain.track_refs import encode_ref

logger = logging.getLogger(__name__)

SPOTIFY_BATCH_LIMIT = 100
_TOP_ARTIST_RANGES = ('short_term', 'medium_term', 'long_term')


def _translate_error(error: Exception, operation: str) -> Exception:
    """Map a spotipy/transport error to the domain error for ``operation``."""
    if isinstance(error, SpotifyException):
        status = error.http_status
        if status == 401:
            return AuthExpired(f"Spotify rejected the access token during {operation}")
        if status == 429:
            headers = error.headers or {}
            retry_after = int(headers.get('Retry-After', 1) or 1)
            return RateLimited(retry_after_ms=retry_after * 1000)
        if status == 404:
            return NotFound(f"Spotify resource not found during {operation}: {error.msg}")
        if status is not None and int(status) >= 500:
            return TemporaryFailure(f"Spotify error {status} during {operation}: {error.msg}")
        return PermanentFailure(f"Spotify error {status} during {operation}: {error.msg}")
    if isinstance(error, (requests.exceptions.RequestException, ReadTimeoutError)):
        return TemporaryFailure(f"Network error during {operation}: {error}")
    return error


class SpotifyAdapter:
    """Spotify implementation of the PlatformAdapter port.

    Every call runs through the token manager, which supplies the current
    credentials and retries once after refreshing when Spotify answers 401.
    """

    kind = PlatformKind.SPOTIFY

    def __init__(self,
                 tokens,
                 market: Optional[str] = None,
                 requests_timeout: int = 15,
                 client_factory: Optional[Callable[..., Any]] = None):
        """Initialize Spotify adapter.

        Args:
            tokens: TokenLifecycleManager supplying credentials per account
            market: Optional ISO country code used for searches
            requests_timeout: Per-request timeout in seconds
            client_factory: Builds a spotipy client (tests pass a mock)
        """
        self.tokens = tokens
        self.market = market
        self.requests_timeout = requests_timeout
        self.client_factory = client_factory or spotipy.Spotify

    def _client(self, record: TokenRecord):
        return self.client_factory(auth=record.access_token, requests_timeout=self.requests_timeout)

    def _call(self, account: PlatformAccount, operation: str, fn: Callable[[Any], Any]) -> Any:
        def attempt(record: TokenRecord) -> Any:
            try:
                return fn(self._client(record))
            except Exception as e:
                translated = _translate_error(e, operation)
                if translated is e:
                    raise
                raise translated from e

        return self.tokens.call(account, attempt)

    def _track_to_candidate(self, item: Dict[str, Any]) -> Optional[CandidateTrack]:
        """Convert Spotify track object to CandidateTrack, or None for local/unavailable items."""
        if not item or item.get('type', 'track') != 'track' or not item.get('id') or item.get('is_local'):
            return None

        artists = item.get('artists') or []
        artist = artists[0].get('name', '') if artists else ''
        album = item.get('album') or {}
        isrc = (item.get('external_ids') or {}).get('isrc')
        name = item.get('name', '')

        return CandidateTrack(
            canonical_key=build_canonical_key(name, artist, isrc),
            native_id=item['id'],
            name=name,
            artist=artist,
            platform=PlatformKind.SPOTIFY,
            uri=encode_ref(PlatformKind.SPOTIFY, item['id']),
            album=album.get('name'),
            external_url=(item.get('external_urls') or {}).get('spotify'),
            duration_ms=item.get('duration_ms', 0) or 0,
            isrc=isrc,
            explicit=bool(item.get('explicit', False)),
        )

    def search_tracks(self, account: PlatformAccount, query: str, limit: int) -> List[CandidateTrack]:
        limit = max(1, min(limit, 50))

        def run(client):
            kwargs = {'q': query, 'type': 'track', 'limit': limit}
            if self.market:
                kwargs['market'] = self.market
            return client.search(**kwargs)

        response = self._call(account, 'search', run) or {}
        items = (response.get('tracks') or {}).get('items') or []
        tracks = [t for t in (self._track_to_candidate(i) for i in items) if t is not None]
        logger.debug(f"Spotify search '{query}' returned {len(tracks)} tracks")
        return tracks

    def create_playlist(self, account: PlatformAccount, name: str, description: str,
                        visibility: Visibility) -> str:
        result = self._call(account, 'create playlist', lambda client: client.user_playlist_create(
            account.external_account_id,
            name,
            public=visibility == Visibility.PUBLIC,
            description=description or '',
        ))
        logger.info(f"Created Spotify playlist '{name}' ({result['id']})")
        return result['id']

    def add_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        refs = list(track_refs)
        if not refs:
            return 0
        if len(refs) > SPOTIFY_BATCH_LIMIT:
            raise PermanentFailure(f"Spotify accepts at most {SPOTIFY_BATCH_LIMIT} tracks per request")

        result = self._call(account, 'add tracks', lambda client: client.playlist_add_items(playlist_id, refs))
        if not result or 'snapshot_id' not in result:
            raise TemporaryFailure("Spotify did not confirm the added tracks")
        return len(refs)

    def remove_tracks(self, account: PlatformAccount, playlist_id: str, track_refs: Sequence[str]) -> int:
        refs = list(track_refs)
        if not refs:
            return 0
        if len(refs) > SPOTIFY_BATCH_LIMIT:
            raise PermanentFailure(f"Spotify accepts at most {SPOTIFY_BATCH_LIMIT} tracks per request")

        self._call(account, 'remove tracks',
                   lambda client: client.playlist_remove_all_occurrences_of_items(playlist_id, refs))
        return len(refs)

    def get_playlist_tracks(self, account: PlatformAccount, playlist_id: str) -> List[CandidateTrack]:
        def run(client):
            tracks: List[CandidateTrack] = []
            offset = 0
            limit = 100
            while True:
                page = client.playlist_items(playlist_id, limit=limit, offset=offset,
                                             additional_types=('track',))
                items = (page or {}).get('items') or []
                for item in items:
                    track = self._track_to_candidate(item.get('track'))
                    if track is not None:
                        tracks.append(track)
                if not page or not page.get('next') or len(items) < limit:
                    break
                offset += limit
            return tracks

        return self._call(account, 'list playlist tracks', run)

    def get_library_playlists(self, account: PlatformAccount) -> List[PlaylistSummary]:
        def run(client):
            playlists: List[PlaylistSummary] = []
            offset = 0
            limit = 50
            while True:
                page = client.current_user_playlists(limit=limit, offset=offset)
                items = (page or {}).get('items') or []
                for item in items:
                    owner_id = (item.get('owner') or {}).get('id', '')
                    playlists.append(PlaylistSummary(
                        id=item['id'],
                        name=item.get('name', ''),
                        platform=PlatformKind.SPOTIFY,
                        track_count=(item.get('tracks') or {}).get('total', 0),
                        description=item.get('description') or '',
                        url=(item.get('external_urls') or {}).get('spotify'),
                        can_edit=owner_id == account.external_account_id or bool(item.get('collaborative')),
                    ))
                if len(items) < limit:
                    break
                offset += limit
            return playlists

        return self._call(account, 'list playlists', run)

    def known_artists(self, account: PlatformAccount) -> Set[str]:
        """Top artists over all three time ranges plus recently played artists."""
        def run(client):
            names: Set[str] = set()
            for time_range in _TOP_ARTIST_RANGES:
                page = client.current_user_top_artists(limit=50, time_range=time_range) or {}
                for artist in page.get('items') or []:
                    if artist.get('name'):
                        names.add(artist['name'].lower())
            recent = client.current_user_recently_played(limit=50) or {}
            for item in recent.get('items') or []:
                for artist in ((item.get('track') or {}).get('artists') or [])[:1]:
                    if artist.get('name'):
                        names.add(artist['name'].lower())
            return names

        names = self._call(account, 'known artists', run)
        logger.info(f"Loaded {len(names)} known Spotify artists")
        return names


class SpotifyTokenRefresher:
    """Exchanges a Spotify refresh token for a new access token."""

    def __init__(self,
                 client_id: str,
                 client_secret: str,
                 redirect_uri: str,
                 scope: str = '',
                 max_retries: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.max_retries = max_retries
        self.sleep = sleep

    def _oauth(self) -> SpotifyOAuth:
        return SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=self.scope or None,
            cache_handler=MemoryCacheHandler(),
            open_browser=False,
        )

    def refresh(self, record: TokenRecord) -> TokenRecord:
        """Refresh with backoff on transient failures; a rejected refresh token needs re-auth."""
        attempt = 0
        while True:
            try:
                logger.info("Refreshing Spotify access token...")
                token_info = self._oauth().refresh_access_token(record.refresh_token)
                break
            except SpotifyOauthError as e:
                raise ReauthRequired(record.owner_id, PlatformKind.SPOTIFY.value,
                                     f"Spotify refused the refresh token: {e}") from e
            except (requests.exceptions.RequestException, SpotifyException) as e:
                attempt += 1
                if attempt >= self.max_retries:
                    raise TemporaryFailure(f"Failed to refresh Spotify token after {attempt} attempts: {e}") from e
                backoff_time = 2 ** (attempt - 1)
                logger.warning(f"Spotify token refresh failed (attempt {attempt}), retrying in {backoff_time}s: {e}")
                self.sleep(backoff_time)

        if not token_info or 'access_token' not in token_info:
            raise ReauthRequired(record.owner_id, PlatformKind.SPOTIFY.value,
                                 "Spotify token refresh returned no access token")

        expires_at = None
        if token_info.get('expires_at'):
            expires_at = datetime.fromtimestamp(token_info['expires_at'], tz=timezone.utc)

        return TokenRecord(
            owner_id=record.owner_id,
            platform=PlatformKind.SPOTIFY,
            access_token=token_info['access_token'],
            # Spotify only sometimes rotates the refresh token
            refresh_token=token_info.get('refresh_token') or record.refresh_token,
            developer_token=record.developer_token,
            expires_at=expires_at,
            storefront=record.storefront,
        )

    def authorize_url(self, state: Optional[str] = None) -> str:
        """URL the user visits to connect a Spotify account."""
        return self._oauth().get_authorize_url(state=state)

    def exchange_code(self, code: str) -> TokenRecord:
        """Exchange an authorization code for credentials of the connecting account.

        The record is keyed by the Spotify user id read with the new token.
        """
        try:
            token_info = self._oauth().get_access_token(code, as_dict=True, check_cache=False)
        except SpotifyOauthError as e:
            raise PermanentFailure(f"Spotify rejected the authorization code: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TemporaryFailure(f"Network error exchanging Spotify code: {e}") from e

        if not token_info or 'access_token' not in token_info:
            raise PermanentFailure("Spotify token exchange returned no access token")

        try:
            user = spotipy.Spotify(auth=token_info['access_token']).current_user()
        except Exception as e:
            translated = _translate_error(e, 'read current user')
            if translated is e:
                raise
            raise translated from e

        expires_at = None
        if token_info.get('expires_at'):
            expires_at = datetime.fromtimestamp(token_info['expires_at'], tz=timezone.utc)

        return TokenRecord(
            owner_id=user['id'],
            platform=PlatformKind.SPOTIFY,
            access_token=token_info['access_token'],
            refresh_token=token_info.get('refresh_token'),
            expires_at=expires_at,
        )
