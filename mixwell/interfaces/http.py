import os
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException

from mixwell.application.idempotency import ManualRefreshCommand
from mixwell.crosscutting.config import ConfigError, Settings
from mixwell.domain.entities import (
    GLOBAL_SCOPE,
    AutoUpdateConfig,
    CandidateTrack,
    PlatformAccount,
    PlatformKind,
    PlaylistSpec,
    Reaction,
    TokenRecord,
)
from mixwell.domain.errors import (
    AICapabilityFailure,
    EmptyDraft,
    InvalidTrackReference,
    NoCandidateTracks,
    NotFound,
    PartialApplyFailure,
    PermanentFailure,
    RateLimited,
    ReauthRequired,
    RefreshTimeout,
    TemporaryFailure,
)
from mixwell.interfaces.runtime import Runtime


class RequestError(ValueError):
    """Malformed request body or headers."""
    pass


class Forbidden(Exception):
    """Caller does not own the requested resource."""
    pass


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RequestError("Request body must be a JSON object")
    return data


def _required(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RequestError(f"Missing required field '{key}'")
    return value


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise RequestError(f"'{key}' must be an integer")
    if number < 1:
        raise RequestError(f"'{key}' must be positive")
    return number


def _parse_auto_update(data: Optional[Dict[str, Any]]) -> AutoUpdateConfig:
    config = AutoUpdateConfig.from_json(data)
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise RequestError(f"Unknown timezone '{config.timezone}'")
    return config


class HTTPServer:
    """HTTP interface for mixwell: drafts, committed playlists, history and platform connections."""

    def __init__(self, runtime: Runtime, host: str = 'localhost', port: int = 3000, debug: bool = False):
        """Initialize HTTP server."""
        self.runtime = runtime
        self.host = host
        self.port = port
        self.debug = debug
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        # Version info
        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._setup_routes()
        self._setup_error_handlers()

    # Request context

    def _owner_id(self) -> str:
        owner_id = request.headers.get('X-Owner-Id') or request.headers.get('X-Account-Id')
        if not owner_id:
            raise RequestError("Missing X-Owner-Id header")
        return owner_id

    def _account(self) -> PlatformAccount:
        """Connected platform account of the caller, from X-Platform and X-Account-Id."""
        platform = request.headers.get('X-Platform')
        account_id = request.headers.get('X-Account-Id')
        if not platform or not account_id:
            raise RequestError("Missing X-Platform or X-Account-Id header")
        try:
            kind = PlatformKind(platform)
        except ValueError:
            raise RequestError(f"Unknown platform '{platform}'")
        return PlatformAccount(kind=kind, external_account_id=account_id)

    def _owned_playlist(self, playlist_id: str) -> PlaylistSpec:
        spec = self.runtime.playlists.get(playlist_id)
        if spec.owner_id != self._owner_id():
            raise Forbidden(f"Playlist {playlist_id} belongs to another user")
        return spec

    def _owned_draft(self, draft_id: str):
        draft = self.runtime.drafts.get(draft_id)
        if draft.owner_id != self._owner_id():
            raise Forbidden(f"Draft {draft_id} belongs to another user")
        return draft

    def _scope(self, scope: str) -> str:
        if scope != GLOBAL_SCOPE:
            self._owned_playlist(scope)
        return scope

    # Error mapping

    def _error_response(self, error: Exception):
        if isinstance(error, HTTPException):
            return error
        if isinstance(error, PartialApplyFailure):
            return jsonify({
                'error': 'Playlist partially updated',
                'details': str(error),
                'added': error.added,
                'removed': error.removed,
                'failedAdds': error.failed_adds,
                'failedRemoves': error.failed_removes,
                'invalid': error.invalid,
            }), 207
        if isinstance(error, ReauthRequired):
            return jsonify({
                'error': 'Re-authentication required',
                'platform': error.platform,
                'details': str(error),
            }), 401
        if isinstance(error, RateLimited):
            response = jsonify({'error': 'Rate limited', 'retryAfterMs': error.retry_after_ms})
            response.headers['Retry-After'] = str(max(1, error.retry_after_ms // 1000))
            return response, 429

        mapping = (
            (Forbidden, 403, 'Forbidden'),
            (NotFound, 404, 'Not found'),
            (EmptyDraft, 400, 'Draft has no tracks'),
            (InvalidTrackReference, 400, 'Invalid track reference'),
            (RequestError, 400, 'Bad request'),
            (NoCandidateTracks, 422, 'No candidate tracks found'),
            (AICapabilityFailure, 502, 'Reasoning service failed'),
            (RefreshTimeout, 504, 'Refresh timed out'),
            (ConfigError, 503, 'Service not configured'),
            (TemporaryFailure, 503, 'Platform temporarily unavailable'),
            (PermanentFailure, 502, 'Platform rejected the request'),
            (ValueError, 400, 'Bad request'),
        )
        for error_type, status, message in mapping:
            if isinstance(error, error_type):
                if status >= 500:
                    self.logger.error(f"{message}: {error}")
                return jsonify({'error': message, 'details': str(error)}), status

        self.logger.exception(f"Unhandled error: {error}")
        return jsonify({
            'error': 'Internal server error',
            'details': str(error)
        }), 500

    def _setup_error_handlers(self) -> None:
        self.app.register_error_handler(Exception, self._error_response)

    def _setup_routes(self) -> None:
        """Setup Flask routes."""
        runtime = self.runtime

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'scheduler': 'running' if runtime.scheduler.running else 'stopped',
                'configuration': runtime.settings.validate(),
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'mixwell HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'spotify_auth': '/auth/spotify',
                    'oauth_callback': '/callback',
                    'apple_music_connect': '/connect/apple-music',
                    'drafts': '/drafts',
                    'playlists': '/playlists',
                    'history': '/history/<scope>',
                    'library': '/library'
                }
            }), 200

        # Platform connections

        @self.app.route('/auth/spotify', methods=['GET'])
        def spotify_auth():
            """Initiate Spotify OAuth flow."""
            if runtime.spotify_auth is None:
                raise ConfigError("Spotify client credentials not configured")
            return jsonify({
                'auth_url': runtime.spotify_auth.authorize_url(state=request.args.get('state')),
                'redirect_uri': runtime.settings.spotify_redirect_uri
            }), 200

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            code = request.args.get('code')
            error = request.args.get('error')

            if error:
                self.logger.error(f"OAuth error: {error}")
                return jsonify({
                    'error': 'OAuth authorization failed',
                    'details': error
                }), 400

            if not code:
                return jsonify({
                    'error': 'Missing authorization code'
                }), 400
            if runtime.spotify_auth is None:
                raise ConfigError("Spotify client credentials not configured")

            record = runtime.tokens.connect(runtime.spotify_auth.exchange_code(code))
            account = PlatformAccount(kind=PlatformKind.SPOTIFY, external_account_id=record.owner_id)
            self.logger.info(f"Spotify account {record.owner_id} connected")
            return jsonify({
                'status': 'success',
                'account': account.to_json(),
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 200

        @self.app.route('/connect/apple-music', methods=['POST'])
        def apple_music_connect():
            """Store a Music-User-Token obtained by the client with MusicKit."""
            data = _body()
            account_id = _required(data, 'accountId')
            record = runtime.tokens.connect(TokenRecord(
                owner_id=account_id,
                platform=PlatformKind.APPLE_MUSIC,
                access_token=_required(data, 'musicUserToken'),
                storefront=data.get('storefront'),
            ))
            account = PlatformAccount(kind=PlatformKind.APPLE_MUSIC, external_account_id=record.owner_id)
            return jsonify({'status': 'success', 'account': account.to_json()}), 200

        @self.app.route('/library', methods=['GET'])
        def library():
            """Playlists in the caller's platform library."""
            account = self._account()
            playlists = runtime.adapters[account.kind].get_library_playlists(account)
            return jsonify({'playlists': [p.to_json() for p in playlists]}), 200

        # Drafts

        @self.app.route('/drafts', methods=['GET'])
        def list_drafts():
            drafts = runtime.drafts.list(self._owner_id())
            return jsonify({'drafts': [d.to_json() for d in drafts]}), 200

        @self.app.route('/drafts', methods=['POST'])
        def start_draft():
            """Generate a new draft, or regenerate an existing one when draftId is given."""
            data = _body()
            owner_id = self._owner_id()
            draft_id = data.get('draftId')
            if draft_id and runtime.store.load_draft(draft_id) is not None:
                self._owned_draft(draft_id)
            draft = runtime.drafts.start(
                owner_id,
                self._account(),
                _required(data, 'prompt'),
                song_count=_optional_int(data, 'songCount') or 30,
                allow_explicit=bool(data.get('allowExplicit', True)),
                new_artists_only=bool(data.get('newArtistsOnly', False)),
                draft_id=draft_id,
            )
            return jsonify(draft.to_json()), 201

        @self.app.route('/drafts/<draft_id>', methods=['GET'])
        def get_draft(draft_id):
            return jsonify(self._owned_draft(draft_id).to_json()), 200

        @self.app.route('/drafts/<draft_id>/refine', methods=['POST'])
        def refine_draft(draft_id):
            data = _body()
            self._owned_draft(draft_id)
            draft = runtime.drafts.refine(draft_id, _required(data, 'instruction'))
            return jsonify(draft.to_json()), 200

        @self.app.route('/drafts/<draft_id>/tracks/remove', methods=['POST'])
        def remove_draft_track(draft_id):
            data = _body()
            self._owned_draft(draft_id)
            draft = runtime.drafts.remove_track(draft_id, _required(data, 'canonicalKey'))
            return jsonify(draft.to_json()), 200

        @self.app.route('/drafts/<draft_id>/commit', methods=['POST'])
        def commit_draft(draft_id):
            """Create the platform playlist; the target account defaults to the draft's."""
            data = _body()
            self._owned_draft(draft_id)
            target = None
            if request.headers.get('X-Platform') and request.headers.get('X-Account-Id'):
                target = self._account()
            spec = runtime.drafts.commit(
                draft_id,
                _required(data, 'name'),
                description=data.get('description', ''),
                auto_update=_parse_auto_update(data.get('autoUpdate')),
                account=target,
            )
            return jsonify(spec.to_json()), 201

        @self.app.route('/drafts/<draft_id>', methods=['DELETE'])
        def discard_draft(draft_id):
            self._owned_draft(draft_id)
            runtime.drafts.discard(draft_id)
            return jsonify({'status': 'deleted', 'draftId': draft_id}), 200

        # Committed playlists

        @self.app.route('/playlists', methods=['GET'])
        def list_playlists():
            specs = runtime.playlists.list(self._owner_id())
            return jsonify({'playlists': [s.to_json() for s in specs]}), 200

        @self.app.route('/playlists/<playlist_id>', methods=['GET'])
        def get_playlist(playlist_id):
            spec = self._owned_playlist(playlist_id)
            payload = spec.to_json()
            payload['refreshing'] = runtime.orchestrator.is_refreshing(playlist_id)
            return jsonify(payload), 200

        @self.app.route('/playlists/<playlist_id>/refresh', methods=['POST'])
        def refresh_playlist(playlist_id):
            """Submit a manual refresh. With ?wait=true the outcome is returned inline."""
            data = _body()
            self._owned_playlist(playlist_id)
            command = ManualRefreshCommand.from_json({
                'playlistId': playlist_id,
                'songCount': _optional_int(data, 'songCount'),
                'mode': data.get('mode'),
                'newArtistsOnly': data.get('newArtistsOnly'),
                'idempotencyKey': request.headers.get('Idempotency-Key') or data.get('idempotencyKey'),
            })
            future, duplicate = runtime.dispatcher.submit(command)

            if request.args.get('wait', '').lower() in ('1', 'true', 'yes'):
                outcome = future.result(timeout=runtime.settings.refresh_timeout_s + 30)
                payload = outcome.to_json()
                payload['duplicate'] = duplicate
                return jsonify(payload), 200

            return jsonify({
                'status': 'accepted',
                'playlistId': playlist_id,
                'duplicate': duplicate
            }), 202

        @self.app.route('/playlists/<playlist_id>/settings', methods=['PUT'])
        def update_playlist_settings(playlist_id):
            data = _body()
            self._owned_playlist(playlist_id)
            spec = runtime.playlists.update_settings(playlist_id, _parse_auto_update(data))
            return jsonify(spec.to_json()), 200

        @self.app.route('/playlists/<playlist_id>/refinements', methods=['POST'])
        def add_playlist_refinement(playlist_id):
            data = _body()
            self._owned_playlist(playlist_id)
            spec = runtime.playlists.add_refinement(playlist_id, _required(data, 'instruction'))
            return jsonify(spec.to_json()), 200

        @self.app.route('/playlists/<playlist_id>', methods=['DELETE'])
        def delete_playlist(playlist_id):
            """Stop managing a playlist. The platform playlist itself is left in place."""
            self._owned_playlist(playlist_id)
            runtime.playlists.delete(playlist_id)
            return jsonify({'status': 'deleted', 'playlistId': playlist_id}), 200

        # Song history; scope is a playlist id or "global"

        @self.app.route('/history/<scope>', methods=['GET'])
        def get_history(scope):
            record = runtime.history.load(self._owner_id(), self._scope(scope))
            return jsonify(record.to_json()), 200

        @self.app.route('/history/<scope>/exclusions', methods=['POST'])
        def add_exclusion(scope):
            data = _body()
            owner_id = self._owner_id()
            scope = self._scope(scope)
            if data.get('track'):
                try:
                    track = CandidateTrack.from_json(data['track'])
                except (KeyError, TypeError) as e:
                    raise RequestError(f"Malformed track: {e}")
                record = runtime.history.exclude(owner_id, scope, track)
            else:
                record = runtime.history.exclude_keys(owner_id, scope, [_required(data, 'canonicalKey')])
            return jsonify(record.to_json()), 200

        @self.app.route('/history/<scope>/exclusions', methods=['DELETE'])
        def remove_exclusion(scope):
            data = _body()
            record = runtime.history.include_again(
                self._owner_id(), self._scope(scope), _required(data, 'canonicalKey'))
            return jsonify(record.to_json()), 200

        @self.app.route('/history/<scope>/excluded-artists', methods=['DELETE'])
        def allow_artist(scope):
            data = _body()
            record = runtime.history.allow_artist(self._owner_id(), self._scope(scope), _required(data, 'artist'))
            return jsonify(record.to_json()), 200

        @self.app.route('/history/<scope>/reactions', methods=['PUT'])
        def set_reaction(scope):
            data = _body()
            record = runtime.history.react(
                self._owner_id(),
                self._scope(scope),
                _required(data, 'canonicalKey'),
                Reaction(_required(data, 'reaction')),
            )
            return jsonify(record.to_json()), 200

        @self.app.route('/history/<scope>/reactions', methods=['DELETE'])
        def clear_reaction(scope):
            data = _body()
            record = runtime.history.clear_reaction(
                self._owner_id(), self._scope(scope), _required(data, 'canonicalKey'))
            return jsonify(record.to_json()), 200

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting mixwell HTTP server on {self.host}:{self.port}")
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug,
            use_reloader=False
        )


def create_app(runtime: Optional[Runtime] = None) -> Flask:
    """Create Flask app, building the runtime from the environment when none is given."""
    server = HTTPServer(runtime or Runtime(Settings.from_env()))
    return server.app
