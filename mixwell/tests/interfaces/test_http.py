import json
from unittest.mock import Mock

from mixwell.application.reasoning import FixedReasoning
from mixwell.domain.entities import PlatformKind, TokenRecord
from mixwell.domain.errors import PermanentFailure, RateLimited
from mixwell.infrastructure.storage import InMemoryStore
from mixwell.interfaces.http import HTTPServer
from mixwell.interfaces.runtime import Runtime
from mixwell.tests.fakes import (
    FakePlatform,
    ImmediateExecutor,
    generated_results,
    make_settings,
    make_track,
)


HEADERS = {'X-Owner-Id': 'user-1', 'X-Platform': 'spotify', 'X-Account-Id': 'user-1'}
OTHER_USER = {'X-Owner-Id': 'user-2', 'X-Platform': 'spotify', 'X-Account-Id': 'user-2'}


class TestHTTPServer:
    """Tests for HTTP server functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.spotify = FakePlatform(search_fn=generated_results)
        self.apple = FakePlatform(kind=PlatformKind.APPLE_MUSIC)
        self.reasoning = FixedReasoning(["pop", "dance", "rock"])
        self.runtime = Runtime(
            make_settings(),
            store=InMemoryStore(),
            adapters={PlatformKind.SPOTIFY: self.spotify, PlatformKind.APPLE_MUSIC: self.apple},
            reasoning_capability=self.reasoning,
            executor=ImmediateExecutor(),
            sleep=lambda s: None,
        )
        self.server = HTTPServer(self.runtime, port=3001)
        self.client = self.server.app.test_client()

    def teardown_method(self):
        self.runtime.shutdown()

    def _create_draft(self, song_count=5):
        response = self.client.post('/drafts', headers=HEADERS,
                                    json={'prompt': "Early 2000's pop music", 'songCount': song_count})
        assert response.status_code == 201
        return json.loads(response.data)

    def _commit(self, draft_id, **body):
        body.setdefault('name', 'Throwback')
        response = self.client.post(f'/drafts/{draft_id}/commit', headers=HEADERS, json=body)
        assert response.status_code == 201
        return json.loads(response.data)

    def _playlist(self):
        return self._commit(self._create_draft()['draftId'])

    def test_health_check(self):
        """Test health check endpoint."""
        response = self.client.get('/health')

        assert response.status_code == 200
        data = json.loads(response.data)

        assert data['status'] == 'healthy'
        assert data['version'] == '0.1.0'
        assert data['scheduler'] == 'stopped'
        assert data['configuration']['openai_api_key'] is False
        assert 'timestamp' in data

    def test_root_endpoint(self):
        """Test root endpoint."""
        response = self.client.get('/')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['service'] == 'mixwell HTTP Interface'
        assert data['endpoints']['drafts'] == '/drafts'

    def test_spotify_auth_without_credentials(self):
        response = self.client.get('/auth/spotify')

        assert response.status_code == 503
        assert json.loads(response.data)['error'] == 'Service not configured'

    def test_spotify_auth_url(self):
        self.runtime.spotify_auth = Mock()
        self.runtime.spotify_auth.authorize_url.return_value = 'https://accounts.spotify.com/authorize?x=1'

        response = self.client.get('/auth/spotify?state=abc')

        assert response.status_code == 200
        assert json.loads(response.data)['auth_url'] == 'https://accounts.spotify.com/authorize?x=1'
        self.runtime.spotify_auth.authorize_url.assert_called_once_with(state='abc')

    def test_oauth_callback_errors(self):
        """Test OAuth callback with an error or without a code."""
        response = self.client.get('/callback?error=access_denied')
        assert response.status_code == 400
        assert json.loads(response.data)['details'] == 'access_denied'

        response = self.client.get('/callback')
        assert response.status_code == 400
        assert json.loads(response.data)['error'] == 'Missing authorization code'

    def test_oauth_callback_success(self):
        """Test successful OAuth callback stores the token record."""
        self.runtime.spotify_auth = Mock()
        self.runtime.spotify_auth.exchange_code.return_value = TokenRecord(
            owner_id='user-1', platform=PlatformKind.SPOTIFY, access_token='access', refresh_token='refresh')

        response = self.client.get('/callback?code=test_code')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'success'
        assert data['account'] == {'kind': 'spotify', 'externalAccountId': 'user-1'}
        self.runtime.spotify_auth.exchange_code.assert_called_once_with('test_code')
        stored = self.runtime.store.load_token_record('user-1', PlatformKind.SPOTIFY)
        assert stored.refresh_token == 'refresh'
        assert stored.updated_at is not None

    def test_apple_music_connect(self):
        response = self.client.post('/connect/apple-music', json={
            'accountId': 'apple-user-1', 'musicUserToken': 'mut', 'storefront': 'gb'})

        assert response.status_code == 200
        assert json.loads(response.data)['account']['kind'] == 'apple_music'
        stored = self.runtime.store.load_token_record('apple-user-1', PlatformKind.APPLE_MUSIC)
        assert stored.access_token == 'mut'
        assert stored.storefront == 'gb'

    def test_apple_music_connect_requires_token(self):
        response = self.client.post('/connect/apple-music', json={'accountId': 'apple-user-1'})
        assert response.status_code == 400
        assert 'musicUserToken' in json.loads(response.data)['details']

    def test_library(self):
        self.spotify.seed_playlist('live-1', [make_track('Toxic', 'Britney Spears')], name='Mine')

        response = self.client.get('/library', headers=HEADERS)

        assert response.status_code == 200
        playlists = json.loads(response.data)['playlists']
        assert playlists[0]['id'] == 'live-1'
        assert playlists[0]['trackCount'] == 1

    def test_missing_headers(self):
        assert self.client.get('/drafts').status_code == 400
        assert self.client.get('/library', headers={'X-Owner-Id': 'user-1'}).status_code == 400
        response = self.client.get('/library', headers={**HEADERS, 'X-Platform': 'tidal'})
        assert response.status_code == 400

    def test_draft_lifecycle(self):
        """Create, refine, trim and read back a draft."""
        draft = self._create_draft()

        assert len(draft['tracks']) == 5
        assert draft['tracks'][0]['name'] == 'pop song 0'

        refined = self.client.post(f"/drafts/{draft['draftId']}/refine", headers=HEADERS,
                                   json={'instruction': 'more upbeat'})
        assert refined.status_code == 200
        refined = json.loads(refined.data)
        assert refined['draftId'] == draft['draftId']
        assert refined['refinements'] == ['more upbeat']

        removed_key = refined['tracks'][0]['canonicalKey']
        response = self.client.post(f"/drafts/{draft['draftId']}/tracks/remove", headers=HEADERS,
                                    json={'canonicalKey': removed_key})
        assert response.status_code == 200
        assert removed_key in json.loads(response.data)['excludedSongs']

        listed = json.loads(self.client.get('/drafts', headers=HEADERS).data)['drafts']
        assert [d['draftId'] for d in listed] == [draft['draftId']]
        assert self.client.get(f"/drafts/{draft['draftId']}", headers=HEADERS).status_code == 200

    def test_draft_requires_prompt(self):
        response = self.client.post('/drafts', headers=HEADERS, json={'songCount': 5})
        assert response.status_code == 400

    def test_draft_rejects_bad_song_count(self):
        response = self.client.post('/drafts', headers=HEADERS, json={'prompt': 'p', 'songCount': 'many'})
        assert response.status_code == 400
        response = self.client.post('/drafts', headers=HEADERS, json={'prompt': 'p', 'songCount': 0})
        assert response.status_code == 400

    def test_draft_of_another_user(self):
        draft = self._create_draft()

        assert self.client.get(f"/drafts/{draft['draftId']}", headers=OTHER_USER).status_code == 403
        response = self.client.post('/drafts', headers=OTHER_USER,
                                    json={'prompt': 'p', 'draftId': draft['draftId']})
        assert response.status_code == 403

    def test_unknown_draft(self):
        response = self.client.get('/drafts/nope', headers=HEADERS)
        assert response.status_code == 404
        assert json.loads(response.data)['error'] == 'Not found'

    def test_commit_and_discard(self):
        draft = self._create_draft()

        spec = self._commit(draft['draftId'], autoUpdate={
            'frequency': 'daily', 'timeOfDay': '09:00', 'timezone': 'America/New_York'})

        assert spec['ownerId'] == 'user-1'
        assert spec['autoUpdate']['frequency'] == 'daily'
        assert spec['timestamps']['nextRunAt'] is not None
        assert len(self.spotify.playlists[spec['externalPlaylistId']]) == 5
        assert self.client.get(f"/drafts/{draft['draftId']}", headers=HEADERS).status_code == 404

        other = self._create_draft()
        response = self.client.delete(f"/drafts/{other['draftId']}", headers=HEADERS)
        assert response.status_code == 200
        assert json.loads(response.data) == {'status': 'deleted', 'draftId': other['draftId']}

    def test_commit_with_unknown_timezone(self):
        draft = self._create_draft()
        response = self.client.post(f"/drafts/{draft['draftId']}/commit", headers=HEADERS, json={
            'name': 'Throwback', 'autoUpdate': {'frequency': 'daily', 'timezone': 'Mars/Olympus'}})
        assert response.status_code == 400

    def test_commit_partial_failure(self):
        draft = self._create_draft()
        self.spotify.add_failures = [PermanentFailure('rejected')]

        response = self.client.post(f"/drafts/{draft['draftId']}/commit", headers=HEADERS,
                                    json={'name': 'Throwback'})

        assert response.status_code == 207
        data = json.loads(response.data)
        assert data['added'] == 0
        assert data['failedAdds'] == 5

    def test_playlists_listing(self):
        spec = self._playlist()

        listed = json.loads(self.client.get('/playlists', headers=HEADERS).data)['playlists']
        assert [p['id'] for p in listed] == [spec['id']]

        detail = json.loads(self.client.get(f"/playlists/{spec['id']}", headers=HEADERS).data)
        assert detail['refreshing'] is False
        assert self.client.get(f"/playlists/{spec['id']}", headers=OTHER_USER).status_code == 403
        assert self.client.get('/playlists/nope', headers=HEADERS).status_code == 404

    def test_refresh_accepted(self):
        spec = self._playlist()

        response = self.client.post(f"/playlists/{spec['id']}/refresh", headers=HEADERS, json={})

        assert response.status_code == 202
        assert json.loads(response.data) == {'status': 'accepted', 'playlistId': spec['id'], 'duplicate': False}
        assert len(self.spotify.playlists[spec['externalPlaylistId']]) == 10

    def test_refresh_wait_returns_outcome(self):
        spec = self._playlist()

        response = self.client.post(f"/playlists/{spec['id']}/refresh?wait=true", headers=HEADERS,
                                    json={'songCount': 3})

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'applied'
        assert data['trigger'] == 'manual'
        assert data['added'] == 3
        assert data['duplicate'] is False

    def test_refresh_duplicate_idempotency_key(self):
        spec = self._playlist()
        headers = {**HEADERS, 'Idempotency-Key': 'click-1'}

        first = self.client.post(f"/playlists/{spec['id']}/refresh", headers=headers, json={'songCount': 2})
        second = self.client.post(f"/playlists/{spec['id']}/refresh", headers=headers, json={'songCount': 2})

        assert json.loads(first.data)['duplicate'] is False
        assert json.loads(second.data)['duplicate'] is True
        assert len(self.spotify.playlists[spec['externalPlaylistId']]) == 7

    def test_refresh_rejects_bad_mode(self):
        spec = self._playlist()
        response = self.client.post(f"/playlists/{spec['id']}/refresh", headers=HEADERS, json={'mode': 'shuffle'})
        assert response.status_code == 400

    def test_refresh_partial_failure(self):
        spec = self._playlist()
        self.spotify.add_failures = [PermanentFailure('rejected')]

        response = self.client.post(f"/playlists/{spec['id']}/refresh?wait=1", headers=HEADERS, json={})

        assert response.status_code == 207
        assert json.loads(response.data)['failedAdds'] == 5

    def test_refresh_with_no_candidates(self):
        spec = self._playlist()
        self.spotify.search_fn = lambda q: []

        response = self.client.post(f"/playlists/{spec['id']}/refresh?wait=true", headers=HEADERS, json={})

        assert response.status_code == 422

    def test_update_settings(self):
        spec = self._playlist()

        response = self.client.put(f"/playlists/{spec['id']}/settings", headers=HEADERS, json={
            'frequency': 'weekly', 'mode': 'replace', 'timeOfDay': '07:30', 'timezone': 'Europe/Berlin'})

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['autoUpdate']['mode'] == 'replace'
        assert data['autoUpdate']['timeOfDay'] == '07:30'
        assert data['timestamps']['nextRunAt'] is not None

        response = self.client.put(f"/playlists/{spec['id']}/settings", headers=HEADERS,
                                   json={'timezone': 'Nowhere/Special'})
        assert response.status_code == 400

    def test_add_refinement_and_delete(self):
        spec = self._playlist()

        response = self.client.post(f"/playlists/{spec['id']}/refinements", headers=HEADERS,
                                    json={'instruction': 'no ballads'})
        assert json.loads(response.data)['refinements'] == ['no ballads']

        response = self.client.delete(f"/playlists/{spec['id']}", headers=HEADERS)
        assert response.status_code == 200
        assert self.client.get(f"/playlists/{spec['id']}", headers=HEADERS).status_code == 404
        assert spec['externalPlaylistId'] in self.spotify.playlists

    def test_history_exclusions(self):
        spec = self._playlist()
        track = make_track('Toxic', 'Britney Spears', isrc='USJI10301067')

        response = self.client.post(f"/history/{spec['id']}/exclusions", headers=HEADERS,
                                    json={'track': track.to_json()})
        assert response.status_code == 200
        assert json.loads(response.data)['excluded'] == ['isrc:USJI10301067', 'meta:toxic|britney spears']
        assert json.loads(response.data)['artistStrikes'] == {'britney spears': 1}

        response = self.client.delete(f"/history/{spec['id']}/exclusions", headers=HEADERS,
                                      json={'canonicalKey': 'isrc:USJI10301067'})
        assert json.loads(response.data)['excluded'] == []
        assert json.loads(response.data)['linkedKeys'] == {}

        response = self.client.post('/history/global/exclusions', headers=HEADERS,
                                    json={'canonicalKey': 'meta:lucky|britney spears'})
        assert json.loads(response.data)['scope'] == 'global'
        assert json.loads(self.client.get('/history/global', headers=HEADERS).data)['excluded'] == [
            'meta:lucky|britney spears']

    def test_history_of_another_users_playlist(self):
        spec = self._playlist()
        assert self.client.get(f"/history/{spec['id']}", headers=OTHER_USER).status_code == 403

    def test_history_malformed_track(self):
        response = self.client.post('/history/global/exclusions', headers=HEADERS, json={'track': {'name': 'x'}})
        assert response.status_code == 400

    def test_allow_artist(self):
        for name in ('Toxic', 'Lucky', 'Oops'):
            self.runtime.history.exclude('user-1', 'global', make_track(name, 'Britney Spears'))
        assert 'britney spears' in self.runtime.history.load('user-1').excluded_artists

        response = self.client.delete('/history/global/excluded-artists', headers=HEADERS,
                                      json={'artist': 'Britney Spears'})

        data = json.loads(response.data)
        assert data['excludedArtists'] == []
        assert data['artistStrikes'] == {}

    def test_reactions(self):
        response = self.client.put('/history/global/reactions', headers=HEADERS,
                                   json={'canonicalKey': 'k1', 'reaction': 'liked'})
        assert json.loads(response.data)['reactions'] == {'k1': 'liked'}

        response = self.client.put('/history/global/reactions', headers=HEADERS,
                                   json={'canonicalKey': 'k1', 'reaction': 'meh'})
        assert response.status_code == 400

        response = self.client.delete('/history/global/reactions', headers=HEADERS, json={'canonicalKey': 'k1'})
        assert json.loads(response.data)['reactions'] == {}

    def test_rate_limited_response(self):
        self.spotify.get_library_playlists = Mock(side_effect=RateLimited(2500))

        response = self.client.get('/library', headers=HEADERS)

        assert response.status_code == 429
        assert response.headers['Retry-After'] == '2'
        assert json.loads(response.data)['retryAfterMs'] == 2500

    def test_unhandled_error(self):
        self.spotify.get_library_playlists = Mock(side_effect=RuntimeError('boom'))

        response = self.client.get('/library', headers=HEADERS)

        assert response.status_code == 500
        assert json.loads(response.data)['error'] == 'Internal server error'

    def test_unknown_route(self):
        assert self.client.get('/nope').status_code == 404

    def test_non_object_body(self):
        response = self.client.post('/drafts', headers=HEADERS, json=['prompt'])
        assert response.status_code == 400
