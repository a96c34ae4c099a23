"""
API Tests

Tests for REST API endpoints.
"""
import json

import pytest

from conftest import DATABASE_ID, make_response


def notion_handler(pages, children=None):
    """Route database queries and block children requests of a fake remote API."""
    children = children or {}

    def handler(method, url, **kwargs):
        if method == 'POST' and '/databases/' in url:
            return make_response(200, {'results': pages, 'has_more': False, 'next_cursor': None})
        if '/blocks/' in url:
            block_id = url.split('/blocks/')[1].split('/')[0]
            return make_response(200, {
                'results': children.get(block_id, []),
                'has_more': False,
                'next_cursor': None,
            })
        return make_response(404, {'message': 'not found'})

    return handler


def paragraph(block_id, text):
    return {
        'object': 'block',
        'id': block_id,
        'type': 'paragraph',
        'has_children': False,
        'paragraph': {'rich_text': [{'plain_text': text}]},
    }


class TestHealthCheck:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        response = client.get('/api/health')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'notion-sync'

    def test_unknown_route(self, client):
        response = client.get('/api/nothing-here')

        assert response.status_code == 404
        assert json.loads(response.data)['success'] is False


class TestSyncAPI:
    """Tests for sync API endpoints."""

    def test_invalid_database_id(self, client):
        response = client.post('/api/sync/not-an-id')

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error']['code'] == 'VALIDATION_ERROR'

    def test_status_before_first_run(self, client):
        response = client.get(f'/api/sync/{DATABASE_ID}/status')

        assert response.status_code == 404

    def test_sync_imports_records(self, app, client, fake_session, sample_page_payload):
        """A run lists the database, fetches each block tree and stores the page."""
        from notion_sync.extensions import db
        from notion_sync.models import LocalPage

        fake_session.handler = notion_handler(
            [sample_page_payload],
            {'page-1': [paragraph('b1', 'First paragraph')]},
        )

        response = client.post(
            f'/api/sync/{DATABASE_ID}',
            data=json.dumps({'incremental': False}),
            content_type='application/json'
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['data']['mode'] == 'full'
        assert data['data']['summary']['created'] == 1
        assert data['data']['summary']['failed'] == 0

        db.session.expire_all()
        page = LocalPage.query.filter_by(remote_id='page-1').first()
        assert page is not None
        assert page.title == 'Hello'
        assert 'First paragraph' in page.content

        method, url, kwargs = fake_session.calls_to('/databases/')[0]
        assert method == 'POST'
        assert kwargs['headers']['Notion-Version'] == '2022-06-28'
        assert kwargs['headers']['Authorization'] == 'Bearer secret_test'

    def test_status_after_run(self, client, fake_session, sample_page_payload):
        fake_session.handler = notion_handler([sample_page_payload])
        client.post(f'/api/sync/{DATABASE_ID}')

        response = client.get(f'/api/sync/{DATABASE_ID}/status')

        assert response.status_code == 200
        data = json.loads(response.data)['data']
        assert data['status'] == 'done'
        assert data['locked'] is False
        assert data['last_success_at'] is not None
        assert data['last_stats']['summary']['total'] == 1

    def test_second_run_skips_unchanged(self, client, fake_session, sample_page_payload):
        """An incremental run skips records whose edit time matches the watermark."""
        fake_session.handler = notion_handler([sample_page_payload])
        client.post(f'/api/sync/{DATABASE_ID}')

        response = client.post(f'/api/sync/{DATABASE_ID}')

        summary = json.loads(response.data)['data']['summary']
        assert summary['created'] == 0
        assert summary['updated'] == 0
        assert summary['skipped'] == 1

    def test_sync_in_progress(self, app, client):
        from notion_sync.services.engine import get_sync_engine

        get_sync_engine(app).coordinator.lock.acquire(DATABASE_ID)

        response = client.post(f'/api/sync/{DATABASE_ID}')

        assert response.status_code == 409
        assert json.loads(response.data)['error']['code'] == 'SYNC_IN_PROGRESS'

    def test_background_sync_conflict(self, app, client):
        from notion_sync.services.engine import get_sync_engine

        get_sync_engine(app).coordinator.lock.acquire(DATABASE_ID)

        response = client.post(
            f'/api/sync/{DATABASE_ID}',
            data=json.dumps({'background': True}),
            content_type='application/json'
        )

        assert response.status_code == 409

    def test_listing_failure(self, client, fake_session):
        fake_session.handler = lambda method, url, **kw: make_response(401, {'message': 'unauthorized'})

        response = client.post(f'/api/sync/{DATABASE_ID}')

        assert response.status_code == 502
        assert json.loads(response.data)['error']['code'] == 'LISTING_FAILED'

        state = json.loads(client.get(f'/api/sync/{DATABASE_ID}/status').data)['data']
        assert state['status'] == 'failed'
        assert state['locked'] is False

    def test_undecodable_listing(self, client, fake_session, sample_page_payload):
        """A listed record without an id is a bad upstream reply, not a server error."""
        broken = dict(sample_page_payload)
        del broken['id']
        fake_session.handler = notion_handler([broken])

        response = client.post(f'/api/sync/{DATABASE_ID}')

        assert response.status_code == 502
        error = json.loads(response.data)['error']
        assert error['code'] == 'LISTING_FAILED'
        assert error['details'] == {'kind': 'malformed', 'status_code': None}
        state = json.loads(client.get(f'/api/sync/{DATABASE_ID}/status').data)['data']
        assert state['locked'] is False

    def test_lock_lost(self, app, client):
        from unittest.mock import patch

        from notion_sync.services.engine import get_sync_engine
        from notion_sync.services.sync.errors import LockLostError

        coordinator = get_sync_engine(app).coordinator
        with patch.object(coordinator, 'run', side_effect=LockLostError(DATABASE_ID)):
            response = client.post(f'/api/sync/{DATABASE_ID}')

        assert response.status_code == 409
        assert json.loads(response.data)['error']['code'] == 'LOCK_LOST'

    def test_engine_stats(self, client):
        response = client.get('/api/sync/stats')

        assert response.status_code == 200
        data = json.loads(response.data)['data']
        assert data['controller']['concurrency'] == 10
        assert 'hit_rate' in data['cache']


class TestAuth:
    """Tests for the API key check."""

    @pytest.fixture
    def secured(self, app):
        app.config['API_KEY'] = 'letmein'
        return app

    def test_missing_key(self, secured, client):
        response = client.post(f'/api/sync/{DATABASE_ID}')

        assert response.status_code == 401

    def test_wrong_key(self, secured, client):
        response = client.post('/api/queue/process', headers={'X-API-Key': 'nope'})

        assert response.status_code == 401

    def test_read_endpoints_stay_open(self, secured, client):
        assert client.get('/api/queue').status_code == 200

    def test_valid_key(self, secured, client):
        response = client.post('/api/queue/process', headers={'X-API-Key': 'letmein'})

        assert response.status_code == 200


class TestQueueAPI:
    """Tests for download queue endpoints."""

    def test_empty_queue(self, client):
        response = client.get('/api/queue')

        assert response.status_code == 200
        data = json.loads(response.data)['data']
        assert data['stats']['queue_size'] == 0
        assert data['history'] == []

    def test_invalid_history(self, client):
        response = client.get('/api/queue?history=abc')

        assert response.status_code == 400

    def test_process(self, app, client, fake_session, tmp_path):
        from notion_sync.services.engine import get_sync_engine

        fake_session.handler = lambda method, url, **kw: make_response(
            200, content=b'png', headers={'Content-Type': 'image/png'}
        )
        from notion_sync.services.stores import FileAssetStore

        queue = get_sync_engine(app).download_queue
        queue.asset_store = FileAssetStore(str(tmp_path))
        queue.enqueue('https://f.test/a.png?sig=1', '1')

        response = client.post(
            '/api/queue/process',
            data=json.dumps({'batch_size': 2}),
            content_type='application/json'
        )

        assert response.status_code == 200
        data = json.loads(response.data)['data']
        assert data['claimed'] == 1
        assert data['downloaded'] == 1
        assert data['queue_size'] == 0

    def test_retry_failed(self, client):
        response = client.post('/api/queue/retry-failed')

        assert response.status_code == 200
        assert json.loads(response.data)['data']['requeued'] == 0

    def test_download_failures_stay_off_api_controller(self, app, client, fake_session):
        """Failing file hosts are scored by the download controller, not the API one."""
        from notion_sync.services.engine import get_sync_engine

        fake_session.handler = lambda method, url, **kw: make_response(503, {'message': 'unavailable'})
        engine = get_sync_engine(app)
        assert engine.download_queue.controller is engine.download_controller
        assert engine.download_controller is not engine.controller
        engine.download_queue.enqueue('https://f.test/a.png?sig=1', '1')

        client.post('/api/queue/process')

        api_stats = engine.controller.get_stats()
        assert api_stats['total'] == 0
        assert api_stats['attempts'] == 0
        download_stats = engine.download_controller.get_stats()
        assert download_stats['failed'] == 1
        assert download_stats['attempts'] > 1

        stats = json.loads(client.get('/api/sync/stats').data)['data']
        assert stats['download_controller']['failed'] == 1
        assert stats['controller']['failed'] == 0
