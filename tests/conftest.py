"""
Pytest Configuration and Fixtures

This module provides shared fixtures and fakes for all tests.
"""
import json
import threading
from datetime import datetime

import pytest
import requests

from notion_sync import create_app
from notion_sync.config import TestingConfig
from notion_sync.extensions import db
from notion_sync.services.engine import get_sync_engine
from notion_sync.services.sync.remote_objects import RemoteRecord

DATABASE_ID = '0123456789abcdef0123456789abcdef'


def make_response(status=200, json_body=None, content=None, headers=None, url=''):
    """Build a real requests.Response without touching the network."""
    resp = requests.Response()
    resp.status_code = status
    resp.url = url
    if json_body is not None:
        resp._content = json.dumps(json_body).encode('utf-8')
        resp.headers['Content-Type'] = 'application/json'
    else:
        resp._content = content if content is not None else b''
    resp.headers.update(headers or {})
    resp.encoding = 'utf-8'
    return resp


class FakeSession:
    """Stands in for RequestSessionPool; every call goes to ``handler``."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda method, url, **kwargs: make_response(404, {'message': 'not found'}))
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        return self.handler(method, url, **kwargs)

    def calls_to(self, fragment):
        with self._lock:
            return [call for call in self.calls if fragment in call[1]]


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class FixedNow:
    """Settable datetime clock for components storing timestamps."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now


class MemoryLocalStore:
    """LocalStore keeping records in dictionaries."""

    def __init__(self):
        self.pages = {}
        self.watermarks = {}
        self.protected = set()
        self.fail_upsert = set()
        self.upserts = []
        self.references = []
        self._next_id = 1

    def seed(self, remote_id, watermark=None, protected=False):
        local_id = self.upsert(None, {'remote_id': remote_id, 'title': remote_id, 'content': ''})
        self.upserts.clear()
        self.watermarks[local_id] = watermark
        if protected:
            self.protected.add(local_id)
        return local_id

    def find_by_remote_id(self, remote_id):
        for local_id, fields in self.pages.items():
            if fields['remote_id'] == remote_id:
                return local_id
        return None

    def upsert(self, local_id, fields):
        if fields['remote_id'] in self.fail_upsert:
            raise RuntimeError('local store rejected the record')
        if local_id is None:
            local_id = str(self._next_id)
            self._next_id += 1
        self.pages[local_id] = dict(fields)
        self.upserts.append(fields['remote_id'])
        return local_id

    def delete(self, local_id):
        self.pages.pop(local_id, None)
        self.watermarks.pop(local_id, None)

    def get_watermark(self, local_id):
        return self.watermarks.get(local_id)

    def set_watermark(self, local_id, timestamp):
        self.watermarks[local_id] = timestamp

    def tracked_remote_ids(self):
        return {
            fields['remote_id']: local_id
            for local_id, fields in self.pages.items()
            if local_id not in self.protected
        }

    def replace_asset_reference(self, local_id, original_url, asset_url, is_primary=False):
        self.references.append((local_id, original_url, asset_url, is_primary))
        return local_id in self.pages


class FakeFetchClient:
    """Fetch client serving records and block trees from memory."""

    def __init__(self, records=None, trees=None):
        self.records = list(records or [])
        self.trees = dict(trees or {})
        self.fail_trees = {}
        self.list_error = None
        self.list_calls = []
        self.id_list_calls = 0
        self.tree_calls = []
        self.invalidated = []

    def invalidate_database(self, database_id):
        self.invalidated.append(database_id)
        return 0

    def list_records(self, database_id, filter=None, sorts=None):
        self.list_calls.append(filter)
        if self.list_error is not None:
            raise self.list_error
        if filter:
            from notion_sync.utils.timeutils import parse_iso
            after = parse_iso(filter['last_edited_time']['after'])
            return [r for r in self.records if r.last_edited_time > after]
        return list(self.records)

    def list_record_ids(self, database_id):
        self.id_list_calls += 1
        return [record.id for record in self.records]

    def get_block_tree(self, root_id, max_depth=None, version=None):
        self.tree_calls.append(root_id)
        if root_id in self.fail_trees:
            raise self.fail_trees[root_id]
        return list(self.trees.get(root_id, []))


class RecordingQueue:
    """Download queue stand-in recording enqueue calls."""

    def __init__(self):
        self.enqueued = []

    def enqueue(self, url, target_record_id, is_primary=False, caption=None):
        self.enqueued.append((url, target_record_id, is_primary))


def make_record(record_id, edited, title=None, cover=None):
    """RemoteRecord with a title property."""
    properties = {
        'Name': {'type': 'title', 'title': [{'plain_text': title or record_id}]},
    }
    return RemoteRecord(id=record_id, last_edited_time=edited, properties=properties, cover=cover)


@pytest.fixture
def fake_session():
    """HTTP session fake shared by the app's engine."""
    return FakeSession()


@pytest.fixture(scope='function')
def app(fake_session):
    """Create application for testing."""
    app = create_app(TestingConfig, session=fake_session)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

    get_sync_engine(app).close()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def local_store():
    return MemoryLocalStore()


@pytest.fixture
def sample_page_payload():
    """Page object as returned by a database query."""
    return {
        'object': 'page',
        'id': 'page-1',
        'created_time': '2024-01-01T00:00:00.000Z',
        'last_edited_time': '2024-01-02T08:30:00.000Z',
        'url': 'https://www.notion.so/page-1',
        'cover': None,
        'properties': {
            'Name': {'type': 'title', 'title': [{'plain_text': 'Hello'}]},
            'Tags': {'type': 'multi_select', 'multi_select': [{'name': 'a'}]},
        },
    }
