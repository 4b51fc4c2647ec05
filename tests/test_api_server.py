from datetime import datetime, timezone

import pytest

from bzr_analytics import api_server
from bzr_analytics.analytics.engine import AnalyticsEngine
from bzr_analytics.config import config

from conftest import ETHEREUM, POLYGON, FakeAnalyticsQueries, InMemoryStore, make_event


@pytest.fixture
def store(monkeypatch):
    store = InMemoryStore()
    monkeypatch.setattr(api_server, 'db_manager', store)
    return store


@pytest.fixture
def queries(monkeypatch):
    queries = FakeAnalyticsQueries([
        make_event(block=1, timestamp=datetime(2025, 3, 9, 8, tzinfo=timezone.utc)),
        make_event(chain_id=137, block=2, timestamp=datetime(2025, 3, 10, 8, tzinfo=timezone.utc)),
    ])
    engine = AnalyticsEngine(queries=queries, chains=[ETHEREUM, POLYGON],
                             now=lambda: datetime(2025, 3, 10, 12, tzinfo=timezone.utc))
    monkeypatch.setattr(api_server, 'analytics_engine', engine)
    return queries


@pytest.fixture
def client():
    api_server.app.config['TESTING'] = True
    return api_server.app.test_client()


def test_analytics_defaults_to_thirty_days(client, queries):
    response = client.get('/api/analytics')

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['timeRange'] == '30d'
    assert body['chainId'] == 'all'
    assert len(body['dailyData']) == 30
    assert body['analyticsMetrics']['totalTransfers'] == 2


def test_analytics_accepts_short_parameter_names(client, queries):
    response = client.get('/api/analytics?range=7d&chain=137')

    body = response.get_json()
    assert body['timeRange'] == '7d'
    assert body['chainId'] == '137'
    assert body['analyticsMetrics']['totalTransfers'] == 1


@pytest.mark.parametrize('query, code', [
    ('timeRange=2w', 'INVALID_TIME_RANGE'),
    ('chainId=424242', 'INVALID_CHAIN'),
    ('decimals=-1', 'INVALID_DECIMALS'),
])
def test_analytics_validation_errors(client, queries, query, code):
    response = client.get(f'/api/analytics?{query}')

    assert response.status_code == 400
    body = response.get_json()
    assert body['success'] is False
    assert body['error']['code'] == code
    assert body['error']['message']
    assert queries.calls == []


def test_analytics_compute_failure_is_500(client, queries):
    queries.fail_on = 'query_chain_distribution'
    queries.error = ValueError('unexpected column')

    response = client.get('/api/analytics?timeRange=7d')

    assert response.status_code == 500
    assert response.get_json()['error']['code'] == 'ANALYTICS_COMPUTE_FAILED'


def test_health_is_503_while_initializing(client, store):
    response = client.get('/api/health')

    assert response.status_code == 503
    body = response.get_json()
    assert body['status'] == 'initializing'
    assert len(body['chains']) == len(config.CHAINS)


def test_health_ok_once_every_chain_has_synced(client, store):
    for chain in config.CHAINS:
        store.record_ingest_success(chain['id'], 100)
        store.insert_transfers([make_event(chain_id=chain['id'], block=100)])

    response = client.get('/api/health')

    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_health_failure_is_500(client, store, monkeypatch):
    def broken(*_args, **_kwargs):
        raise RuntimeError('boom')

    monkeypatch.setattr(api_server, 'build_health_report', broken)

    response = client.get('/api/health')

    assert response.status_code == 500
    assert response.get_json()['error']['code'] == 'HEALTH_UNAVAILABLE'


def test_system_status_lists_every_chain(client, store):
    store.record_ingest_success(1, 1234)
    store.insert_transfers([make_event(block=1234)])

    response = client.get('/api/system-status')

    assert response.status_code == 200
    body = response.get_json()
    assert len(body) == len(config.CHAINS)
    ethereum = next(item for item in body if item['chainId'] == 1)
    assert ethereum['lastBlockNumber'] == 1234
    assert ethereum['ready'] is True


def test_system_status_when_store_not_ready(client, store):
    store.ready = False

    response = client.get('/api/system-status')

    assert response.status_code == 503
    assert response.get_json()['error']['code'] == 'STORE_UNAVAILABLE'


def test_unknown_endpoint(client):
    response = client.get('/api/nope')

    assert response.status_code == 404
    assert response.get_json()['error']['code'] == 'NOT_FOUND'
