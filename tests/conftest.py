"""Shared doubles: an in-memory transfer store and a scripted explorer client"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from bzr_analytics.analytics import series
from bzr_analytics.errors import StoreUnavailableError
from bzr_analytics.ingestors.key_pool import KeyPoolRegistry
from bzr_analytics.models import BackfillProgress, ChainCursor, TransferEvent

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

ETHEREUM = {'id': 1, 'name': 'Ethereum', 'provider': 'etherscan'}
POLYGON = {'id': 137, 'name': 'Polygon', 'provider': 'etherscan'}
CRONOS = {'id': 25, 'name': 'Cronos', 'provider': 'cronos'}


def make_event(chain_id=1, block=1, log_index=0, value=10 ** 18, timestamp=None,
               from_address='0xaaa', to_address='0xbbb', tx_hash=None):
    return TransferEvent(
        chain_id=chain_id,
        block_number=block,
        tx_hash=tx_hash or f"0x{chain_id:x}{block:08x}{log_index:04x}",
        log_index=log_index,
        timestamp=timestamp or BASE_TIME + timedelta(minutes=block),
        from_address=from_address,
        to_address=to_address,
        value_raw=value,
    )


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class InMemoryStore:
    """Implements the DatabaseManager operations used by ingestion, backfill and health"""

    def __init__(self, ready=True):
        self.ready = ready
        self.events = {}
        self.cursors = {}
        self.backfill = {}
        self.credentials = {}
        self.insert_calls = 0
        self._lock = threading.Lock()

    def insert_transfers(self, events):
        with self._lock:
            self.insert_calls += 1
            inserted = 0
            for event in events:
                if event.key not in self.events:
                    self.events[event.key] = event
                    inserted += 1
            return inserted

    def count_transfers_by_chain(self, chain_ids=None):
        counts = {}
        for chain_id, _, _ in self.events:
            if chain_ids and chain_id not in chain_ids:
                continue
            counts[chain_id] = counts.get(chain_id, 0) + 1
        return counts

    def events_for(self, chain_id):
        return sorted(
            (e for e in self.events.values() if e.chain_id == chain_id),
            key=lambda e: (e.block_number, e.log_index),
        )

    def get_chain_cursor(self, chain_id):
        return self.cursors.get(chain_id)

    def get_chain_cursors(self, chain_ids=None):
        return [c for cid, c in sorted(self.cursors.items()) if not chain_ids or cid in chain_ids]

    def record_ingest_success(self, chain_id, last_block_number, at=None):
        with self._lock:
            cursor = self.cursors.setdefault(chain_id, ChainCursor(chain_id=chain_id))
            cursor.last_block_number = max(cursor.last_block_number, last_block_number)
            cursor.last_success_at = at or datetime.now(timezone.utc)
            cursor.consecutive_failures = 0
            cursor.backoff_until = None
            cursor.last_error = None

    def record_ingest_failure(self, chain_id, consecutive_failures, backoff_until, error, at=None):
        with self._lock:
            cursor = self.cursors.setdefault(chain_id, ChainCursor(chain_id=chain_id))
            cursor.consecutive_failures = consecutive_failures
            cursor.backoff_until = backoff_until
            cursor.last_error = error
            cursor.last_error_at = at or datetime.now(timezone.utc)

    def record_ingest_paused(self, chain_id, reason):
        cursor = self.cursors.setdefault(chain_id, ChainCursor(chain_id=chain_id))
        cursor.last_error = reason

    def get_backfill_progress(self, chain_id):
        progress = self.backfill.get(chain_id)
        if progress is None:
            return None
        return BackfillProgress(**vars(progress))

    def save_backfill_progress(self, progress):
        stored = self.backfill.get(progress.chain_id)
        last = progress.last_processed_block
        if stored is not None:
            last = max(stored.last_processed_block, last)
        self.backfill[progress.chain_id] = BackfillProgress(
            chain_id=progress.chain_id,
            target_block=progress.target_block,
            last_processed_block=last,
            total_backfilled=progress.total_backfilled,
            status=progress.status,
        )

    def load_api_credentials(self):
        return {provider: list(keys) for provider, keys in self.credentials.items()}

    def test_connection(self):
        return self.ready

    def is_ready(self):
        return self.ready


class FakeClient:
    """
    Serves a fixed list of transfers the way an explorer pages them: filtered
    by block range, sorted, sliced by page and offset.
    """

    provider = 'etherscan'

    def __init__(self, events=(), page_size_cap=10000, result_window=10000, fail_with=None):
        self.events = sorted(events, key=lambda e: (e.block_number, e.log_index))
        self.page_size_cap = page_size_cap
        self.result_window = result_window
        self.fail_with = fail_with
        self.calls = []

    def clamp_page_size(self, page_size):
        if not page_size or page_size <= 0:
            return self.page_size_cap
        return min(int(page_size), self.page_size_cap)

    def fetch_page(self, chain, page=1, page_size=None, sort='asc', start_block=None, end_block=None):
        page_size = self.clamp_page_size(page_size)
        self.calls.append({'chain': chain['id'], 'page': page, 'page_size': page_size, 'sort': sort,
                           'start_block': start_block, 'end_block': end_block})
        if self.fail_with is not None:
            error = self.fail_with(len(self.calls)) if callable(self.fail_with) else self.fail_with
            if error is not None:
                raise error
        rows = [
            e for e in self.events
            if e.chain_id == chain['id']
            and (start_block is None or e.block_number >= start_block)
            and (end_block is None or e.block_number <= end_block)
        ]
        if sort == 'desc':
            rows = list(reversed(rows))
        offset = (page - 1) * page_size
        return rows[offset:offset + page_size]


class FakeClientRegistry:
    """Stands in for ClientRegistry with scripted clients per chain"""

    def __init__(self, clients, key_pools=None):
        self.clients = clients
        self.key_pools = key_pools or KeyPoolRegistry()

    def client_for(self, chain):
        return self.clients[chain['id']]

    def pool_for_chain(self, chain):
        return self.key_pools.pool_for(chain.get('provider') or 'etherscan')


class FakeAnalyticsQueries:
    """AnalyticsQueries over a list of TransferEvents, aggregated in memory"""

    def __init__(self, events=(), ready=True, fail_on=None, error=None):
        self.events = list(events)
        self.ready = ready
        self.fail_on = fail_on
        self.error = error
        self.calls = []

    def _select(self, chain_ids):
        return [e for e in self.events if not chain_ids or e.chain_id in chain_ids]

    def _maybe_fail(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise self.error or StoreUnavailableError('connection lost')

    def _aggregate(self, chain_ids, start, end, limit=15):
        far_future = datetime(2100, 1, 1, tzinfo=timezone.utc)
        return series.aggregate_sample(self._select(chain_ids), start, end or far_future, limit)

    def is_ready(self):
        return self.ready

    def query_daily_analytics(self, chain_ids=None, start=None, end=None):
        self._maybe_fail('query_daily_analytics')
        return self._aggregate(chain_ids, start, end)['daily']

    def query_analytics_summary(self, chain_ids=None, start=None, end=None):
        self._maybe_fail('query_analytics_summary')
        return self._aggregate(chain_ids, start, end)['summary']

    def query_chain_distribution(self, chain_ids=None, start=None, end=None):
        self._maybe_fail('query_chain_distribution')
        return self._aggregate(chain_ids, start, end)['chains']

    def query_top_addresses(self, chain_ids=None, start=None, end=None, limit=15):
        self._maybe_fail('query_top_addresses')
        return self._aggregate(chain_ids, start, end, limit)['top_addresses']

    def query_top_transfers(self, chain_ids=None, start=None, end=None, limit=15):
        self._maybe_fail('query_top_transfers')
        return self._aggregate(chain_ids, start, end, limit)['top_transfers']

    def get_max_timestamp(self, chain_ids=None):
        self._maybe_fail('get_max_timestamp')
        latest = max((e.timestamp for e in self._select(chain_ids)), default=None)
        return {'latest': latest, 'lag_seconds': 120 if latest else None}


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return lambda _seconds: None
