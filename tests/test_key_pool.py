import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from bzr_analytics.ingestors.key_pool import ApiKeyPool, KeyPoolRegistry, mask_key

from conftest import FakeClock


def test_round_robin_skips_backed_off_key_until_expiry():
    clock = FakeClock()
    pool = ApiKeyPool('etherscan', ['key-1', 'key-2', 'key-3'], default_backoff_seconds=60, clock=clock)

    pool.mark_failed('key-2', reason='rate_limit')

    assert [pool.next() for _ in range(4)] == ['key-1', 'key-3', 'key-1', 'key-3']

    clock.advance(61)
    assert {pool.next() for _ in range(3)} == {'key-1', 'key-2', 'key-3'}


def test_next_returns_none_when_every_key_is_backed_off():
    clock = FakeClock()
    pool = ApiKeyPool('etherscan', ['a', 'b'], default_backoff_seconds=30, clock=clock)
    pool.mark_failed('a')
    pool.mark_failed('b')

    assert pool.next() is None
    assert pool.available_count() == 0

    clock.advance(31)
    assert pool.next() in ('a', 'b')


def test_empty_pool_returns_none():
    pool = ApiKeyPool('cronos')
    assert pool.next() is None
    assert not pool.has_keys()


def test_mark_failed_extends_but_never_shortens_backoff():
    clock = FakeClock()
    pool = ApiKeyPool('etherscan', ['a'], default_backoff_seconds=60, clock=clock)
    pool.mark_failed('a', duration_seconds=600)
    pool.mark_failed('a', duration_seconds=10)

    clock.advance(100)
    assert pool.next() is None
    clock.advance(501)
    assert pool.next() == 'a'


def test_backoff_is_logged_with_reason_and_masked_key(caplog):
    pool = ApiKeyPool('etherscan', ['SECRETKEY1234'], default_backoff_seconds=60, clock=FakeClock())
    with caplog.at_level(logging.WARNING):
        pool.mark_failed('SECRETKEY1234', reason='http_429')

    assert 'http_429' in caplog.text
    assert '***1234' in caplog.text
    assert 'SECRETKEY1234' not in caplog.text


def test_set_keys_keeps_backoff_for_surviving_keys():
    clock = FakeClock()
    pool = ApiKeyPool('etherscan', ['a', 'b'], default_backoff_seconds=60, clock=clock)
    pool.mark_failed('a')

    pool.set_keys(['a', 'c', 'c', ' '])

    assert pool.keys == ['a', 'c']
    assert [pool.next() for _ in range(2)] == ['c', 'c']


def test_registry_pools_are_independent_per_provider():
    clock = FakeClock()
    registry = KeyPoolRegistry({'etherscan': ['e1'], 'cronos': ['c1']}, default_backoff_seconds=60, clock=clock)

    registry.pool_for('etherscan').mark_failed('e1')

    assert registry.pool_for('etherscan').next() is None
    assert registry.pool_for('cronos').next() == 'c1'
    assert sorted(registry.providers()) == ['cronos', 'etherscan']


def test_mask_key():
    assert mask_key('abcdef123456') == '***3456'
    assert mask_key(None) == '<none>'


def test_concurrent_callers_share_the_rotation_and_never_get_a_backed_off_key():
    keys = [f'key-{n}' for n in range(6)]
    pool = ApiKeyPool('etherscan', keys, default_backoff_seconds=3600, clock=FakeClock())
    backed_off = {'key-4', 'key-5'}
    for key in backed_off:
        pool.mark_failed(key)

    def worker(n):
        handed_out = []
        for i in range(500):
            handed_out.append(pool.next())
            if n % 2 and i % 50 == 0:
                pool.mark_failed('key-4' if i % 100 else 'key-5')
        return handed_out

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = [key for batch in executor.map(worker, range(8)) for key in batch]

    counts = Counter(results)
    assert None not in counts
    assert not backed_off & set(counts)
    assert counts == {'key-0': 1000, 'key-1': 1000, 'key-2': 1000, 'key-3': 1000}
    assert pool.available_count() == 4
