from datetime import date, datetime, timedelta, timezone

import pytest

from bzr_analytics.analytics import series

from conftest import make_event


@pytest.mark.parametrize('current, previous, expected', [
    (150, 100, 50),
    (50, 100, -50),
    (0, 0, 0),
    (5, 0, 100),
    (1, 3, -66.67),
    (None, 10, None),
    (float('nan'), 10, None),
])
def test_percent_change(current, previous, expected):
    assert series.percent_change(current, previous) == expected


def test_median_handles_even_odd_and_empty():
    assert series.median([4, 1, 3, 2]) == 2.5
    assert series.median([3, 1, 2]) == 2
    assert series.median([]) == 0


def test_volatility_is_population_std_dev():
    assert series.volatility([2, 4, 4, 4, 5, 5, 7, 9]) == 2.0
    assert series.volatility([5]) == 0


def test_round_number_rounds_half_up():
    assert series.round_number(2.675, 2) == 2.68
    assert series.round_number(1.00005, 4) == 1.0001
    assert series.round_number(float('inf')) == 0
    assert series.round_number(None) == 0


def test_to_token_uses_decimals():
    assert series.to_token(1_500_000_000_000_000_000, 18) == 1.5
    assert series.to_token(12345, 0) == 12345.0
    assert series.to_token(0, 18) == 0.0
    assert series.to_token(10 ** 40, 18) == pytest.approx(1e22)


def test_anomalies_flag_a_single_spike():
    anomalies = series.compute_anomalies([10, 10, 10, 10, 100])

    assert [a['index'] for a in anomalies] == [4]
    assert anomalies[0]['value'] == 100
    assert anomalies[0]['zScore'] == 2.0


def test_anomalies_need_variation_and_three_points():
    assert series.compute_anomalies([5, 5, 5, 5]) == []
    assert series.compute_anomalies([1, 100]) == []


def test_prediction_extends_recent_trend():
    assert series.build_prediction_series([1, 2, 3, 4, 5], 3) == [6, 7, 8]
    assert series.build_prediction_series([10, 8, 6], 5) == [4, 2, 0, 0, 0]
    assert series.build_prediction_series([7], 2) == [7, 7]
    assert series.build_prediction_series([], 3) == []


def test_forecast_horizon_is_clamped():
    assert series.forecast_horizon(7) == 3
    assert series.forecast_horizon(20) == 5
    assert series.forecast_horizon(90) == 7


def test_resolve_range_covers_whole_days():
    now = datetime(2025, 3, 10, 15, 30, tzinfo=timezone.utc)

    start, end = series.resolve_range('7d', now)
    assert start == datetime(2025, 3, 4, tzinfo=timezone.utc)
    assert end == datetime(2025, 3, 10, 23, 59, 59, tzinfo=timezone.utc)
    assert len(series.create_timeline(start.date(), end.date())) == 7

    start, _ = series.resolve_range('all', now)
    assert start is None


def test_previous_range_has_same_length():
    start = datetime(2025, 3, 4, tzinfo=timezone.utc)

    prev_start, prev_end = series.previous_range(start, 7)

    assert prev_start.date() == date(2025, 2, 25)
    assert prev_end.date() == date(2025, 3, 3)


def test_fill_timeline_zero_fills_missing_days():
    timeline = series.create_timeline(date(2025, 3, 1), date(2025, 3, 3))
    rows = [{'day': date(2025, 3, 2), 'transfer_count': 4, 'volume_raw': 2 * 10 ** 18, 'unique_addresses': 3}]

    points = series.fill_timeline(timeline, rows, 18)

    assert [p.count for p in points] == [0, 4, 0]
    assert points[1].volume == 2.0
    entry = series.daily_entry(points[1])
    assert entry['date'] == '2025-03-02'
    assert entry['displayDate'] == 'Mar 2'
    assert entry['avgTransferSize'] == 0.5
    assert series.daily_entry(points[0])['avgTransferSize'] == 0


def test_find_peak_keeps_earliest_day_on_ties():
    entries = [
        {'date': '2025-03-01', 'count': 5, 'volume': 10.0},
        {'date': '2025-03-02', 'count': 5, 'volume': 10.0},
        {'date': '2025-03-03', 'count': 2, 'volume': 1.0},
    ]

    assert series.find_peak(entries) == {'transfers': 5, 'volume': 10.0, 'date': '2025-03-01'}
    assert series.find_peak([]) is None


def test_chain_distribution_with_zero_volume():
    rows = [{'chain_id': 1, 'transfer_count': 3, 'volume_raw': 0, 'unique_addresses': 2}]

    distribution = series.chain_distribution(rows, 0, 18, lambda cid: f"Chain {cid}")

    assert distribution == [{
        'chain': 'Chain 1', 'chainId': 1, 'count': 3, 'volume': 0.0, 'uniqueAddresses': 2, 'percentage': '0%',
    }]


def test_chain_distribution_percentages():
    rows = [
        {'chain_id': 1, 'transfer_count': 1, 'volume_raw': 3 * 10 ** 18, 'unique_addresses': 2},
        {'chain_id': 137, 'transfer_count': 1, 'volume_raw': 1 * 10 ** 18, 'unique_addresses': 2},
    ]

    distribution = series.chain_distribution(rows, 4.0, 18, str)

    assert [d['percentage'] for d in distribution] == ['75.0%', '25.0%']


def test_aggregate_sample_matches_query_row_shapes():
    day_one = datetime(2025, 3, 1, 10, tzinfo=timezone.utc)
    events = [
        make_event(block=1, value=5, timestamp=day_one, from_address='0xa', to_address='0xb'),
        make_event(block=2, value=7, timestamp=day_one + timedelta(hours=1), from_address='0xb', to_address='0xc'),
        make_event(chain_id=137, block=3, value=100, timestamp=day_one + timedelta(days=1),
                   from_address='0xa', to_address='0xd'),
        make_event(block=4, value=1, timestamp=day_one - timedelta(days=30)),
    ]

    sample = series.aggregate_sample(events, datetime(2025, 3, 1, tzinfo=timezone.utc),
                                     datetime(2025, 3, 2, 23, 59, 59, tzinfo=timezone.utc), top_limit=2)

    assert sample['summary'] == {'total_transfers': 3, 'volume_raw': 112, 'unique_addresses': 4}
    assert sample['daily'] == [
        {'day': date(2025, 3, 1), 'transfer_count': 2, 'volume_raw': 12, 'unique_addresses': 3},
        {'day': date(2025, 3, 2), 'transfer_count': 1, 'volume_raw': 100, 'unique_addresses': 2},
    ]
    assert [c['chain_id'] for c in sample['chains']] == [137, 1]
    assert sample['top_addresses'][0] == {
        'address': '0xa', 'total_txs': 2, 'sent': 2, 'received': 0, 'volume_raw': 105,
    }
    assert len(sample['top_addresses']) == 2
    assert [t['value_raw'] for t in sample['top_transfers']] == [100, 7]
    assert sample['latest'] == day_one + timedelta(days=1)


def test_aggregate_sample_of_nothing():
    sample = series.aggregate_sample([], None, datetime(2025, 3, 1, tzinfo=timezone.utc))

    assert sample['summary']['total_transfers'] == 0
    assert sample['daily'] == []
    assert sample['latest'] is None
