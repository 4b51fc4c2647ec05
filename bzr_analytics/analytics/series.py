"""
Pure functions over daily transfer series.

Nothing here touches the network or the database: the engine feeds in rows
(from SQL aggregates or from an in-memory sample) and gets back the numbers
shown on the dashboard. Raw token amounts are integers in the token's smallest
unit and are converted with Decimal before any float arithmetic.
"""
import math
import statistics
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

TIME_RANGE_TO_DAYS = {
    '7d': 7,
    '30d': 30,
    '90d': 90,
}
VALID_TIME_RANGES = ('7d', '30d', '90d', 'all')

ANOMALY_Z_THRESHOLD = 2


@dataclass
class DailyPoint:
    day: date
    count: int = 0
    volume: float = 0.0
    unique_addresses: int = 0


def to_token(raw, decimals: int) -> float:
    """Convert a raw integer amount to token units"""
    if not raw:
        return 0.0
    try:
        value = Decimal(int(raw))
    except (TypeError, ValueError, InvalidOperation):
        return 0.0
    return float(value.scaleb(-max(0, int(decimals))))


def round_number(value, precision: int = 2) -> float:
    """Round half away from zero; non-finite input rounds to 0"""
    if value is None:
        return 0
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    quantum = Decimal(1).scaleb(-precision)
    try:
        return float(Decimal(repr(numeric)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return round(numeric, precision)


def clamp(value, low, high):
    return min(max(value, low), high)


# -----------------------------------------------------------------------------
# Ranges and timelines
# -----------------------------------------------------------------------------

def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time(0, 0, 0), tzinfo=timezone.utc)


def resolve_range(time_range: str, now: datetime = None) -> Tuple[Optional[datetime], datetime]:
    """(start, end) in UTC; start is None for 'all'"""
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(timezone.utc).date()
    end = end_of_day(today)
    days = TIME_RANGE_TO_DAYS.get(time_range)
    if not days:
        return None, end
    return start_of_day(today - timedelta(days=days - 1)), end


def previous_range(start: datetime, days: int) -> Tuple[datetime, datetime]:
    """The equal-length span ending the day before start"""
    previous_end_day = start.date() - timedelta(days=1)
    return start_of_day(previous_end_day - timedelta(days=days - 1)), end_of_day(previous_end_day)


def create_timeline(start_day: date, end_day: date) -> List[date]:
    """Every day from start_day to end_day inclusive"""
    days = []
    cursor = start_day
    while cursor <= end_day:
        days.append(cursor)
        cursor += timedelta(days=1)
    return days


def display_date(day: date) -> str:
    return f"{day.strftime('%b')} {day.day}"


def fill_timeline(timeline: List[date], rows: Iterable[Dict], decimals: int) -> List[DailyPoint]:
    """Zero-fill daily aggregate rows onto a contiguous timeline"""
    by_day = {}
    for row in rows:
        day = row['day']
        if isinstance(day, datetime):
            day = day.date()
        by_day[day] = row

    points = []
    for day in timeline:
        row = by_day.get(day)
        if row:
            points.append(DailyPoint(
                day=day,
                count=int(row['transfer_count']),
                volume=to_token(row['volume_raw'], decimals),
                unique_addresses=int(row['unique_addresses']),
            ))
        else:
            points.append(DailyPoint(day=day))
    return points


def daily_entry(point: DailyPoint) -> Dict:
    return {
        'date': point.day.isoformat(),
        'displayDate': display_date(point.day),
        'count': point.count,
        'volume': round_number(point.volume, 4),
        'uniqueAddresses': point.unique_addresses,
        'avgTransferSize': round_number(point.volume / point.count, 4) if point.count > 0 else 0,
    }


# -----------------------------------------------------------------------------
# Statistics
# -----------------------------------------------------------------------------

def percent_change(current, previous) -> Optional[float]:
    if current is None or previous is None:
        return None
    if not (math.isfinite(current) and math.isfinite(previous)):
        return None
    if previous == 0:
        return 0 if current == 0 else 100
    return round_number((current - previous) / previous * 100, 2)


def median(values: List[float]) -> float:
    if not values:
        return 0
    return statistics.median(values)


def volatility(values: List[float]) -> float:
    """Population standard deviation of the daily counts"""
    if len(values) < 2:
        return 0
    return round_number(statistics.pstdev(values), 2)


def forecast_horizon(days: int) -> int:
    return clamp(math.ceil(days / 4), 3, 7)


def build_prediction_series(values: List[float], length: int = 7) -> List[float]:
    """
    Naive forecast: last observed value plus the average step of the last
    2 to 5 points, repeated `length` times and floored at zero. This is a
    trend extrapolation, not a fitted regression.
    """
    if not values or length <= 0:
        return []

    recent = values[-max(2, min(len(values), 5)):]
    deltas = [recent[i] - recent[i - 1] for i in range(1, len(recent))]
    avg_delta = sum(deltas) / len(deltas) if deltas else 0
    baseline = recent[-1]

    return [round_number(max(0, baseline + avg_delta * step), 2) for step in range(1, length + 1)]


def compute_anomalies(values: List[float]) -> List[Dict]:
    """Points whose population z-score is at least 2 in magnitude"""
    if len(values) < 3:
        return []

    mean = statistics.fmean(values)
    std_dev = statistics.pstdev(values, mu=mean)
    if std_dev == 0:
        return []

    anomalies = []
    for index, value in enumerate(values):
        z_score = (value - mean) / std_dev
        if abs(z_score) >= ANOMALY_Z_THRESHOLD:
            anomalies.append({'index': index, 'value': value, 'zScore': round_number(z_score, 2)})
    return anomalies


def find_peak(entries: List[Dict]) -> Optional[Dict]:
    """Day with the highest count or volume; an earlier day keeps ties"""
    peak = None
    for entry in entries:
        if peak is None or entry['count'] > peak['transfers'] or entry['volume'] > peak['volume']:
            peak = {'transfers': entry['count'], 'volume': entry['volume'], 'date': entry['date']}
    return peak


def chain_distribution(rows: List[Dict], total_volume: float, decimals: int, name_for) -> List[Dict]:
    distribution = []
    for row in rows:
        volume = to_token(row['volume_raw'], decimals)
        percentage = f"{round_number(volume / total_volume * 100, 2)}%" if total_volume > 0 else '0%'
        distribution.append({
            'chain': name_for(row['chain_id']),
            'chainId': row['chain_id'],
            'count': row['transfer_count'],
            'volume': round_number(volume, 4),
            'uniqueAddresses': row['unique_addresses'],
            'percentage': percentage,
        })
    return distribution


# -----------------------------------------------------------------------------
# In-memory aggregation for sampled transfers
# -----------------------------------------------------------------------------

def aggregate_sample(events, start: Optional[datetime], end: datetime, top_limit: int = 15) -> Dict:
    """
    Aggregate TransferEvents into the same row shapes the SQL queries return,
    so sampled data and stored data share the rest of the pipeline.
    """
    in_range = [
        e for e in events
        if (start is None or e.timestamp >= start) and e.timestamp <= end
    ]

    daily = {}
    chains = {}
    addresses = {}
    participants = set()

    for event in in_range:
        day = event.timestamp.astimezone(timezone.utc).date()
        bucket = daily.setdefault(day, {'day': day, 'transfer_count': 0, 'volume_raw': 0, 'addresses': set()})
        bucket['transfer_count'] += 1
        bucket['volume_raw'] += event.value_raw

        chain = chains.setdefault(event.chain_id, {
            'chain_id': event.chain_id, 'transfer_count': 0, 'volume_raw': 0, 'addresses': set(),
        })
        chain['transfer_count'] += 1
        chain['volume_raw'] += event.value_raw

        for address, sent in ((event.from_address, 1), (event.to_address, 0)):
            if not address:
                continue
            bucket['addresses'].add(address)
            chain['addresses'].add(address)
            participants.add(address)
            stats = addresses.setdefault(address, {
                'address': address, 'total_txs': 0, 'sent': 0, 'received': 0, 'volume_raw': 0,
            })
            stats['total_txs'] += 1
            stats['sent'] += sent
            stats['received'] += 1 - sent
            stats['volume_raw'] += event.value_raw

    daily_rows = []
    for day in sorted(daily):
        bucket = daily[day]
        daily_rows.append({
            'day': day,
            'transfer_count': bucket['transfer_count'],
            'volume_raw': bucket['volume_raw'],
            'unique_addresses': len(bucket['addresses']),
        })

    chain_rows = sorted(
        (
            {
                'chain_id': c['chain_id'],
                'transfer_count': c['transfer_count'],
                'volume_raw': c['volume_raw'],
                'unique_addresses': len(c['addresses']),
            }
            for c in chains.values()
        ),
        key=lambda row: row['volume_raw'],
        reverse=True,
    )

    top_addresses = sorted(addresses.values(), key=lambda a: (-a['volume_raw'], a['address']))[:top_limit]

    top_transfers = [
        {
            'chain_id': e.chain_id,
            'tx_hash': e.tx_hash,
            'from_address': e.from_address,
            'to_address': e.to_address,
            'value_raw': e.value_raw,
            'timestamp': e.timestamp,
        }
        for e in sorted(in_range, key=lambda e: (e.value_raw, e.timestamp), reverse=True)[:top_limit]
    ]

    return {
        'daily': daily_rows,
        'summary': {
            'total_transfers': len(in_range),
            'volume_raw': sum(e.value_raw for e in in_range),
            'unique_addresses': len(participants),
        },
        'chains': chain_rows,
        'top_addresses': top_addresses,
        'top_transfers': top_transfers,
        'latest': max((e.timestamp for e in in_range), default=None),
    }
