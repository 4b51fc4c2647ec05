# analytics/engine.py
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bzr_analytics.analytics import series
from bzr_analytics.config import chain_name, config, get_chain
from bzr_analytics.database.analytics_queries import AnalyticsQueries
from bzr_analytics.errors import AnalyticsError, ProviderError, StoreUnavailableError
from bzr_analytics.ingestors.registry import ClientRegistry

logger = logging.getLogger(__name__)

CACHE_PERSISTENT = 'persistent-cache'
CACHE_REALTIME = 'realtime-sample'
CACHE_EMPTY = 'empty'


class AnalyticsEngine:
    """
    Computes the analytics payload for a chain filter and time range.

    Reads come from the transfer store when it is ready. When it is not, a
    bounded sample is pulled from the explorers and run through the same
    aggregation so the response keeps its shape, labelled by cacheStatus.
    """

    def __init__(self, queries: AnalyticsQueries = None, clients: ClientRegistry = None,
                 chains: List[Dict] = None, top_limit: int = None, now=None):
        self.queries = queries or AnalyticsQueries()
        self._clients = clients
        self.chains = chains or config.CHAINS
        self.top_limit = top_limit or config.ANALYTICS_TOP_LIMIT
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def clients(self) -> ClientRegistry:
        if self._clients is None:
            self._clients = ClientRegistry()
        return self._clients

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def normalize_request(self, time_range, chain_id, decimals):
        time_range = (time_range or '30d').strip().lower()
        if time_range not in series.VALID_TIME_RANGES:
            raise AnalyticsError(
                'INVALID_TIME_RANGE',
                f"timeRange must be one of {', '.join(series.VALID_TIME_RANGES)}",
                status=400,
            )

        if chain_id is None or str(chain_id).strip().lower() in ('', 'all'):
            chain_ids = [chain['id'] for chain in self.chains]
            label = 'all'
        else:
            chain = get_chain(chain_id)
            if chain is None or chain['id'] not in {c['id'] for c in self.chains}:
                raise AnalyticsError('INVALID_CHAIN', f"Unknown chainId '{chain_id}'", status=400)
            chain_ids = [chain['id']]
            label = str(chain['id'])

        if decimals is None or decimals == '':
            decimals = config.BZR_TOKEN_DECIMALS
        try:
            decimals = int(decimals)
        except (TypeError, ValueError):
            raise AnalyticsError('INVALID_DECIMALS', 'decimals must be an integer', status=400)
        if not 0 <= decimals <= 36:
            raise AnalyticsError('INVALID_DECIMALS', 'decimals must be between 0 and 36', status=400)

        return time_range, chain_ids, label, decimals

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def compute(self, time_range: str = '30d', chain_id=None, decimals=None) -> Dict:
        time_range, chain_ids, label, decimals = self.normalize_request(time_range, chain_id, decimals)

        try:
            if not self.queries.is_ready():
                raise StoreUnavailableError('Transfer store is not ready')
            return self.compute_persistent(time_range, chain_ids, label, decimals)
        except StoreUnavailableError as e:
            logger.warning(f"Serving realtime analytics sample for {label}/{time_range}: {e}")
        except AnalyticsError:
            raise
        except Exception as e:
            logger.error(f"Analytics computation failed for {label}/{time_range}: {e}", exc_info=True)
            raise AnalyticsError('ANALYTICS_COMPUTE_FAILED', 'Failed to compute analytics')

        try:
            return self.compute_realtime_fallback(time_range, chain_ids, label, decimals)
        except Exception as e:
            logger.error(f"Realtime analytics fallback failed for {label}/{time_range}: {e}", exc_info=True)
            raise AnalyticsError('ANALYTICS_COMPUTE_FAILED', 'Failed to compute analytics')

    # -------------------------------------------------------------------------
    # Persistent store path
    # -------------------------------------------------------------------------

    def compute_persistent(self, time_range: str, chain_ids: List[int], label: str, decimals: int) -> Dict:
        started = time.time()
        start, end = series.resolve_range(time_range, self._now())
        q = self.queries

        with ThreadPoolExecutor(max_workers=6) as executor:
            futures = [
                executor.submit(q.query_daily_analytics, chain_ids, start, end),
                executor.submit(q.query_analytics_summary, chain_ids, start, end),
                executor.submit(q.query_chain_distribution, chain_ids, start, end),
                executor.submit(q.query_top_addresses, chain_ids, start, end, self.top_limit),
                executor.submit(q.query_top_transfers, chain_ids, start, end, self.top_limit),
                executor.submit(q.get_max_timestamp, chain_ids),
            ]
            daily_rows, summary, chain_rows, top_addresses, top_transfers, latest = [
                future.result() for future in futures
            ]

        previous = None
        days = series.TIME_RANGE_TO_DAYS.get(time_range)
        if days:
            previous_start, previous_end = series.previous_range(start, days)
            previous = q.query_analytics_summary(chain_ids, previous_start, previous_end)

        report = self.build_report(
            time_range, label, decimals, start, end,
            daily_rows, summary, previous, chain_rows, top_addresses, top_transfers,
        )
        report['performance'].update({
            'computeTimeMs': int((time.time() - started) * 1000),
            'cacheStatus': CACHE_PERSISTENT,
            'cacheAge': latest.get('lag_seconds'),
        })
        return report

    # -------------------------------------------------------------------------
    # Realtime fallback path
    # -------------------------------------------------------------------------

    def sample_transfers(self, chain_ids: List[int]):
        """Newest transfers per chain, bounded by transfer, page and chain caps"""
        selected = [get_chain(chain_id) for chain_id in chain_ids][:config.ANALYTICS_FALLBACK_MAX_CHAINS]
        selected = [chain for chain in selected if chain]
        if not selected:
            return []

        per_chain_limit = max(50, config.ANALYTICS_FALLBACK_MAX_TRANSFERS // len(selected))
        events = []

        for chain in selected:
            client = self.clients.client_for(chain)
            fetched = 0
            page = 1
            while page <= config.ANALYTICS_FALLBACK_MAX_PAGES and fetched < per_chain_limit:
                remaining = per_chain_limit - fetched
                page_size = min(config.ANALYTICS_FALLBACK_PAGE_SIZE, max(10, remaining))
                try:
                    rows = client.fetch_page(chain, page=page, page_size=page_size, sort='desc')
                except ProviderError as e:
                    logger.warning(f"Realtime sample fetch failed for {chain['name']} page {page}: {e}")
                    break
                if not rows:
                    break
                events.extend(rows)
                fetched += len(rows)
                if len(rows) < page_size:
                    break
                page += 1

        return events

    def compute_realtime_fallback(self, time_range: str, chain_ids: List[int], label: str, decimals: int) -> Dict:
        started = time.time()
        start, end = series.resolve_range(time_range, self._now())
        events = self.sample_transfers(chain_ids)
        sample = series.aggregate_sample(events, start, end, self.top_limit)

        report = self.build_report(
            time_range, label, decimals, start, end,
            sample['daily'], sample['summary'], None, sample['chains'],
            sample['top_addresses'], sample['top_transfers'],
        )
        report['performance'].update({
            'computeTimeMs': int((time.time() - started) * 1000),
            'cacheStatus': CACHE_REALTIME if events else CACHE_EMPTY,
            'cacheAge': 0,
            'sampleSize': len(events),
        })
        return report

    # -------------------------------------------------------------------------
    # Shared assembly
    # -------------------------------------------------------------------------

    def build_report(self, time_range: str, label: str, decimals: int,
                     start: Optional[datetime], end: datetime,
                     daily_rows: List[Dict], summary: Dict, previous: Optional[Dict],
                     chain_rows: List[Dict], top_addresses: List[Dict], top_transfers: List[Dict]) -> Dict:
        if start is not None:
            first_day = start.date()
        elif daily_rows:
            first_day = min(
                row['day'].date() if isinstance(row['day'], datetime) else row['day'] for row in daily_rows
            )
        else:
            first_day = end.date()
        timeline = series.create_timeline(first_day, end.date())
        points = series.fill_timeline(timeline, daily_rows, decimals)
        daily_data = [series.daily_entry(point) for point in points]

        counts = [point.count for point in points]
        volumes = [point.volume for point in points]

        total_transfers = summary['total_transfers'] or sum(counts)
        total_volume = series.to_token(summary['volume_raw'], decimals)
        active_addresses = summary['unique_addresses']
        days_count = len(daily_data) or 1

        if previous is not None:
            transfers_change = series.percent_change(total_transfers, previous['total_transfers'])
            volume_change = series.percent_change(total_volume, series.to_token(previous['volume_raw'], decimals))
            addresses_change = series.percent_change(active_addresses, previous['unique_addresses'])
        else:
            transfers_change = volume_change = addresses_change = None

        horizon = series.forecast_horizon(days_count)

        return {
            'success': True,
            'timeRange': time_range,
            'chainId': label,
            'dailyData': daily_data,
            'analyticsMetrics': {
                'totalTransfers': total_transfers,
                'totalVolume': series.round_number(total_volume, 4),
                'avgTransferSize': series.round_number(total_volume / total_transfers, 4) if total_transfers else 0,
                'activeAddresses': active_addresses,
                'transfersChange': transfers_change,
                'volumeChange': volume_change,
                'addressesChange': addresses_change,
                'dailyAvgTransfers': series.round_number(total_transfers / days_count, 2),
                'dailyAvgVolume': series.round_number(total_volume / days_count, 4),
                'peakActivity': series.find_peak(daily_data),
                'volatility': series.volatility(counts),
                'medianDailyTransfers': series.round_number(series.median(counts), 2),
            },
            'predictions': {
                'transfers': series.build_prediction_series(counts, horizon),
                'volume': series.build_prediction_series(volumes, horizon),
            },
            'anomalies': {
                'transferSpikes': series.compute_anomalies(counts),
                'volumeSpikes': series.compute_anomalies(volumes),
            },
            'chainDistribution': series.chain_distribution(chain_rows, total_volume, decimals, chain_name),
            'topAddresses': [
                {
                    'address': row['address'],
                    'totalTxs': row['total_txs'],
                    'sent': row['sent'],
                    'received': row['received'],
                    'volume': series.round_number(series.to_token(row['volume_raw'], decimals), 4),
                }
                for row in top_addresses
            ],
            'topWhales': [
                {
                    'hash': row['tx_hash'],
                    'from': row['from_address'],
                    'to': row['to_address'],
                    'value': series.round_number(series.to_token(row['value_raw'], decimals), 4),
                    'timeStamp': int(row['timestamp'].timestamp()) if row.get('timestamp') else None,
                    'chain': chain_name(row['chain_id']),
                }
                for row in top_transfers
            ],
            'performance': {
                'computeTimeMs': 0,
                'dataPoints': len(daily_data),
                'totalTransfersAnalyzed': total_transfers,
                'cacheStatus': None,
                'cacheAge': None,
            },
            'timestamp': int(time.time() * 1000),
        }
