"""
Read-only aggregate queries over transfer_events.

All queries take the same filter (chain ids, optional [start, end] window) and
return plain dicts so the analytics engine can stay independent of psycopg2.
Raw token amounts stay as integers / Decimals until the engine converts them.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bzr_analytics.database.connection import DatabaseManager, db_manager

logger = logging.getLogger(__name__)


def build_filter(chain_ids: Optional[List[int]], start: Optional[datetime], end: Optional[datetime]):
    """WHERE clause and params shared by every analytics query"""
    conditions = []
    params = {}
    if chain_ids:
        conditions.append("chain_id = ANY(%(chain_ids)s)")
        params['chain_ids'] = list(chain_ids)
    if start is not None:
        conditions.append("time_stamp >= %(start)s")
        params['start'] = start
    if end is not None:
        conditions.append("time_stamp <= %(end)s")
        params['end'] = end
    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


class AnalyticsQueries:
    def __init__(self, db: DatabaseManager = None):
        self.db = db or db_manager

    def is_ready(self) -> bool:
        return self.db.is_ready()

    def query_daily_analytics(self, chain_ids=None, start=None, end=None) -> List[Dict]:
        where, params = build_filter(chain_ids, start, end)
        query = f"""
            WITH filtered AS (
                SELECT (time_stamp AT TIME ZONE 'UTC')::date AS day, value, from_address, to_address
                FROM transfer_events
                {where}
            ),
            daily AS (
                SELECT day, COUNT(*) AS transfer_count, COALESCE(SUM(value), 0) AS volume_raw
                FROM filtered
                GROUP BY day
            ),
            addresses AS (
                SELECT day, COUNT(DISTINCT address) AS unique_addresses
                FROM (
                    SELECT day, from_address AS address FROM filtered
                    UNION ALL
                    SELECT day, to_address AS address FROM filtered
                ) participants
                GROUP BY day
            )
            SELECT d.day, d.transfer_count, d.volume_raw, COALESCE(a.unique_addresses, 0) AS unique_addresses
            FROM daily d
            LEFT JOIN addresses a ON a.day = d.day
            ORDER BY d.day
        """
        rows = self.db.execute_query(query, params, fetch=True)
        return [
            {
                'day': row['day'],
                'transfer_count': int(row['transfer_count']),
                'volume_raw': int(row['volume_raw'] or 0),
                'unique_addresses': int(row['unique_addresses'] or 0),
            }
            for row in rows
        ]

    def query_analytics_summary(self, chain_ids=None, start=None, end=None) -> Dict:
        where, params = build_filter(chain_ids, start, end)
        query = f"""
            WITH filtered AS (
                SELECT value, from_address, to_address FROM transfer_events {where}
            )
            SELECT
                (SELECT COUNT(*) FROM filtered) AS total_transfers,
                (SELECT COALESCE(SUM(value), 0) FROM filtered) AS volume_raw,
                (SELECT COUNT(DISTINCT address) FROM (
                    SELECT from_address AS address FROM filtered
                    UNION ALL
                    SELECT to_address AS address FROM filtered
                ) participants) AS unique_addresses
        """
        row = self.db.execute_query(query, params, fetch=True)[0]
        return {
            'total_transfers': int(row['total_transfers'] or 0),
            'volume_raw': int(row['volume_raw'] or 0),
            'unique_addresses': int(row['unique_addresses'] or 0),
        }

    def query_chain_distribution(self, chain_ids=None, start=None, end=None) -> List[Dict]:
        where, params = build_filter(chain_ids, start, end)
        query = f"""
            WITH filtered AS (
                SELECT chain_id, value, from_address, to_address FROM transfer_events {where}
            )
            SELECT
                t.chain_id,
                t.transfer_count,
                t.volume_raw,
                COALESCE(a.unique_addresses, 0) AS unique_addresses
            FROM (
                SELECT chain_id, COUNT(*) AS transfer_count, COALESCE(SUM(value), 0) AS volume_raw
                FROM filtered GROUP BY chain_id
            ) t
            LEFT JOIN (
                SELECT chain_id, COUNT(DISTINCT address) AS unique_addresses
                FROM (
                    SELECT chain_id, from_address AS address FROM filtered
                    UNION ALL
                    SELECT chain_id, to_address AS address FROM filtered
                ) participants
                GROUP BY chain_id
            ) a ON a.chain_id = t.chain_id
            ORDER BY t.volume_raw DESC
        """
        rows = self.db.execute_query(query, params, fetch=True)
        return [
            {
                'chain_id': int(row['chain_id']),
                'transfer_count': int(row['transfer_count']),
                'volume_raw': int(row['volume_raw'] or 0),
                'unique_addresses': int(row['unique_addresses'] or 0),
            }
            for row in rows
        ]

    def query_top_addresses(self, chain_ids=None, start=None, end=None, limit=15) -> List[Dict]:
        where, params = build_filter(chain_ids, start, end)
        params['limit'] = limit
        query = f"""
            WITH filtered AS (
                SELECT value, from_address, to_address FROM transfer_events {where}
            ),
            legs AS (
                SELECT from_address AS address, 1 AS sent, 0 AS received, value FROM filtered
                UNION ALL
                SELECT to_address AS address, 0 AS sent, 1 AS received, value FROM filtered
            )
            SELECT
                address,
                COUNT(*) AS total_txs,
                SUM(sent) AS sent,
                SUM(received) AS received,
                COALESCE(SUM(value), 0) AS volume_raw
            FROM legs
            GROUP BY address
            ORDER BY volume_raw DESC, address
            LIMIT %(limit)s
        """
        rows = self.db.execute_query(query, params, fetch=True)
        return [
            {
                'address': row['address'],
                'total_txs': int(row['total_txs']),
                'sent': int(row['sent']),
                'received': int(row['received']),
                'volume_raw': int(row['volume_raw'] or 0),
            }
            for row in rows
        ]

    def query_top_transfers(self, chain_ids=None, start=None, end=None, limit=15) -> List[Dict]:
        where, params = build_filter(chain_ids, start, end)
        params['limit'] = limit
        query = f"""
            SELECT chain_id, tx_hash, from_address, to_address, value, time_stamp
            FROM transfer_events
            {where}
            ORDER BY value DESC, time_stamp DESC
            LIMIT %(limit)s
        """
        rows = self.db.execute_query(query, params, fetch=True)
        return [
            {
                'chain_id': int(row['chain_id']),
                'tx_hash': row['tx_hash'],
                'from_address': row['from_address'],
                'to_address': row['to_address'],
                'value_raw': int(row['value'] or 0),
                'timestamp': row['time_stamp'],
            }
            for row in rows
        ]

    def get_max_timestamp(self, chain_ids=None) -> Dict:
        where, params = build_filter(chain_ids, None, None)
        rows = self.db.execute_query(
            f"SELECT MAX(time_stamp) AS latest FROM transfer_events {where}", params, fetch=True
        )
        latest = rows[0]['latest'] if rows else None
        lag_seconds = None
        if latest is not None:
            lag_seconds = max(0, int((datetime.now(timezone.utc) - latest).total_seconds()))
        return {'latest': latest, 'lag_seconds': lag_seconds}
