# database/connection.py
import psycopg2
from psycopg2.extras import RealDictCursor, Json, execute_values
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import logging

from bzr_analytics.config import config
from bzr_analytics.errors import StoreUnavailableError
from bzr_analytics.models import BackfillProgress, ChainCursor, TransferEvent

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['transfer_events', 'transfer_ingest_cursors', 'transfer_backfill_progress']
INSERT_BATCH_SIZE = 1000


class DatabaseManager:
    def __init__(self, connection_string: str = None):
        self.connection_string = connection_string or config.DATABASE_URL

    @contextmanager
    def get_connection(self):
        conn = None
        try:
            try:
                conn = psycopg2.connect(self.connection_string)
            except psycopg2.OperationalError as e:
                raise StoreUnavailableError(f"Cannot connect to transfer store: {e}") from e
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def execute_query(self, query, params=None, fetch=False):
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                if fetch:
                    return cursor.fetchall()
                conn.commit()
                return cursor.rowcount

    # -------------------------------------------------------------------------
    # Transfer events
    # -------------------------------------------------------------------------

    def insert_transfers(self, events: Iterable[TransferEvent]) -> int:
        """Insert transfers, ignoring rows whose (chain_id, tx_hash, log_index) already exists"""
        unique = {}
        for event in events:
            unique.setdefault(event.key, event)
        if not unique:
            return 0

        insert_query = """
        INSERT INTO transfer_events (
            chain_id, block_number, tx_hash, log_index, time_stamp,
            from_address, to_address, value, method_id, payload
        ) VALUES %s
        ON CONFLICT (chain_id, tx_hash, log_index) DO NOTHING
        RETURNING 1
        """
        rows = [event.to_row() + (Json(event.raw_payload),) for event in unique.values()]

        inserted = 0
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                for start in range(0, len(rows), INSERT_BATCH_SIZE):
                    batch = rows[start:start + INSERT_BATCH_SIZE]
                    result = execute_values(cursor, insert_query, batch, page_size=len(batch), fetch=True)
                    inserted += len(result)
                conn.commit()
        return inserted

    def count_transfers_by_chain(self, chain_ids: List[int] = None) -> Dict[int, int]:
        query = "SELECT chain_id, COUNT(*) AS total FROM transfer_events"
        params = None
        if chain_ids:
            query += " WHERE chain_id = ANY(%s)"
            params = (list(chain_ids),)
        query += " GROUP BY chain_id"
        rows = self.execute_query(query, params, fetch=True)
        return {int(row['chain_id']): int(row['total']) for row in rows}

    # -------------------------------------------------------------------------
    # Ingestion cursors
    # -------------------------------------------------------------------------

    def get_chain_cursor(self, chain_id: int) -> Optional[ChainCursor]:
        rows = self.execute_query(
            "SELECT * FROM transfer_ingest_cursors WHERE chain_id = %s", (chain_id,), fetch=True
        )
        return ChainCursor.from_row(rows[0]) if rows else None

    def get_chain_cursors(self, chain_ids: List[int] = None) -> List[ChainCursor]:
        query = "SELECT * FROM transfer_ingest_cursors"
        params = None
        if chain_ids:
            query += " WHERE chain_id = ANY(%s)"
            params = (list(chain_ids),)
        query += " ORDER BY chain_id"
        return [ChainCursor.from_row(row) for row in self.execute_query(query, params, fetch=True)]

    def record_ingest_success(self, chain_id: int, last_block_number: int, at: datetime = None):
        """Advance the cursor (never backwards) and clear failure state"""
        query = """
        INSERT INTO transfer_ingest_cursors (
            chain_id, last_block_number, last_success_at, consecutive_failures,
            backoff_until, last_error, updated_at
        ) VALUES (%(chain_id)s, %(block)s, %(at)s, 0, NULL, NULL, NOW())
        ON CONFLICT (chain_id) DO UPDATE SET
            last_block_number = GREATEST(transfer_ingest_cursors.last_block_number, EXCLUDED.last_block_number),
            last_success_at = EXCLUDED.last_success_at,
            consecutive_failures = 0,
            backoff_until = NULL,
            last_error = NULL,
            updated_at = NOW()
        """
        params = {'chain_id': chain_id, 'block': last_block_number, 'at': at or datetime.now(timezone.utc)}
        return self.execute_query(query, params)

    def record_ingest_failure(self, chain_id: int, consecutive_failures: int, backoff_until: datetime,
                              error: str, at: datetime = None):
        query = """
        INSERT INTO transfer_ingest_cursors (
            chain_id, last_error_at, last_error, consecutive_failures, backoff_until, updated_at
        ) VALUES (%(chain_id)s, %(at)s, %(error)s, %(failures)s, %(backoff_until)s, NOW())
        ON CONFLICT (chain_id) DO UPDATE SET
            last_error_at = EXCLUDED.last_error_at,
            last_error = EXCLUDED.last_error,
            consecutive_failures = EXCLUDED.consecutive_failures,
            backoff_until = EXCLUDED.backoff_until,
            updated_at = NOW()
        """
        params = {
            'chain_id': chain_id,
            'at': at or datetime.now(timezone.utc),
            'error': (error or '')[:1000],
            'failures': consecutive_failures,
            'backoff_until': backoff_until,
        }
        return self.execute_query(query, params)

    def record_ingest_paused(self, chain_id: int, reason: str):
        """Note a credential pause without counting it as a failure"""
        query = """
        INSERT INTO transfer_ingest_cursors (chain_id, last_error, updated_at)
        VALUES (%(chain_id)s, %(reason)s, NOW())
        ON CONFLICT (chain_id) DO UPDATE SET
            last_error = EXCLUDED.last_error,
            updated_at = NOW()
        """
        return self.execute_query(query, {'chain_id': chain_id, 'reason': reason})

    # -------------------------------------------------------------------------
    # Backfill progress
    # -------------------------------------------------------------------------

    def get_backfill_progress(self, chain_id: int) -> Optional[BackfillProgress]:
        rows = self.execute_query(
            "SELECT * FROM transfer_backfill_progress WHERE chain_id = %s", (chain_id,), fetch=True
        )
        return BackfillProgress.from_row(rows[0]) if rows else None

    def save_backfill_progress(self, progress: BackfillProgress):
        query = """
        INSERT INTO transfer_backfill_progress (
            chain_id, target_block, last_processed_block, total_transfers_backfilled, status, updated_at
        ) VALUES (%(chain_id)s, %(target)s, %(last)s, %(total)s, %(status)s, NOW())
        ON CONFLICT (chain_id) DO UPDATE SET
            target_block = EXCLUDED.target_block,
            last_processed_block = GREATEST(
                transfer_backfill_progress.last_processed_block, EXCLUDED.last_processed_block
            ),
            total_transfers_backfilled = EXCLUDED.total_transfers_backfilled,
            status = EXCLUDED.status,
            updated_at = NOW()
        """
        params = {
            'chain_id': progress.chain_id,
            'target': progress.target_block,
            'last': progress.last_processed_block,
            'total': progress.total_backfilled,
            'status': progress.status,
        }
        return self.execute_query(query, params)

    # -------------------------------------------------------------------------
    # Configuration store
    # -------------------------------------------------------------------------

    def load_api_credentials(self) -> Dict[str, List[str]]:
        rows = self.execute_query(
            "SELECT provider, api_key FROM api_credentials WHERE is_active ORDER BY id", fetch=True
        )
        keys = {}
        for row in rows:
            keys.setdefault(row['provider'], []).append(row['api_key'])
        return keys

    def test_connection(self):
        """Test database connection"""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
                    return True
        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return False

    def is_ready(self) -> bool:
        """Connection works and the schema has been applied"""
        try:
            rows = self.execute_query(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public' AND tablename = ANY(%s)",
                (REQUIRED_TABLES,), fetch=True,
            )
        except Exception as e:
            logger.warning(f"Transfer store not ready: {e}")
            return False
        return {row['tablename'] for row in rows} >= set(REQUIRED_TABLES)


db_manager = DatabaseManager()
