# sync/chain_sync.py
import time
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from bzr_analytics.config import config
from bzr_analytics.database.connection import DatabaseManager, db_manager
from bzr_analytics.errors import CredentialsUnavailableError, ProviderError
from bzr_analytics.sync.paging import fetch_block_window

logger = logging.getLogger(__name__)


class LoopState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    PERSISTING = 'persisting'
    BACKOFF = 'backoff'
    PAUSED = 'paused'
    STOPPED = 'stopped'


def compute_backoff(failures: int, base: float = None, maximum: float = None) -> float:
    """Exponential chain backoff: base * 2^(failures-1), capped"""
    base = config.INGEST_BACKOFF_BASE_SECONDS if base is None else base
    maximum = config.INGEST_BACKOFF_MAX_SECONDS if maximum is None else maximum
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), maximum)


class ChainIngestionLoop:
    """
    Incremental ingestion for one chain.

    Each tick reads the persisted cursor, fetches the next ascending block
    window, stores it idempotently and moves the cursor forward. Failures are
    counted on the cursor and skip the chain until its backoff expires.
    """

    def __init__(self, chain: Dict, client, db: DatabaseManager = None, page_size: int = None,
                 clock=time.time):
        self.chain = chain
        self.client = client
        self.db = db or db_manager
        self.page_size = page_size or config.INGEST_PAGE_SIZE
        self._clock = clock
        self._lock = threading.Lock()

        self.state = LoopState.IDLE
        self.consecutive_failures = 0
        self.backoff_until = None  # epoch seconds
        self.paused_reason = None
        self.last_error = None
        self._failures_loaded = False

    @property
    def chain_id(self) -> int:
        return self.chain['id']

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def pause(self, reason: str):
        with self._lock:
            if self.state == LoopState.STOPPED:
                return
            self.state = LoopState.PAUSED
            self.paused_reason = reason
        logger.warning(f"Pausing ingestion for {self.chain['name']}: {reason}")
        try:
            self.db.record_ingest_paused(self.chain_id, f"paused: {reason}")
        except Exception as e:
            logger.error(f"Could not record pause for {self.chain['name']}: {e}")

    def resume(self) -> bool:
        with self._lock:
            if self.state != LoopState.PAUSED:
                return False
            self.state = LoopState.IDLE
            self.paused_reason = None
        logger.info(f"Resuming ingestion for {self.chain['name']}")
        return True

    def stop(self):
        with self._lock:
            self.state = LoopState.STOPPED

    @property
    def is_paused(self) -> bool:
        return self.state == LoopState.PAUSED

    def _set_state(self, state: LoopState):
        with self._lock:
            if self.state in (LoopState.STOPPED, LoopState.PAUSED):
                return
            self.state = state

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self) -> float:
        """Run one ingestion step and return the delay before the next one"""
        if self.state == LoopState.STOPPED:
            return 0.0
        if self.state == LoopState.PAUSED:
            return config.INGEST_IDLE_DELAY_SECONDS

        now = self._clock()
        if self.backoff_until is not None and now < self.backoff_until:
            return self.backoff_until - now

        self._set_state(LoopState.FETCHING)
        start_block = None
        try:
            cursor = self.db.get_chain_cursor(self.chain_id)
            if not self._failures_loaded:
                self._failures_loaded = True
                if cursor:
                    self.consecutive_failures = cursor.consecutive_failures
            start_block = cursor.last_block_number + 1 if cursor and cursor.last_block_number > 0 else 0

            batch = fetch_block_window(self.client, self.chain, start_block, page_size=self.page_size)

            self._set_state(LoopState.PERSISTING)
            inserted = self.db.insert_transfers(batch.events) if batch.events else 0
            checkpoint = batch.checkpoint if batch.checkpoint is not None else start_block - 1
            self.db.record_ingest_success(self.chain_id, max(checkpoint, 0))
        except CredentialsUnavailableError as e:
            self.pause(str(e))
            return config.INGEST_IDLE_DELAY_SECONDS
        except Exception as e:
            return self._handle_failure(e, start_block)

        self.consecutive_failures = 0
        self.backoff_until = None
        self.last_error = None
        self._set_state(LoopState.IDLE)

        if batch.events:
            logger.info(
                f"{self.chain['name']}: fetched {len(batch.events)} transfers from block {start_block}, "
                f"inserted {inserted}, cursor at {batch.checkpoint}"
            )
        return config.INGEST_IDLE_DELAY_SECONDS if batch.exhausted else config.INGEST_ACTIVE_DELAY_SECONDS

    def _handle_failure(self, error: Exception, start_block: Optional[int]) -> float:
        self.consecutive_failures += 1
        delay = compute_backoff(self.consecutive_failures)
        self.backoff_until = self._clock() + delay
        self.last_error = str(error)
        self._set_state(LoopState.BACKOFF)

        provider = getattr(error, 'provider', None) or getattr(self.client, 'provider', 'unknown')
        kind = 'provider' if isinstance(error, ProviderError) else 'internal'
        logger.error(
            f"Ingestion failed for {self.chain['name']} ({provider}, from block {start_block}, "
            f"{kind} error, failure #{self.consecutive_failures}): {error}. Backing off {delay:.0f}s"
        )
        try:
            self.db.record_ingest_failure(
                self.chain_id,
                self.consecutive_failures,
                datetime.fromtimestamp(self.backoff_until, timezone.utc),
                str(error),
            )
        except Exception as e:
            logger.error(f"Could not record failure for {self.chain['name']}: {e}")
        return delay

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, stop_event: threading.Event):
        """Tick until stop_event is set; every wait is interruptible"""
        logger.info(f"Starting ingestion loop for {self.chain['name']} (chain {self.chain_id})")
        while not stop_event.is_set() and self.state != LoopState.STOPPED:
            delay = self.tick()
            stop_event.wait(max(delay, 0.1))
        self.stop()
        logger.info(f"Ingestion loop for {self.chain['name']} stopped")
