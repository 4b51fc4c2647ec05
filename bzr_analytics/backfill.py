#!/usr/bin/env python3
"""
Historical backfill of BZR transfers.

Walks each chain from block 0 (or the last persisted checkpoint) up to the
live ingestion cursor captured when the run starts, in large block chunks.
Progress is written after every stored batch, so an interrupted run resumes
where it stopped. Inserts share the transfer_events unique key with the live
ingester, which makes overlapping ranges harmless.

Usage:
    python -m bzr_analytics.backfill 137            # Polygon only
    python -m bzr_analytics.backfill all            # every configured chain
    python -m bzr_analytics.backfill all --chunk-blocks 50000
"""
import sys
import time
import argparse
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from bzr_analytics.config import config, get_chain
from bzr_analytics.database.connection import DatabaseManager, db_manager
from bzr_analytics.errors import OutOfOrderPageError, ProviderError, ProviderHardError
from bzr_analytics.ingestors.key_pool import KeyPoolRegistry
from bzr_analytics.ingestors.registry import ClientRegistry
from bzr_analytics.main import merge_credentials
from bzr_analytics.models import (
    BACKFILL_COMPLETED,
    BACKFILL_PENDING,
    BACKFILL_RUNNING,
    BackfillProgress,
)
from bzr_analytics.sync.paging import fetch_block_window

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    chain_id: int
    status: str
    start_block: Optional[int] = None
    end_block: Optional[int] = None
    fetched: int = 0
    inserted: int = 0
    message: str = ''


class BackfillReconciler:
    def __init__(self, db: DatabaseManager = None, clients: ClientRegistry = None,
                 chunk_blocks: int = None, page_delay: float = None, max_chunk_retries: int = None,
                 sleep=time.sleep):
        self.db = db or db_manager
        # Separate key pools from the live ingester
        self.clients = clients or ClientRegistry(KeyPoolRegistry(config.env_keys()))
        self.chunk_blocks = chunk_blocks or config.BACKFILL_CHUNK_BLOCKS
        self.page_delay = config.BACKFILL_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_chunk_retries = (
            config.BACKFILL_MAX_CHUNK_RETRIES if max_chunk_retries is None else max_chunk_retries
        )
        self._sleep = sleep

    def resolve_end_block(self, chain: Dict, client) -> Optional[int]:
        """Last block to backfill: just below the live cursor, or the newest upstream transfer"""
        cursor = self.db.get_chain_cursor(chain['id'])
        if cursor and cursor.last_block_number > 0:
            return cursor.last_block_number - 1

        logger.info(f"No ingestion cursor for {chain['name']}, looking up the newest transfer")
        newest = client.fetch_page(chain, page=1, page_size=1, sort='desc')
        if not newest:
            return None
        return newest[0].block_number

    def backfill_chain(self, chain: Dict) -> BackfillResult:
        logger.info(f"{'=' * 60}")
        logger.info(f"🔄 Starting backfill for {chain['name']} (chain {chain['id']})")
        client = self.clients.client_for(chain)

        end_block = self.resolve_end_block(chain, client)
        if end_block is None:
            logger.info(f"{chain['name']} has no transfers upstream, nothing to backfill")
            return BackfillResult(chain['id'], BACKFILL_COMPLETED, message='no transfers upstream')

        progress = self.db.get_backfill_progress(chain['id'])
        if progress is None:
            progress = BackfillProgress(chain_id=chain['id'], target_block=end_block, status=BACKFILL_PENDING)
            self.db.save_backfill_progress(progress)

        start_block = progress.last_processed_block + 1 if progress.last_processed_block > 0 else 0
        if start_block > end_block:
            logger.info(f"✅ {chain['name']} already backfilled up to block {progress.last_processed_block}")
            if progress.status != BACKFILL_COMPLETED:
                progress.status = BACKFILL_COMPLETED
                self.db.save_backfill_progress(progress)
            return BackfillResult(chain['id'], BACKFILL_COMPLETED, start_block, end_block,
                                  message='already backfilled')

        logger.info(f"📊 Backfill range for {chain['name']}: blocks {start_block} to {end_block}")
        progress.target_block = end_block
        progress.status = BACKFILL_RUNNING
        self.db.save_backfill_progress(progress)

        result = BackfillResult(chain['id'], BACKFILL_RUNNING, start_block, end_block)
        started = time.time()
        chunk_start = start_block

        while chunk_start <= end_block:
            chunk_end = min(end_block, chunk_start + self.chunk_blocks - 1)
            logger.info(f"  📥 {chain['name']}: blocks {chunk_start} to {chunk_end}")
            try:
                self._walk_chunk(chain, client, chunk_start, chunk_end, progress, result)
            except (ProviderHardError, OutOfOrderPageError) as e:
                logger.error(f"🛑 Aborting backfill for {chain['name']} at blocks {chunk_start}-{chunk_end}: {e}")
                result.message = str(e)
                return result
            except ProviderError as e:
                logger.error(
                    f"⚠️ Giving up on {chain['name']} blocks {chunk_start}-{chunk_end} after "
                    f"{self.max_chunk_retries} retries: {e}. Progress saved at block {progress.last_processed_block}"
                )
                result.message = str(e)
                return result
            chunk_start = chunk_end + 1

        progress.last_processed_block = end_block
        progress.status = BACKFILL_COMPLETED
        self.db.save_backfill_progress(progress)
        result.status = BACKFILL_COMPLETED

        logger.info(
            f"✅ Backfill complete for {chain['name']} in {time.time() - started:.1f}s: "
            f"fetched {result.fetched}, inserted {result.inserted}"
        )
        return result

    def _walk_chunk(self, chain: Dict, client, chunk_start: int, chunk_end: int,
                    progress: BackfillProgress, result: BackfillResult):
        window_start = chunk_start
        retries = 0

        while window_start <= chunk_end:
            try:
                batch = fetch_block_window(client, chain, window_start, chunk_end)
            except (ProviderHardError, OutOfOrderPageError):
                raise
            except ProviderError as e:
                retries += 1
                if retries > self.max_chunk_retries:
                    raise
                logger.warning(
                    f"Retry {retries}/{self.max_chunk_retries} for {chain['name']} "
                    f"blocks {window_start}-{chunk_end}: {e}"
                )
                self._sleep(config.RATE_LIMIT_RETRY_SECONDS)
                continue

            retries = 0
            inserted = self.db.insert_transfers(batch.events) if batch.events else 0
            result.fetched += len(batch.events)
            result.inserted += inserted

            checkpoint = chunk_end if batch.exhausted else batch.checkpoint
            progress.last_processed_block = max(progress.last_processed_block, checkpoint)
            progress.total_backfilled += inserted
            self.db.save_backfill_progress(progress)

            if batch.events:
                logger.info(
                    f"     Fetched {len(batch.events)}, inserted {inserted} "
                    f"({result.inserted} total), checkpoint {progress.last_processed_block}"
                )

            if batch.exhausted:
                return
            window_start = checkpoint + 1
            self._sleep(self.page_delay)

    def run(self, chains: List[Dict]) -> List[BackfillResult]:
        results = []
        for chain in chains:
            try:
                results.append(self.backfill_chain(chain))
            except ProviderError as e:
                logger.error(f"Backfill for {chain['name']} could not start: {e}")
                results.append(BackfillResult(chain['id'], 'failed', message=str(e)))
        return results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Backfill historical BZR transfers')
    parser.add_argument('chain', help="chain id (e.g. 137) or 'all'")
    parser.add_argument('--chunk-blocks', type=int, default=None,
                        help=f"blocks per chunk (default {config.BACKFILL_CHUNK_BLOCKS})")
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('backfill.log'),
            logging.StreamHandler()
        ]
    )
    args = parse_args(argv)

    if args.chain == 'all':
        chains = config.CHAINS
    else:
        chain = get_chain(args.chain)
        if not chain:
            logger.error(f"Chain {args.chain} not found")
            return 1
        chains = [chain]

    try:
        stored = db_manager.load_api_credentials()
    except Exception as e:
        logger.warning(f"Could not load API credentials from store: {e}")
        stored = {}
    clients = ClientRegistry(KeyPoolRegistry(merge_credentials(config.env_keys(), stored)))

    reconciler = BackfillReconciler(clients=clients, chunk_blocks=args.chunk_blocks)
    results = reconciler.run(chains)

    incomplete = [r for r in results if r.status != BACKFILL_COMPLETED]
    for r in results:
        logger.info(f"Chain {r.chain_id}: {r.status} (fetched {r.fetched}, inserted {r.inserted}) {r.message}")
    if incomplete:
        logger.warning(f"{len(incomplete)} chain(s) did not finish, rerun to resume")
        return 1
    logger.info("🎉 All requested backfills completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
