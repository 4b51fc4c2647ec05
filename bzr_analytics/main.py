# main.py
import sys
import time
import signal
import logging
import threading
import schedule
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List

from bzr_analytics.database.connection import DatabaseManager, db_manager
from bzr_analytics.config import config
from bzr_analytics.ingestors.key_pool import KeyPoolRegistry
from bzr_analytics.ingestors.registry import ClientRegistry
from bzr_analytics.sync.chain_sync import ChainIngestionLoop

logger = logging.getLogger(__name__)


def merge_credentials(env_keys: Dict[str, List[str]], stored_keys: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Environment keys first, then keys from the config store, without duplicates"""
    merged = {}
    for source in (env_keys, stored_keys):
        for provider, keys in (source or {}).items():
            bucket = merged.setdefault(provider, [])
            for key in keys:
                if key and key not in bucket:
                    bucket.append(key)
    return merged


class IngestionService:
    """Runs one ChainIngestionLoop per configured chain"""

    def __init__(self, chains: List[Dict] = None, db: DatabaseManager = None,
                 clients: ClientRegistry = None):
        self.chains = chains or config.CHAINS
        self.db = db or db_manager
        self.clients = clients or ClientRegistry(KeyPoolRegistry(config.env_keys()))
        self.stop_event = threading.Event()
        self.loops = {
            chain['id']: ChainIngestionLoop(chain, self.clients.client_for(chain), db=self.db)
            for chain in self.chains
        }

    def refresh_credentials(self):
        """Reload keys from env + config store and resume chains that can run again"""
        try:
            stored = self.db.load_api_credentials()
        except Exception as e:
            logger.warning(f"Could not load API credentials from store, using environment only: {e}")
            stored = {}

        merged = merge_credentials(config.env_keys(), stored)
        for provider, keys in merged.items():
            self.clients.key_pools.set_keys(provider, keys)

        resumed = []
        for chain in self.chains:
            loop = self.loops[chain['id']]
            if loop.is_paused and self.clients.pool_for_chain(chain).available_count() > 0:
                if loop.resume():
                    resumed.append(chain['name'])
        if resumed:
            logger.info(f"Credentials available again, resumed: {', '.join(resumed)}")
        return resumed

    def run_once(self):
        """Tick every chain once, concurrently"""
        logger.info(f"Running one ingestion pass over {len(self.loops)} chains")
        results = {}

        with ThreadPoolExecutor(max_workers=max(1, len(self.loops))) as executor:
            futures = {executor.submit(loop.tick): chain_id for chain_id, loop in self.loops.items()}

            for future in as_completed(futures):
                chain_id = futures[future]
                loop = self.loops[chain_id]
                try:
                    future.result()
                    results[chain_id] = loop.state.value
                    if loop.last_error:
                        logger.error(f"❌ {loop.chain['name']} pass failed: {loop.last_error}")
                    else:
                        logger.info(f"✅ {loop.chain['name']} pass completed ({loop.state.value})")
                except Exception as e:
                    results[chain_id] = 'error'
                    logger.error(f"❌ {loop.chain['name']} pass crashed: {e}")

        logger.info("Completed ingestion pass for all chains")
        return results

    def stop(self, *_args):
        if not self.stop_event.is_set():
            logger.info("Shutdown requested, stopping ingestion loops")
        self.stop_event.set()
        for loop in self.loops.values():
            loop.stop()

    def run_forever(self):
        self.refresh_credentials()
        schedule.every(config.CONFIG_REFRESH_INTERVAL_SECONDS).seconds.do(self.refresh_credentials)

        with ThreadPoolExecutor(max_workers=max(1, len(self.loops))) as executor:
            futures = [executor.submit(loop.run, self.stop_event) for loop in self.loops.values()]

            while not self.stop_event.is_set():
                schedule.run_pending()
                self.stop_event.wait(1)

            for future in futures:
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Ingestion loop exited with error: {e}")

        schedule.clear()
        logger.info("Ingestion service stopped")


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('ingester.log'),
            logging.StreamHandler()
        ]
    )

    if not db_manager.is_ready():
        logger.error("Transfer store is not initialized, run init_database first")
        sys.exit(1)

    service = IngestionService()
    signal.signal(signal.SIGINT, service.stop)
    signal.signal(signal.SIGTERM, service.stop)

    if '--once' in sys.argv:
        service.refresh_credentials()
        service.run_once()
        return

    logger.info(f"Starting ingestion for {len(service.chains)} chains")
    started = time.time()
    service.run_forever()
    logger.info(f"Ingestion ran for {time.time() - started:.0f}s")


if __name__ == "__main__":
    main()
