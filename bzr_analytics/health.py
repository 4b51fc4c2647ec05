# health.py
import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bzr_analytics.config import chain_name, config
from bzr_analytics.database.connection import DatabaseManager, db_manager
from bzr_analytics.models import ChainCursor, ChainSnapshot

logger = logging.getLogger(__name__)

SERVER_START_TIME = time.time()


def build_chain_snapshot(chain_id: int, cursor: Optional[ChainCursor], total_transfers: int,
                         store_ready: bool, now: datetime = None,
                         stale_threshold: int = None, min_transfers: int = None) -> ChainSnapshot:
    """Derive readiness and staleness for one chain from its cursor and stored count"""
    now = now or datetime.now(timezone.utc)
    stale_threshold = config.INGEST_STALE_THRESHOLD_SECONDS if stale_threshold is None else stale_threshold
    min_transfers = config.READY_MIN_TRANSFERS if min_transfers is None else min_transfers

    last_success_at = cursor.last_success_at if cursor else None
    lag = None
    if last_success_at is not None:
        lag = max(0, int((now - last_success_at).total_seconds()))

    ready = bool(store_ready and last_success_at is not None and total_transfers >= min_transfers)
    stale = lag > stale_threshold if lag is not None else not ready

    return ChainSnapshot(
        chain_id=chain_id,
        chain_name=chain_name(chain_id),
        last_block_number=cursor.last_block_number if cursor else 0,
        total_transfers=total_transfers,
        index_lag_seconds=lag,
        ready=ready,
        stale=stale,
        consecutive_failures=cursor.consecutive_failures if cursor else 0,
        backoff_until=cursor.backoff_until if cursor else None,
        last_success_at=last_success_at,
        last_error=cursor.last_error if cursor else None,
    )


def load_chain_snapshots(db: DatabaseManager = None, chains: List[Dict] = None,
                         now: datetime = None, store_ready: bool = True) -> List[ChainSnapshot]:
    db = db or db_manager
    chain_ids = [chain['id'] for chain in (chains or config.CHAINS)]
    cursors = {cursor.chain_id: cursor for cursor in db.get_chain_cursors(chain_ids)}
    counts = db.count_transfers_by_chain(chain_ids)
    return [
        build_chain_snapshot(chain_id, cursors.get(chain_id), counts.get(chain_id, 0), store_ready, now)
        for chain_id in chain_ids
    ]


def _latest(values) -> Optional[str]:
    present = [v for v in values if v is not None]
    return max(present).isoformat() if present else None


def build_health_report(db: DatabaseManager = None, chains: List[Dict] = None, now: datetime = None,
                        store_enabled: bool = None) -> Dict:
    db = db or db_manager
    now = now or datetime.now(timezone.utc)
    store_enabled = bool(config.DATABASE_URL) if store_enabled is None else store_enabled
    store_ready = store_enabled and db.is_ready()

    warnings = []
    snapshots: List[ChainSnapshot] = []

    if store_ready:
        try:
            snapshots = load_chain_snapshots(db, chains, now, store_ready=True)
        except Exception as e:
            logger.error(f"Failed to load chain snapshots: {e}")
            warnings.append({
                'scope': 'store',
                'code': 'STORE_UNAVAILABLE',
                'message': 'Failed to load chain snapshot metadata.',
                'retryable': True,
            })
            store_ready = False
    elif store_enabled:
        warnings.append({
            'scope': 'store',
            'code': 'STORE_UNAVAILABLE',
            'message': 'Transfer store is unreachable or not initialized; analytics use realtime samples.',
            'retryable': True,
        })

    total_transfers = sum(s.total_transfers for s in snapshots)
    lags = [s.index_lag_seconds for s in snapshots if s.index_lag_seconds is not None]
    index_lag = max(lags) if lags else None
    ready = store_ready and all(s.ready for s in snapshots)
    stale = index_lag > config.INGEST_STALE_THRESHOLD_SECONDS if index_lag is not None else not ready
    failing = [s for s in snapshots if s.consecutive_failures > 0]

    if not store_enabled:
        status = 'disabled'
    elif not store_ready or not any(s.last_success_at for s in snapshots):
        status = 'initializing'
    elif ready and not (failing or stale):
        status = 'ok'
    else:
        # at least one chain has data, the rest are lagging or failing
        status = 'degraded'

    if stale and status == 'degraded':
        warnings.append({
            'scope': 'ingester',
            'code': 'STORE_DATA_STALE',
            'message': 'Latest ingested data is stale; serving last successful snapshot.',
            'retryable': True,
        })
    if failing:
        warnings.append({
            'scope': 'ingester',
            'code': 'INGESTER_FAILURES',
            'message': f"{len(failing)} chain(s) reporting repeated ingestion failures.",
            'retryable': True,
        })

    uptime_seconds = int(time.time() - SERVER_START_TIME)
    return {
        'status': status,
        'timestamp': now.isoformat(),
        'uptime': {
            'seconds': uptime_seconds,
            'startedAt': datetime.fromtimestamp(SERVER_START_TIME, timezone.utc).isoformat(),
        },
        'meta': {
            'ready': ready,
            'stale': stale,
            'indexLagSec': index_lag,
            'totalTransfers': total_transfers,
        },
        'store': {
            'enabled': store_enabled,
            'ready': store_ready,
        },
        'chains': [s.to_dict() for s in snapshots],
        'ingester': {
            'status': status,
            'lastSuccessAt': _latest(s.last_success_at for s in snapshots),
            'summary': {
                'chains': len(snapshots),
                'chainsReady': sum(1 for s in snapshots if s.ready),
                'chainsStale': sum(1 for s in snapshots if s.stale),
                'chainsFailing': len(failing),
                'maxConsecutiveFailures': max((s.consecutive_failures for s in snapshots), default=0),
                'maxBackoffUntil': _latest(s.backoff_until for s in snapshots),
                'maxLagSeconds': index_lag,
            },
        },
        'warnings': warnings,
    }
