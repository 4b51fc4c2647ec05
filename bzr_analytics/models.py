# models.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class TransferEvent:
    """One ERC20 Transfer log, unique on (chain_id, tx_hash, log_index)"""
    chain_id: int
    block_number: int
    tx_hash: str
    log_index: int
    timestamp: datetime
    from_address: str
    to_address: str
    value_raw: int
    method_id: Optional[str] = None
    raw_payload: Dict = field(default_factory=dict)

    @property
    def key(self):
        return (self.chain_id, self.tx_hash, self.log_index)

    def to_row(self):
        return (
            self.chain_id,
            self.block_number,
            self.tx_hash,
            self.log_index,
            self.timestamp,
            self.from_address,
            self.to_address,
            self.value_raw,
            self.method_id,
        )


@dataclass
class ChainCursor:
    chain_id: int
    last_block_number: int = 0
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    backoff_until: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            chain_id=int(row['chain_id']),
            last_block_number=int(row['last_block_number'] or 0),
            last_success_at=row.get('last_success_at'),
            last_error_at=row.get('last_error_at'),
            last_error=row.get('last_error'),
            consecutive_failures=int(row.get('consecutive_failures') or 0),
            backoff_until=row.get('backoff_until'),
            updated_at=row.get('updated_at'),
        )


BACKFILL_PENDING = 'pending'
BACKFILL_RUNNING = 'running'
BACKFILL_COMPLETED = 'completed'


@dataclass
class BackfillProgress:
    chain_id: int
    target_block: int = 0
    last_processed_block: int = 0
    total_backfilled: int = 0
    status: str = BACKFILL_PENDING
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            chain_id=int(row['chain_id']),
            target_block=int(row.get('target_block') or 0),
            last_processed_block=int(row.get('last_processed_block') or 0),
            total_backfilled=int(row.get('total_transfers_backfilled') or 0),
            status=row.get('status') or BACKFILL_PENDING,
            updated_at=row.get('updated_at'),
        )


@dataclass
class ChainSnapshot:
    chain_id: int
    chain_name: str
    last_block_number: int
    total_transfers: int
    index_lag_seconds: Optional[int]
    ready: bool
    stale: bool
    consecutive_failures: int = 0
    backoff_until: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self):
        return {
            'chainId': self.chain_id,
            'chainName': self.chain_name,
            'lastBlockNumber': self.last_block_number,
            'lagSeconds': self.index_lag_seconds,
            'totalTransfers': self.total_transfers,
            'ready': self.ready,
            'stale': self.stale,
            'consecutiveFailures': self.consecutive_failures,
            'backoffUntil': self.backoff_until.isoformat() if self.backoff_until else None,
            'lastSuccessAt': self.last_success_at.isoformat() if self.last_success_at else None,
            'lastError': self.last_error,
        }
