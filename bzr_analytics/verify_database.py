# verify_database.py
import sys
import logging

from bzr_analytics.config import chain_name, config
from bzr_analytics.database.connection import REQUIRED_TABLES, DatabaseManager, db_manager

logger = logging.getLogger(__name__)

DUPLICATE_KEYS_QUERY = """
    SELECT chain_id, COUNT(*) AS duplicate_keys
    FROM (
        SELECT chain_id, tx_hash, log_index
        FROM transfer_events
        GROUP BY chain_id, tx_hash, log_index
        HAVING COUNT(*) > 1
    ) dup
    GROUP BY chain_id
"""


def find_duplicate_keys(db: DatabaseManager = None):
    """Unique-key violations per chain; the constraint should keep this empty"""
    db = db or db_manager
    rows = db.execute_query(DUPLICATE_KEYS_QUERY, fetch=True)
    return {int(row['chain_id']): int(row['duplicate_keys']) for row in rows}


def collect_chain_report(db: DatabaseManager = None):
    db = db or db_manager
    chain_ids = [chain['id'] for chain in config.CHAINS]
    counts = db.count_transfers_by_chain(chain_ids)
    cursors = {cursor.chain_id: cursor for cursor in db.get_chain_cursors(chain_ids)}

    report = []
    for chain_id in chain_ids:
        cursor = cursors.get(chain_id)
        progress = db.get_backfill_progress(chain_id)
        report.append({
            'chain_id': chain_id,
            'chain': chain_name(chain_id),
            'transfers': counts.get(chain_id, 0),
            'cursor_block': cursor.last_block_number if cursor else None,
            'failures': cursor.consecutive_failures if cursor else 0,
            'backfill_status': progress.status if progress else None,
            'backfill_block': progress.last_processed_block if progress else None,
            'backfill_target': progress.target_block if progress else None,
        })
    return report


def verify_database(db: DatabaseManager = None):
    db = db or db_manager
    try:
        if not db.test_connection():
            print("❌ Database connection failed!")
            return False
        print("✅ Database connection successful!")

        if not db.is_ready():
            print(f"❌ Missing required tables, expected: {', '.join(REQUIRED_TABLES)}")
            return False
        print(f"✅ Tables present: {', '.join(REQUIRED_TABLES)}")

        duplicates = find_duplicate_keys(db)
        if duplicates:
            for chain_id, count in duplicates.items():
                print(f"❌ {chain_name(chain_id)}: {count} duplicated (tx_hash, log_index) keys")
        else:
            print("✅ No duplicate transfer keys")

        print(f"\n{'Chain':<12}{'Transfers':>12}{'Cursor':>14}{'Fails':>7}  Backfill")
        for row in collect_chain_report(db):
            cursor_block = row['cursor_block'] if row['cursor_block'] is not None else '-'
            if row['backfill_status']:
                backfill = f"{row['backfill_status']} {row['backfill_block']}/{row['backfill_target']}"
            else:
                backfill = 'not started'
            print(f"{row['chain']:<12}{row['transfers']:>12}{cursor_block:>14}{row['failures']:>7}  {backfill}")

        print("\n🎉 Database verification completed!")
        return not duplicates

    except Exception as e:
        print(f"❌ Database verification failed: {e}")
        return False


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    sys.exit(0 if verify_database() else 1)
