#!/usr/bin/env python3
# init_database.py

import os
import sys
import logging
import urllib.parse
import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from bzr_analytics.config import config
from bzr_analytics.database.connection import REQUIRED_TABLES, db_manager

logger = logging.getLogger(__name__)

SCHEMA_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'database', 'schema.sql')


def create_database_if_not_exists(database_url: str = None):
    """Create the target database on the server if it is missing"""
    conn = None
    try:
        parsed = urllib.parse.urlparse(database_url or config.DATABASE_URL)

        db_name = parsed.path[1:]
        host = parsed.hostname
        port = parsed.port or 5432

        # Same credentials, maintenance database
        postgres_url = parsed._replace(path='/postgres').geturl()

        logger.info(f"Connecting to PostgreSQL server at {host}:{port}")
        conn = psycopg2.connect(postgres_url)
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)

        with conn.cursor() as cursor:
            cursor.execute("SELECT 1 FROM pg_database WHERE datname = %s", (db_name,))
            if cursor.fetchone():
                logger.info(f"Database '{db_name}' already exists")
            else:
                logger.info(f"Creating database '{db_name}'")
                cursor.execute(f'CREATE DATABASE "{db_name}"')
                logger.info(f"Database '{db_name}' created successfully")
        return True

    except psycopg2.Error as e:
        logger.error(f"Failed to create database: {e}")
        return False
    finally:
        if conn:
            conn.close()


def initialize_schema(schema_file: str = SCHEMA_FILE):
    """Apply the idempotent schema file"""
    if not os.path.exists(schema_file):
        logger.error(f"Schema file '{schema_file}' not found")
        return False

    with open(schema_file, 'r') as f:
        schema_sql = f.read()

    try:
        logger.info("Executing schema SQL...")
        db_manager.execute_query(schema_sql)
        logger.info("✅ Database schema initialized successfully")
        return True
    except Exception as e:
        logger.error(f"❌ Schema initialization failed: {e}")
        return False


def test_database():
    """Check the connection, the required tables and the read paths"""
    logger.info("Testing database connection...")
    if not db_manager.test_connection():
        logger.error("Database connection test failed")
        return False

    if not db_manager.is_ready():
        logger.error(f"Missing one of the required tables: {', '.join(REQUIRED_TABLES)}")
        return False

    try:
        counts = db_manager.count_transfers_by_chain()
        cursors = db_manager.get_chain_cursors()
    except Exception as e:
        logger.error(f"❌ Database test failed: {e}")
        return False

    logger.info(f"Transfers stored for {len(counts)} chain(s), {sum(counts.values())} in total")
    logger.info(f"Ingestion cursors: {len(cursors)}")
    logger.info("✅ Database test completed successfully")
    return True


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info("🚀 Starting database initialization...")

    if not create_database_if_not_exists():
        logger.error("Database creation failed. Exiting.")
        sys.exit(1)

    if not initialize_schema():
        logger.error("Schema initialization failed. Exiting.")
        sys.exit(1)

    if not test_database():
        logger.error("Database test failed. Exiting.")
        sys.exit(1)

    logger.info("🎉 Database initialization completed successfully!")
    logger.info("")
    logger.info("Next steps:")
    logger.info("1. Start live ingestion: python -m bzr_analytics.main")
    logger.info("2. Backfill history: python -m bzr_analytics.backfill all")
    logger.info("3. Serve analytics: python -m bzr_analytics.api_server")


if __name__ == "__main__":
    main()
