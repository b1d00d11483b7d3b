#!/usr/bin/env python3
"""
Database schema script for Mems.

Usage:
    python scripts/migrate.py          # Create missing tables
    python scripts/migrate.py --check  # Health check only
    python scripts/migrate.py --drop   # Drop and recreate every table
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import logging

from mems.models.db import db_manager, init_database

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def main():
    """Main schema script."""
    import argparse

    parser = argparse.ArgumentParser(description="Database schema utility for Mems")
    parser.add_argument("--check", action="store_true", help="Check database health")
    parser.add_argument("--drop", action="store_true", help="Drop all tables before creating them")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.check:
            logger.info("Checking database health...")
            if db_manager.health_check():
                logger.info("Database is healthy")
                return 0
            logger.error("Database health check failed")
            return 1

        if args.drop:
            logger.warning("Dropping all tables...")
            db_manager.drop_all()

        logger.info("Creating database schema...")
        if init_database():
            logger.info("Database schema is up to date")
            return 0
        logger.error("Database initialization failed")
        return 1

    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.verbose:
            import traceback

            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
