#!/usr/bin/env python3
"""
Database initialization script.
Creates tables, including the partial unique index on processing sync jobs.
"""

import sys

from mailsync.config import settings
from mailsync.db.database import check_database_health, create_tables
from mailsync.utils.logging import setup_logging, get_logger

# Setup logging
setup_logging()
logger = get_logger("init_db")


def main():
    """Main initialization function."""
    logger.info(f"Initializing database for {settings.app_name}")

    if not check_database_health():
        logger.error("Database is not reachable")
        sys.exit(1)

    try:
        logger.info("Creating database tables...")
        create_tables()
        logger.info("Database tables created successfully!")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
