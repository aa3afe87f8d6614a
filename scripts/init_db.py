#!/usr/bin/env python3
"""Database initialization script."""

import sys
import os

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from salesflow.config import load_config
from salesflow.storage import database
from salesflow.storage.database import create_tables
from salesflow.storage.migrations import run_migrations
from salesflow.core.logging import setup_logging


def main():
    """Initialize the database."""
    config = load_config()

    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info(f"Initializing database at {config.database_url}...")

        if str(database.engine.url) != config.database_url:
            database.configure_database(config.database_url, config.database_echo)

        create_tables()
        logger.info("Database tables created successfully")

        run_migrations()
        logger.info("Database migrations completed successfully")

        logger.info("Database initialization completed")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
