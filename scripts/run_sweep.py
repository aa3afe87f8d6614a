#!/usr/bin/env python3
"""Process due delayed stage automations once.

Meant to be run from cron or a scheduler every few minutes.
"""

import sys
import os

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from salesflow.config import load_config
from salesflow.core.logging import setup_logging
from salesflow.factory import build_components, initialize_database
from salesflow.storage import database


def main():
    config = load_config()
    logger = setup_logging(level=config.log_level.value, structured=config.structured_logging)

    try:
        if str(database.engine.url) != config.database_url:
            database.configure_database(config.database_url, config.database_echo)
        initialize_database(logger)

        state = build_components(config)
        try:
            report = state.trigger_queue.sweep(state.trigger_router)
        finally:
            state.execution_engine.shutdown()

        logger.info(
            f"Sweep finished: {report.processed} processed, "
            f"{report.done} done, {report.failed} failed"
        )
        if report.failed:
            sys.exit(2)

    except Exception as e:
        logger.error(f"Sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
