"""Index migrations for the queue sweep and execution log queries."""

from sqlalchemy import inspect, text

from . import database
from ..core.logging import get_logger

logger = get_logger(__name__)


# Columns added after the first release: (table, column, DDL type)
ADDED_COLUMNS = [
    ("automation_queue", "claimed_at", "TIMESTAMP"),
]

INDEX_STATEMENTS = [
    # Sweep scans pending entries by due time
    """CREATE INDEX IF NOT EXISTS idx_automation_queue_status_execute_at
       ON automation_queue(status, execute_at)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_logs_run
       ON execution_logs(run_id, id)""",
    # skip_if_executed and anti-loop cooldown lookups
    """CREATE INDEX IF NOT EXISTS idx_execution_logs_flow_lead
       ON execution_logs(flow_or_automation_id, lead_id, timestamp)""",
    """CREATE INDEX IF NOT EXISTS idx_automation_rules_stage_trigger
       ON automation_rules(stage_id, trigger, position)""",
]


def add_missing_columns():
    """Add columns that tables created by an earlier release lack."""
    inspector = inspect(database.engine)
    with database.engine.connect() as connection:
        for table, column, ddl_type in ADDED_COLUMNS:
            if not inspector.has_table(table):
                continue
            existing = {col["name"] for col in inspector.get_columns(table)}
            if column not in existing:
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
                logger.info(f"Added column {table}.{column}")
        connection.commit()


def create_indexes():
    """Create indexes used by the sweep and the log queries."""
    try:
        with database.engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
            logger.info("Created %d database indexes", len(INDEX_STATEMENTS))
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite():
    """Enable WAL so log reads do not block run writes."""
    if "sqlite" not in str(database.engine.url):
        return
    try:
        with database.engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations():
    """Create tables, then indexes."""
    logger.info("Starting database migrations")
    database.create_tables()
    add_missing_columns()
    create_indexes()
    optimize_sqlite()
    logger.info("Database migrations completed successfully")


if __name__ == "__main__":
    run_migrations()
