"""Application startup script and CLI interface."""

import argparse
import sys

from .config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="SalesFlow - workflow automation for sales pipeline leads"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Maximum number of flow runs executing at once"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the automation API server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Create indexes and apply storage tuning")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    sweep_parser = subparsers.add_parser("sweep", help="Run due delayed stage automations once")
    sweep_parser.add_argument("--batch-size", type=int, help="Maximum entries to process")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Command line arguments win over presets and the environment
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.max_concurrent_executions:
        config.max_concurrent_executions = args.max_concurrent_executions

    return config


def _bind_database(config: AppConfig) -> None:
    from .storage import database

    if str(database.engine.url) != config.database_url:
        database.configure_database(config.database_url, config.database_echo)


def run_server(config: AppConfig):
    """Run the automation API server."""
    import uvicorn

    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")

    uvicorn_config = config.get_uvicorn_config()
    if config.reload:
        # Reload needs an import string; the worker rebuilds the app from the environment
        uvicorn.run("salesflow.main:app", **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_tables, drop_tables
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    _bind_database(config)

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables()
        logger.info("Database tables created successfully")

    elif command == "migrate":
        logger.info("Running database migrations...")
        run_migrations()
        logger.info("Database migrations completed successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        run_migrations()
        logger.info("Database reset completed successfully")


def run_sweep_command(config: AppConfig, batch_size=None):
    """Process due queue entries once and print a summary."""
    from .factory import build_components, initialize_database

    logger = get_logger(__name__)
    _bind_database(config)
    initialize_database(logger)

    state = build_components(config)
    try:
        report = state.trigger_queue.sweep(state.trigger_router, batch_size=batch_size)
    finally:
        state.execution_engine.shutdown()

    print(f"Swept at: {report.swept_at.isoformat()}")
    print(f"Processed: {report.processed} (done: {report.done}, failed: {report.failed})")
    for entry in report.entries:
        line = f"  #{entry.id} automation={entry.automation_id} lead={entry.lead_id}: {entry.status.value}"
        if entry.error_message:
            line += f" - {entry.error_message}"
        print(line)
    return report


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Executions: {config.max_concurrent_executions}")
    print(f"  Max Trigger Hops: {config.max_trigger_hops}")
    print(f"  Messaging API: {config.evolution_api_url or '(not configured)'}")
    print(f"  Sweep Batch Size: {config.sweep_batch_size}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    """Main entry point for the command line interface."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        validate_config(config)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        if args.command == "run" or args.command is None:
            run_server(config)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "sweep":
            run_sweep_command(config, args.batch_size)

        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
