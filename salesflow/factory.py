"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.actions import ActionDispatcher
from .core.entity_store import EntityStore
from .core.execution_engine import ExecutionEngine
from .core.execution_log import ExecutionLog
from .core.flow_manager import FlowManager
from .core.gateways import (
    EvolutionMessagingGateway,
    MessagingGateway,
    RequestsWebhookTransport,
    WebhookTransport,
)
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware
from .core.rule_manager import RuleManager
from .core.trigger_queue import TriggerQueue
from .core.trigger_router import TriggerRouter
from .storage import database
from .storage.database import create_tables


class ApplicationState:
    """Container for the wired automation components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.entity_store: Optional[EntityStore] = None
        self.flow_manager: Optional[FlowManager] = None
        self.rule_manager: Optional[RuleManager] = None
        self.execution_log: Optional[ExecutionLog] = None
        self.dispatcher: Optional[ActionDispatcher] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_queue: Optional[TriggerQueue] = None
        self.trigger_router: Optional[TriggerRouter] = None


def build_components(
    config: AppConfig,
    messaging_gateway: Optional[MessagingGateway] = None,
    webhook_transport: Optional[WebhookTransport] = None,
) -> ApplicationState:
    """Wire stores, engine, queue and router together."""
    state = ApplicationState()
    state.config = config
    state.entity_store = EntityStore()
    state.flow_manager = FlowManager()
    state.rule_manager = RuleManager()
    state.execution_log = ExecutionLog()

    state.dispatcher = ActionDispatcher(
        entity_store=state.entity_store,
        messaging_gateway=messaging_gateway or EvolutionMessagingGateway(
            config.evolution_api_url, config.evolution_api_key, timeout=config.node_timeout
        ),
        webhook_transport=webhook_transport or RequestsWebhookTransport(),
        config=config,
    )
    state.execution_engine = ExecutionEngine(
        flow_manager=state.flow_manager,
        entity_store=state.entity_store,
        dispatcher=state.dispatcher,
        execution_log=state.execution_log,
        max_concurrent_executions=config.max_concurrent_executions,
        max_visits_per_node=config.max_visits_per_node,
    )
    state.trigger_queue = TriggerQueue(state.rule_manager, state.entity_store)
    state.trigger_router = TriggerRouter(
        engine=state.execution_engine,
        flow_manager=state.flow_manager,
        rule_manager=state.rule_manager,
        entity_store=state.entity_store,
        dispatcher=state.dispatcher,
        execution_log=state.execution_log,
        trigger_queue=state.trigger_queue,
        config=config,
    )
    return state


def initialize_database(logger) -> None:
    """Create tables, add late columns, then indexes."""
    from .storage.migrations import add_missing_columns, create_indexes

    create_tables()
    add_missing_columns()
    logger.info("Database tables created")

    try:
        create_indexes()
    except Exception as e:
        # Indexes only speed up queries; startup continues without them
        logger.warning(f"Index migration failed: {str(e)}")


def create_lifespan_handler(
    config: AppConfig,
    messaging_gateway: Optional[MessagingGateway] = None,
    webhook_transport: Optional[WebhookTransport] = None,
):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        if str(database.engine.url) != config.database_url:
            database.configure_database(config.database_url, config.database_echo)
        initialize_database(logger)
        state = build_components(config, messaging_gateway, webhook_transport)
        app.state.components = state

        init_dependencies(
            flow_manager=state.flow_manager,
            rule_manager=state.rule_manager,
            execution_engine=state.execution_engine,
            trigger_router=state.trigger_router,
            trigger_queue=state.trigger_queue,
            execution_log=state.execution_log,
        )
        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")
        state.execution_engine.shutdown()

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    messaging_gateway: Optional[MessagingGateway] = None,
    webhook_transport: Optional[WebhookTransport] = None,
) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow automation engine for sales pipeline leads",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, messaging_gateway, webhook_transport)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)

    @app.get("/")
    def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    return app
