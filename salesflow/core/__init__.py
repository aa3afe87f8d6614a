"""Core automation engine components."""

from .exceptions import (
    AutomationEngineError,
    FlowValidationError,
    NodeConfigurationError,
    TransportError,
    EntityNotFoundError,
    FlowNotFoundError,
    StorageError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .flow_manager import FlowManager
from .rule_manager import RuleManager
from .execution_engine import ExecutionEngine
from .trigger_queue import TriggerQueue
from .trigger_router import TriggerRouter

__all__ = [
    "AutomationEngineError",
    "FlowValidationError",
    "NodeConfigurationError",
    "TransportError",
    "EntityNotFoundError",
    "FlowNotFoundError",
    "StorageError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "FlowManager",
    "RuleManager",
    "ExecutionEngine",
    "TriggerQueue",
    "TriggerRouter",
]
