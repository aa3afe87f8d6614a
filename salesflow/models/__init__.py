"""Data models for the automation engine."""

from .core import (
    NodeType,
    ConditionOperator,
    FlowTriggerType,
    RuleTrigger,
    RuleActionType,
    ExecutionLogStatus,
    LogSource,
    QueueStatus,
    FlowNode,
    FlowEdge,
    FlowDefinition,
    Condition,
    AutomationRule,
    Stage,
    TagRef,
    LeadSnapshot,
    NodeOutcome,
    ExecutionResult,
    ExecutionLogEntry,
    QueuedTrigger,
    RuleOutcome,
    TriggerReport,
    SweepReport,
    ValidationResult,
)

__all__ = [
    "NodeType",
    "ConditionOperator",
    "FlowTriggerType",
    "RuleTrigger",
    "RuleActionType",
    "ExecutionLogStatus",
    "LogSource",
    "QueueStatus",
    "FlowNode",
    "FlowEdge",
    "FlowDefinition",
    "Condition",
    "AutomationRule",
    "Stage",
    "TagRef",
    "LeadSnapshot",
    "NodeOutcome",
    "ExecutionResult",
    "ExecutionLogEntry",
    "QueuedTrigger",
    "RuleOutcome",
    "TriggerReport",
    "SweepReport",
    "ValidationResult",
]
