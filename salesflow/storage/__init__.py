"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables
from .models import (
    LeadModel,
    TagModel,
    LeadTagAssignmentModel,
    StageModel,
    LeadHistoryModel,
    WorkspaceMemberModel,
    FlowModel,
    AutomationRuleModel,
    AutomationQueueModel,
    ExecutionLogModel,
)

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "LeadModel",
    "TagModel",
    "LeadTagAssignmentModel",
    "StageModel",
    "LeadHistoryModel",
    "WorkspaceMemberModel",
    "FlowModel",
    "AutomationRuleModel",
    "AutomationQueueModel",
    "ExecutionLogModel",
]
