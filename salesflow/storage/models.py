"""SQLAlchemy database models for the CRM records the automation engine touches."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from ..models.core import utc_now


class LeadModel(Base):
    """A sales lead (the entity flows run against)."""
    __tablename__ = "leads"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, index=True)
    name = Column(String)
    phone = Column(String)
    email = Column(String)
    company = Column(String)
    source = Column(String)
    status = Column(String)
    value = Column(Float)
    stage_id = Column(String, ForeignKey("stages.id"))
    responsible_user = Column(String)
    whatsapp_jid = Column(String)
    instance_name = Column(String)
    position = Column(Integer, default=0)
    notes = Column(Text)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    tag_assignments = relationship("LeadTagAssignmentModel", back_populates="lead")


class TagModel(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, index=True)
    name = Column(String, nullable=False)
    color = Column(String)
    created_at = Column(DateTime, default=utc_now)


class LeadTagAssignmentModel(Base):
    """Tag membership of a lead. One row per (lead, tag)."""
    __tablename__ = "lead_tag_assignments"
    __table_args__ = (UniqueConstraint("lead_id", "tag_id", name="uq_lead_tag"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(String, ForeignKey("leads.id"), nullable=False)
    tag_id = Column(String, ForeignKey("tags.id"), nullable=False)
    created_at = Column(DateTime, default=utc_now)

    lead = relationship("LeadModel", back_populates="tag_assignments")
    tag = relationship("TagModel")


class StageModel(Base):
    """Pipeline stage. ``flow_id`` binds at most one flow to the stage."""
    __tablename__ = "stages"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, index=True)
    name = Column(String, nullable=False)
    position = Column(Integer, default=0)
    flow_id = Column(String, ForeignKey("flows.id"))
    created_at = Column(DateTime, default=utc_now)


class LeadHistoryModel(Base):
    """Audit trail of lead changes made by users and automations."""
    __tablename__ = "lead_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(String, ForeignKey("leads.id"), nullable=False, index=True)
    action = Column(String, nullable=False)  # stage_changed, notification, task_created
    from_stage_id = Column(String)
    to_stage_id = Column(String)
    performed_by = Column(String)
    details = Column(JSON)
    created_at = Column(DateTime, default=utc_now)


class WorkspaceMemberModel(Base):
    __tablename__ = "workspace_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    role = Column(String, nullable=False)  # owner, manager, seller
    created_at = Column(DateTime, default=utc_now)


class FlowModel(Base):
    """Database model for automation flows."""
    __tablename__ = "flows"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # {"nodes": [...], "edges": [...]}
    is_active = Column(Boolean, default=True, nullable=False)
    executions_count = Column(Integer, default=0, nullable=False)
    trigger_type = Column(String, default="manual", nullable=False)
    trigger_config = Column(JSON)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class AutomationRuleModel(Base):
    """Database model for stage automation rules."""
    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, index=True)
    stage_id = Column(String, ForeignKey("stages.id"), nullable=False)
    trigger = Column(String, nullable=False)
    trigger_delay_hours = Column(Float, default=0)
    action_type = Column(String, nullable=False)
    action_config = Column(JSON)
    conditions = Column(JSON)
    is_active = Column(Boolean, default=True, nullable=False)
    position = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utc_now)


class AutomationQueueModel(Base):
    """Durable delayed trigger entries."""
    __tablename__ = "automation_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    automation_id = Column(String, nullable=False)
    lead_id = Column(String, nullable=False)
    workspace_id = Column(String)
    execute_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, done, failed
    created_at = Column(DateTime, default=utc_now)
    claimed_at = Column(DateTime)  # set by the sweep that runs the entry
    processed_at = Column(DateTime)
    error_message = Column(Text)


class ExecutionLogModel(Base):
    """Append-only node visit records."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False)
    source = Column(String, nullable=False, default="flow")  # flow, automation
    flow_or_automation_id = Column(String, nullable=False)
    lead_id = Column(String, nullable=False)
    node_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    message = Column(Text)
    timestamp = Column(DateTime, default=utc_now)
