"""Pytest configuration and fixtures."""

import os
import tempfile
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.config import AppConfig, LogLevel, reset_config
from salesflow.core.exceptions import TransportError
from salesflow.core.gateways import MessagingGateway, WebhookTransport
from salesflow.models.core import FlowDefinition, utc_now
from salesflow.storage import database as db_module
from salesflow.storage.database import Base
from salesflow.storage.models import (
    LeadModel,
    LeadTagAssignmentModel,
    StageModel,
    TagModel,
    WorkspaceMemberModel,
)

WORKSPACE_ID = "ws-1"


class RecordingGateway(MessagingGateway):
    """Messaging gateway that records sends instead of calling the API."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send_text(self, channel, address, text):
        if self.fail:
            raise TransportError("Messaging API returned HTTP 500", status_code=500)
        self.sent.append({"channel": channel, "address": address, "text": text})
        return True


class RecordingTransport(WebhookTransport):
    """Webhook transport that records requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200):
        self.calls = []
        self.status_code = status_code

    def request(self, method, url, payload, headers, timeout):
        self.calls.append({
            "method": method,
            "url": url,
            "payload": payload,
            "headers": headers,
            "timeout": timeout,
        })
        return self.status_code


class Seeder:
    """Inserts CRM rows directly, the way the surrounding CRM would have."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _add(self, *models):
        db = self._session_factory()
        try:
            for model in models:
                db.add(model)
            db.commit()
        finally:
            db.close()

    def stage(self, stage_id, name=None, position=0, flow_id=None, workspace_id=WORKSPACE_ID):
        self._add(StageModel(
            id=stage_id,
            workspace_id=workspace_id,
            name=name or stage_id.title(),
            position=position,
            flow_id=flow_id,
        ))
        return stage_id

    def bind_flow(self, stage_id, flow_id):
        db = self._session_factory()
        try:
            db.query(StageModel).filter(StageModel.id == stage_id).update({StageModel.flow_id: flow_id})
            db.commit()
        finally:
            db.close()

    def tag(self, tag_id, name=None, workspace_id=WORKSPACE_ID):
        self._add(TagModel(id=tag_id, workspace_id=workspace_id, name=name or tag_id))
        return tag_id

    def lead(self, lead_id="lead-1", stage_id=None, tags=(), workspace_id=WORKSPACE_ID, **fields):
        values = {
            "name": "Maria Silva",
            "phone": "(11) 98765-4321",
            "email": "maria@example.com",
            "company": "Acme",
            "instance_name": "sales-01",
            "value": 0,
        }
        values.update(fields)
        self._add(LeadModel(id=lead_id, workspace_id=workspace_id, stage_id=stage_id, **values))
        for tag_id in tags:
            self.assign_tag(lead_id, tag_id)
        return lead_id

    def assign_tag(self, lead_id, tag_id):
        self._add(LeadTagAssignmentModel(lead_id=lead_id, tag_id=tag_id))

    def member(self, user_id, role="seller", created_at=None, workspace_id=WORKSPACE_ID):
        self._add(WorkspaceMemberModel(
            workspace_id=workspace_id,
            user_id=user_id,
            role=role,
            created_at=created_at or utc_now(),
        ))
        return user_id

    def lead_tag_names(self, lead_id):
        db = self._session_factory()
        try:
            rows = (
                db.query(TagModel.name)
                .join(LeadTagAssignmentModel, LeadTagAssignmentModel.tag_id == TagModel.id)
                .filter(LeadTagAssignmentModel.lead_id == lead_id)
                .all()
            )
            return {row[0] for row in rows}
        finally:
            db.close()

    def lead_stage(self, lead_id):
        db = self._session_factory()
        try:
            return db.query(LeadModel).filter(LeadModel.id == lead_id).one().stage_id
        finally:
            db.close()


def _make_flow(nodes, edges=(), **kwargs) -> FlowDefinition:
    kwargs.setdefault("workspace_id", WORKSPACE_ID)
    kwargs.setdefault("name", "Test flow")
    return FlowDefinition(nodes=list(nodes), edges=list(edges), **kwargs)


@pytest.fixture
def make_flow():
    """Build a flow from plain dicts, as the canvas would send it."""
    return _make_flow


@pytest.fixture(autouse=True)
def fresh_config():
    """Keep the configuration singleton from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_db(monkeypatch):
    """Create a temporary database and point the storage layer at it."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(bind=test_engine)

    monkeypatch.setattr(db_module, "engine", test_engine)
    monkeypatch.setattr(
        db_module, "SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    )

    yield db_path

    test_engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def test_config(temp_db):
    return AppConfig(
        database_url=f"sqlite:///{temp_db}",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        node_timeout=5,
        evolution_api_url="https://evolution.test",
        evolution_api_key="test-key",
        cors_origins=[],
    )


@pytest.fixture
def seed(temp_db):
    return Seeder(db_module.SessionLocal)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def components(test_config, gateway, transport):
    """Fully wired stores, engine, queue and router against the temp database."""
    from salesflow.factory import build_components

    state = build_components(test_config, messaging_gateway=gateway, webhook_transport=transport)
    yield state
    state.execution_engine.shutdown()
