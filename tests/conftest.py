"""Pytest configuration and fixtures for the ReachOut engine tests."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reachout_engine.channels import ChannelAdapter, OutboundMessage, SendResult
from reachout_engine.config import Settings, get_settings
from reachout_engine.db.base import Base, get_db
from reachout_engine.db.services import (
    ContactService,
    EnrollmentService,
    TemplateService,
    WorkflowService,
)
from reachout_engine.deps import get_adapter_factory
from reachout_engine.engine.dispatch import MessageDispatcher
from reachout_engine.errors import ProviderError
from reachout_engine.schemas.workflow import WorkflowCreate

NOW = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


class RecordingAdapter(ChannelAdapter):
    """Channel adapter that records sends instead of calling a provider."""

    def __init__(self, channel: str, fail_with: Optional[str] = None):
        self.channel = channel
        self.provider = "recording"
        self.fail_with = fail_with
        self.sent: List[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> SendResult:
        if self.fail_with:
            raise ProviderError(self.fail_with, provider=self.provider)
        self.sent.append(message)
        prefix = "SM" if self.channel == "sms" else "sg"
        return SendResult(provider_id=f"{prefix}{len(self.sent):04d}", provider_status="queued")


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads (TestClient runs sync routes in a pool)."""
    from reachout_engine.db import models  # noqa: F401

    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db_session(engine):
    """A session bound to the test engine."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    """Settings with a scheduler secret and webhook credentials for tests."""
    return Settings(
        scheduler_secret="test-secret",
        twilio_webhook_auth_token="twilio-test-token",
        sendgrid_webhook_public_key=None,
        insecure_skip_webhook_signatures=False,
        default_email_subject="Hello from ReachOut",
        log_format="console",
    )


@pytest.fixture
def adapters() -> Dict[str, RecordingAdapter]:
    return {"sms": RecordingAdapter("sms"), "email": RecordingAdapter("email")}


@pytest.fixture
def adapter_factory(adapters):
    return lambda channel: adapters[channel]


@pytest.fixture
def dispatcher(db_session, settings, adapter_factory):
    return MessageDispatcher(db_session, settings=settings, adapter_factory=adapter_factory)


@pytest.fixture
def make_contact(db_session):
    """Factory for contacts with sensible defaults."""

    def _make(**overrides: Any):
        fields = {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "phone": "+15551234567",
            "status": "new",
            "do_not_contact": False,
            "custom_fields": {},
        }
        fields.update(overrides)
        return ContactService(db_session).create_contact(**fields)

    return _make


@pytest.fixture
def make_template(db_session):
    def _make(body: str = "Hi {{first_name}}", channel: str = "sms", subject=None):
        return TemplateService(db_session).create_template(
            name=f"{channel} template", channel=channel, body=body, subject=subject
        )

    return _make


def chain(*nodes: Dict[str, Any]) -> Dict[str, Any]:
    """Build a linear graph where each node points at the next."""
    edges = [
        {"source": a["id"], "target": b["id"]} for a, b in zip(nodes, nodes[1:])
    ]
    return {"nodes": list(nodes), "edges": edges}


@pytest.fixture
def make_workflow(db_session):
    """Factory for workflows from a graph dict."""

    def _make(graph: Dict[str, Any], is_enabled: bool = True, name: str = "Outreach"):
        payload = WorkflowCreate(name=name, is_enabled=is_enabled, graph=graph)
        return WorkflowService(db_session).create_workflow(payload)

    return _make


@pytest.fixture
def enroll(db_session):
    """Enroll a contact directly and return its execution."""

    def _enroll(workflow, contact, now: datetime = NOW):
        trigger = next(n["id"] for n in workflow.graph["nodes"] if n["type"] == "trigger_start")
        enrollment = EnrollmentService(db_session).create_with_execution(
            workflow.id, contact.id, trigger, now=now
        )
        return enrollment.execution

    return _enroll


@pytest.fixture
def client(db_session, settings, adapter_factory):
    """TestClient wired to the test session, settings and recording adapters."""
    from reachout_engine.api import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_adapter_factory] = lambda: adapter_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
