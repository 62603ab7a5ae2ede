"""
SQLAlchemy models for the ReachOut workflow engine.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    and_,
    false,
)
from sqlalchemy.orm import relationship

from .base import Base


def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as timezone-aware UTC.

    SQLite stores no offset, so values come back naive; they are UTC by
    construction and get the tzinfo re-attached here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


# Status vocabularies
ENROLLMENT_STATUSES = ("active", "completed", "stopped", "failed")
EXECUTION_STATUSES = ("active", "waiting", "completed", "stopped", "failed")
EXECUTION_TERMINAL_STATUSES = ("completed", "stopped", "failed")
MESSAGE_STATUSES = (
    "queued",
    "scheduled",
    "sending",
    "sent",
    "delivered",
    "failed",
    "bounced",
)
CHANNELS = ("sms", "email")


class ContactModel(Base):
    """Contact read by sends and branches; status is mutated by update_status nodes."""

    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=generate_id)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(320), nullable=True, index=True)
    phone = Column(String(32), nullable=True, index=True)
    status = Column(String(50), nullable=False, default="new", index=True)
    do_not_contact = Column(Boolean, nullable=False, default=False)
    custom_fields = Column(JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
            "do_not_contact": self.do_not_contact,
            "custom_fields": self.custom_fields or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class TemplateModel(Base):
    """Reusable message body (and subject, for email)."""

    __tablename__ = "templates"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(200), nullable=False)
    channel = Column(Enum(*CHANNELS, name="template_channel"), nullable=False)
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "channel": self.channel,
            "subject": self.subject,
            "body": self.body,
            "created_at": _iso(self.created_at),
        }


class SettingModel(Base):
    """Key/value operator settings (provider credentials live here)."""

    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)


class SenderIdentityModel(Base):
    """A verified from-address (phone number or email) usable for sends."""

    __tablename__ = "sender_identities"

    id = Column(String(36), primary_key=True, default=generate_id)
    channel = Column(Enum(*CHANNELS, name="sender_channel"), nullable=False, index=True)
    address = Column(String(320), nullable=False)
    label = Column(String(200), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "channel": self.channel,
            "address": self.address,
            "label": self.label,
            "is_default": self.is_default,
        }


class WorkflowModel(Base):
    """SQLAlchemy model for workflows.

    The node/edge graph is stored as JSON and validated by
    ``schemas.workflow.WorkflowGraph`` before it is written.
    """

    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=False, index=True)
    graph = Column(JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_enabled": self.is_enabled,
            "graph": self.graph,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class EnrollmentModel(Base):
    """A contact's participation in a workflow."""

    __tablename__ = "workflow_enrollments"

    id = Column(String(36), primary_key=True, default=generate_id)
    workflow_id = Column(
        String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    contact_id = Column(
        String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(
        Enum(*ENROLLMENT_STATUSES, name="enrollment_status"),
        nullable=False,
        default="active",
        index=True,
    )
    enrolled_at = Column(UTCDateTime, nullable=False, default=utc_now)
    completed_at = Column(UTCDateTime, nullable=True)
    stopped_at = Column(UTCDateTime, nullable=True)
    stop_reason = Column(Text, nullable=True)
    # set when the caller opted out of duplicate checks
    allow_duplicate = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    execution = relationship("ExecutionModel", back_populates="enrollment", uselist=False)

    __table_args__ = (
        Index("ix_enrollments_workflow_contact_status", "workflow_id", "contact_id", "status"),
        Index("ix_enrollments_contact_id", "contact_id"),
        Index(
            "uq_enrollments_one_active",
            "workflow_id",
            "contact_id",
            unique=True,
            sqlite_where=and_(status == "active", allow_duplicate == false()),
            postgresql_where=and_(status == "active", allow_duplicate == false()),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "contact_id": self.contact_id,
            "status": self.status,
            "enrolled_at": _iso(self.enrolled_at),
            "completed_at": _iso(self.completed_at),
            "stopped_at": _iso(self.stopped_at),
            "stop_reason": self.stop_reason,
            "allow_duplicate": bool(self.allow_duplicate),
        }


class ExecutionModel(Base):
    """Runtime cursor for one enrollment; the only durable checkpoint of progress.

    Invariant: next_run_at is non-null iff status == "waiting".
    """

    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True, default=generate_id)
    enrollment_id = Column(
        String(36),
        ForeignKey("workflow_enrollments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    current_node_id = Column(String(128), nullable=True)
    status = Column(
        Enum(*EXECUTION_STATUSES, name="execution_status"),
        nullable=False,
        default="waiting",
        index=True,
    )
    next_run_at = Column(UTCDateTime, nullable=True)
    last_run_at = Column(UTCDateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    execution_data = Column(JSON, nullable=False, default=dict)

    # Claim bookkeeping (set by the conditional UPDATE that takes the row)
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    enrollment = relationship("EnrollmentModel", back_populates="execution")

    __table_args__ = (
        Index("ix_executions_status_next_run", "status", "next_run_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in EXECUTION_TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "enrollment_id": self.enrollment_id,
            "current_node_id": self.current_node_id,
            "status": self.status,
            "next_run_at": _iso(self.next_run_at),
            "last_run_at": _iso(self.last_run_at),
            "attempts": self.attempts,
            "error_message": self.error_message,
            "execution_data": self.execution_data or {},
        }


class ExecutionLogModel(Base):
    """One entry per node the state machine ran."""

    __tablename__ = "workflow_execution_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    execution_id = Column(
        String(36),
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    enrollment_id = Column(String(36), nullable=False, index=True)
    node_id = Column(String(128), nullable=False)
    node_type = Column(String(50), nullable=False)
    action = Column(String(50), nullable=False)
    status = Column(
        Enum("completed", "failed", "skipped", name="execution_log_status"),
        nullable=False,
    )
    input_data = Column(JSON, nullable=True)
    output_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "enrollment_id": self.enrollment_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "action": self.action,
            "status": self.status,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


class MessageModel(Base):
    """Inbound or outbound message on a channel.

    Status only moves forward; provider_id is the idempotency key for
    delivery webhooks.
    """

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    contact_id = Column(
        String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    channel = Column(Enum(*CHANNELS, name="message_channel"), nullable=False)
    direction = Column(
        Enum("inbound", "outbound", name="message_direction"), nullable=False
    )
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=False, default="")
    status = Column(
        Enum(*MESSAGE_STATUSES, name="message_status"),
        nullable=False,
        default="queued",
        index=True,
    )
    source = Column(String(20), nullable=False, default="manual")
    template_id = Column(String(36), nullable=True)
    scheduled_at = Column(UTCDateTime, nullable=True)
    from_identity = Column(JSON, nullable=True)

    provider_id = Column(String(128), nullable=True, unique=True)
    provider_error = Column(Text, nullable=True)

    sent_at = Column(UTCDateTime, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)

    workflow_execution_id = Column(
        String(36),
        ForeignKey("workflow_executions.id", ondelete="SET NULL"),
        nullable=True,
    )
    claim_token = Column(String(36), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_messages_contact_direction_created", "contact_id", "direction", "created_at"),
        Index("ix_messages_status_scheduled_at", "status", "scheduled_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "channel": self.channel,
            "direction": self.direction,
            "subject": self.subject,
            "body": self.body,
            "status": self.status,
            "source": self.source,
            "template_id": self.template_id,
            "scheduled_at": _iso(self.scheduled_at),
            "from_identity": self.from_identity,
            "provider_id": self.provider_id,
            "provider_error": self.provider_error,
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
            "workflow_execution_id": self.workflow_execution_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
