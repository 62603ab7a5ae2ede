"""create workflow engine tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

CHANNELS = ("sms", "email")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("first_name", sa.String(length=100)),
        sa.Column("last_name", sa.String(length=100)),
        sa.Column("email", sa.String(length=320)),
        sa.Column("phone", sa.String(length=32)),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="new"),
        sa.Column(
            "do_not_contact", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("custom_fields", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_contacts_email", "contacts", ["email"])
    op.create_index("ix_contacts_phone", "contacts", ["phone"])
    op.create_index("ix_contacts_status", "contacts", ["status"])

    op.create_table(
        "templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("channel", sa.Enum(*CHANNELS, name="template_channel"), nullable=False),
        sa.Column("subject", sa.String(length=500)),
        sa.Column("body", sa.Text, nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "sender_identities",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("channel", sa.Enum(*CHANNELS, name="sender_channel"), nullable=False),
        sa.Column("address", sa.String(length=320), nullable=False),
        sa.Column("label", sa.String(length=200)),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_sender_identities_channel", "sender_identities", ["channel"]
    )

    op.create_table(
        "workflows",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("graph", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_workflows_name", "workflows", ["name"])
    op.create_index("ix_workflows_is_enabled", "workflows", ["is_enabled"])

    op.create_table(
        "workflow_enrollments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.String(length=36),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "stopped", "failed", name="enrollment_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("stopped_at", sa.DateTime(timezone=True)),
        sa.Column("stop_reason", sa.Text),
        sa.Column("allow_duplicate", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index(
        "ix_enrollments_workflow_contact_status",
        "workflow_enrollments",
        ["workflow_id", "contact_id", "status"],
    )
    op.create_index("ix_enrollments_contact_id", "workflow_enrollments", ["contact_id"])
    one_active = sa.and_(
        sa.column("status") == "active", sa.column("allow_duplicate") == sa.false()
    )
    op.create_index(
        "uq_enrollments_one_active",
        "workflow_enrollments",
        ["workflow_id", "contact_id"],
        unique=True,
        sqlite_where=one_active,
        postgresql_where=one_active,
    )
    op.create_index(
        "ix_workflow_enrollments_status", "workflow_enrollments", ["status"]
    )

    op.create_table(
        "workflow_executions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "enrollment_id",
            sa.String(length=36),
            sa.ForeignKey("workflow_enrollments.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("current_node_id", sa.String(length=128)),
        sa.Column(
            "status",
            sa.Enum(
                "active", "waiting", "completed", "stopped", "failed",
                name="execution_status",
            ),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column("next_run_at", sa.DateTime(timezone=True)),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.Column("execution_data", sa.JSON, nullable=False),
        sa.Column("claim_token", sa.String(length=36)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_executions_status_next_run", "workflow_executions", ["status", "next_run_at"]
    )
    op.create_index("ix_workflow_executions_status", "workflow_executions", ["status"])

    op.create_table(
        "workflow_execution_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "execution_id",
            sa.String(length=36),
            sa.ForeignKey("workflow_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("node_id", sa.String(length=128), nullable=False),
        sa.Column("node_type", sa.String(length=50), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column(
            "status",
            sa.Enum("completed", "failed", "skipped", name="execution_log_status"),
            nullable=False,
        ),
        sa.Column("input_data", sa.JSON),
        sa.Column("output_data", sa.JSON),
        sa.Column("error_message", sa.Text),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_workflow_execution_logs_execution_id",
        "workflow_execution_logs",
        ["execution_id"],
    )
    op.create_index(
        "ix_workflow_execution_logs_enrollment_id",
        "workflow_execution_logs",
        ["enrollment_id"],
    )
    op.create_index(
        "ix_workflow_execution_logs_created_at",
        "workflow_execution_logs",
        ["created_at"],
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "contact_id",
            sa.String(length=36),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.Enum(*CHANNELS, name="message_channel"), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("inbound", "outbound", name="message_direction"),
            nullable=False,
        ),
        sa.Column("subject", sa.String(length=500)),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "queued", "scheduled", "sending", "sent", "delivered", "failed", "bounced",
                name="message_status",
            ),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("source", sa.String(length=20), nullable=False, server_default="manual"),
        sa.Column("template_id", sa.String(length=36)),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("from_identity", sa.JSON),
        sa.Column("provider_id", sa.String(length=128), unique=True),
        sa.Column("provider_error", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        sa.Column(
            "workflow_execution_id",
            sa.String(length=36),
            sa.ForeignKey("workflow_executions.id", ondelete="SET NULL"),
        ),
        sa.Column("claim_token", sa.String(length=36)),
        *_timestamps(),
    )
    op.create_index(
        "ix_messages_contact_direction_created",
        "messages",
        ["contact_id", "direction", "created_at"],
    )
    op.create_index(
        "ix_messages_status_scheduled_at", "messages", ["status", "scheduled_at"]
    )
    op.create_index("ix_messages_status", "messages", ["status"])


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("workflow_execution_logs")
    op.drop_table("workflow_executions")
    op.drop_table("workflow_enrollments")
    op.drop_table("workflows")
    op.drop_table("sender_identities")
    op.drop_table("settings")
    op.drop_table("templates")
    op.drop_table("contacts")
