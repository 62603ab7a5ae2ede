"""
Database services for the ReachOut workflow engine.

Each service wraps a SQLAlchemy ``Session``. Execution and message claims are
conditional UPDATEs: the row is only taken if it is still in the expected
state, and the rowcount tells the caller whether it won.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from ..schemas.workflow import WorkflowCreate, WorkflowUpdate
from .models import (
    ContactModel,
    EnrollmentModel,
    ExecutionLogModel,
    ExecutionModel,
    MessageModel,
    SenderIdentityModel,
    SettingModel,
    TemplateModel,
    WorkflowModel,
    utc_now,
)

# Forward-only ordering of message statuses. Terminal statuses share a rank
# so a late "delivered" cannot overwrite "bounced" and vice versa.
MESSAGE_STATUS_RANK = {
    "queued": 0,
    "scheduled": 0,
    "sending": 1,
    "sent": 2,
    "delivered": 3,
    "failed": 3,
    "bounced": 3,
}


class ContactService:
    """Service for reading and mutating contacts."""

    def __init__(self, db: Session):
        self.db = db

    def create_contact(self, **fields: Any) -> ContactModel:
        """Create a new contact."""
        contact = ContactModel(**fields)
        self.db.add(contact)
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def get_contact(self, contact_id: str) -> Optional[ContactModel]:
        """Get a contact by ID."""
        return self.db.query(ContactModel).filter(ContactModel.id == contact_id).first()

    def get_existing_ids(self, contact_ids: Iterable[str]) -> set:
        ids = list(contact_ids)
        if not ids:
            return set()
        rows = self.db.query(ContactModel.id).filter(ContactModel.id.in_(ids)).all()
        return {row[0] for row in rows}

    def update_status(self, contact_id: str, status: str) -> Optional[ContactModel]:
        """Set the contact's status field."""
        contact = self.get_contact(contact_id)
        if not contact:
            return None
        contact.status = status
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def find_by_phone(self, candidates: Iterable[str]) -> Optional[ContactModel]:
        """Find the first contact whose stored phone matches any candidate form."""
        forms = [c for c in dict.fromkeys(candidates) if c]
        if not forms:
            return None
        return (
            self.db.query(ContactModel)
            .filter(ContactModel.phone.in_(forms))
            .order_by(ContactModel.created_at)
            .first()
        )

    def find_by_email(self, email: str) -> Optional[ContactModel]:
        """Find a contact by email address, ignoring case."""
        if not email:
            return None
        return (
            self.db.query(ContactModel)
            .filter(func.lower(ContactModel.email) == email.strip().lower())
            .order_by(ContactModel.created_at)
            .first()
        )


class TemplateService:
    """Service for message templates."""

    def __init__(self, db: Session):
        self.db = db

    def create_template(
        self, name: str, channel: str, body: str, subject: Optional[str] = None
    ) -> TemplateModel:
        """Create a new template."""
        template = TemplateModel(name=name, channel=channel, body=body, subject=subject)
        self.db.add(template)
        self.db.commit()
        self.db.refresh(template)
        return template

    def get_template(self, template_id: str) -> Optional[TemplateModel]:
        """Get a template by ID."""
        return (
            self.db.query(TemplateModel).filter(TemplateModel.id == template_id).first()
        )


class SettingsService:
    """Key/value settings store. Provider credentials are read per send."""

    def __init__(self, db: Session):
        self.db = db

    def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        """Return a dict with every requested key (missing ones as None)."""
        keys = list(keys)
        rows = self.db.query(SettingModel).filter(SettingModel.key.in_(keys)).all()
        found = {row.key: row.value for row in rows}
        return {key: found.get(key) or None for key in keys}

    def set(self, key: str, value: Optional[str]) -> None:
        row = self.db.query(SettingModel).filter(SettingModel.key == key).first()
        if row is None:
            self.db.add(SettingModel(key=key, value=value))
        else:
            row.value = value
        self.db.commit()


class SenderIdentityService:
    """Service for verified from-addresses."""

    def __init__(self, db: Session):
        self.db = db

    def create_identity(
        self,
        channel: str,
        address: str,
        label: Optional[str] = None,
        is_default: bool = False,
    ) -> SenderIdentityModel:
        identity = SenderIdentityModel(
            channel=channel, address=address, label=label, is_default=is_default
        )
        self.db.add(identity)
        self.db.commit()
        self.db.refresh(identity)
        return identity

    def get_identity(self, identity_id: str) -> Optional[SenderIdentityModel]:
        return (
            self.db.query(SenderIdentityModel)
            .filter(SenderIdentityModel.id == identity_id)
            .first()
        )

    def get_default(self, channel: str) -> Optional[SenderIdentityModel]:
        """Default identity for a channel, if one is flagged."""
        return (
            self.db.query(SenderIdentityModel)
            .filter(
                SenderIdentityModel.channel == channel,
                SenderIdentityModel.is_default.is_(True),
            )
            .order_by(SenderIdentityModel.created_at)
            .first()
        )


class WorkflowService:
    """Service for managing workflows in the database."""

    def __init__(self, db: Session):
        self.db = db

    def create_workflow(self, payload: WorkflowCreate) -> WorkflowModel:
        """Create a workflow from an already validated payload."""
        workflow = WorkflowModel(
            name=payload.name,
            description=payload.description,
            is_enabled=payload.is_enabled,
            graph=payload.graph.model_dump(mode="json"),
        )
        self.db.add(workflow)
        self.db.commit()
        self.db.refresh(workflow)
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowModel]:
        """Get a workflow by ID."""
        return (
            self.db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
        )

    def update_workflow(
        self, workflow_id: str, payload: WorkflowUpdate
    ) -> Optional[WorkflowModel]:
        """Apply a partial update. Returns None if the workflow is missing."""
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            return None

        if payload.name is not None:
            workflow.name = payload.name
        if payload.description is not None:
            workflow.description = payload.description
        if payload.is_enabled is not None:
            workflow.is_enabled = payload.is_enabled
        if payload.graph is not None:
            workflow.graph = payload.graph.model_dump(mode="json")

        self.db.commit()
        self.db.refresh(workflow)
        return workflow


class EnrollmentService:
    """Service for enrollments."""

    def __init__(self, db: Session):
        self.db = db

    def get_enrollment(self, enrollment_id: str) -> Optional[EnrollmentModel]:
        return (
            self.db.query(EnrollmentModel)
            .filter(EnrollmentModel.id == enrollment_id)
            .first()
        )

    def active_contact_ids(self, workflow_id: str, contact_ids: Iterable[str]) -> set:
        """Subset of ``contact_ids`` that already hold an active enrollment."""
        ids = list(contact_ids)
        if not ids:
            return set()
        rows = (
            self.db.query(EnrollmentModel.contact_id)
            .filter(
                EnrollmentModel.workflow_id == workflow_id,
                EnrollmentModel.contact_id.in_(ids),
                EnrollmentModel.status == "active",
            )
            .all()
        )
        return {row[0] for row in rows}

    def create_with_execution(
        self,
        workflow_id: str,
        contact_id: str,
        trigger_node_id: str,
        now: Optional[datetime] = None,
        allow_duplicate: bool = False,
    ) -> EnrollmentModel:
        """Create an enrollment and its execution in one transaction.

        The execution starts waiting on the trigger node and is due now, so
        the next scheduler run picks it up.

        Without ``allow_duplicate`` a second active enrollment for the same
        workflow and contact violates a unique index and raises IntegrityError.
        """
        now = now or utc_now()
        enrollment = EnrollmentModel(
            workflow_id=workflow_id,
            contact_id=contact_id,
            status="active",
            enrolled_at=now,
            allow_duplicate=allow_duplicate,
        )
        enrollment.execution = ExecutionModel(
            current_node_id=trigger_node_id,
            status="waiting",
            next_run_at=now,
            execution_data={},
        )
        self.db.add(enrollment)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(enrollment)
        return enrollment

    def get_for_contact(
        self, workflow_id: str, contact_id: str
    ) -> Optional[EnrollmentModel]:
        """Most recent enrollment of a contact in a workflow."""
        return (
            self.db.query(EnrollmentModel)
            .filter(
                EnrollmentModel.workflow_id == workflow_id,
                EnrollmentModel.contact_id == contact_id,
            )
            .order_by(EnrollmentModel.enrolled_at.desc())
            .first()
        )

    def count_by_status(self, workflow_id: str) -> Dict[str, int]:
        rows = (
            self.db.query(EnrollmentModel.status, func.count(EnrollmentModel.id))
            .filter(EnrollmentModel.workflow_id == workflow_id)
            .group_by(EnrollmentModel.status)
            .all()
        )
        counts = {"active": 0, "completed": 0, "stopped": 0, "failed": 0}
        counts.update({status: count for status, count in rows})
        counts["total"] = sum(v for k, v in counts.items() if k != "total")
        return counts

    def finalize(
        self,
        enrollment: EnrollmentModel,
        status: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Mirror a terminal execution state onto the enrollment (no commit)."""
        now = now or utc_now()
        enrollment.status = status
        if status == "completed":
            enrollment.completed_at = now
        else:
            enrollment.stopped_at = now
            enrollment.stop_reason = reason

    def reactivate(self, enrollment: EnrollmentModel) -> None:
        enrollment.status = "active"
        enrollment.completed_at = None
        enrollment.stopped_at = None
        enrollment.stop_reason = None


class ExecutionService:
    """Service for executions, including the scheduler claim."""

    def __init__(self, db: Session):
        self.db = db

    def get_execution(self, execution_id: str) -> Optional[ExecutionModel]:
        """Get an execution by ID."""
        return (
            self.db.query(ExecutionModel)
            .filter(ExecutionModel.id == execution_id)
            .first()
        )

    def _due_clause(self, now: datetime):
        return or_(
            and_(ExecutionModel.status == "waiting", ExecutionModel.next_run_at <= now),
            and_(
                ExecutionModel.status == "active",
                ExecutionModel.last_run_at.is_(None),
                ExecutionModel.claim_token.is_(None),
            ),
        )

    def get_due_ids(self, now: datetime, limit: int) -> List[str]:
        """IDs of executions ready to run, oldest due first."""
        rows = (
            self.db.query(ExecutionModel.id)
            .filter(self._due_clause(now))
            .order_by(ExecutionModel.next_run_at.asc(), ExecutionModel.created_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def count_due(self, now: datetime) -> int:
        return self.db.query(func.count(ExecutionModel.id)).filter(
            self._due_clause(now)
        ).scalar() or 0

    def claim(self, execution_id: str, now: datetime) -> Optional[str]:
        """Atomically take a due execution.

        Only updates the row if it is still due, so two overlapping runs can
        never both win. Returns the claim token, or None if the row was not
        taken.
        """
        token = str(uuid.uuid4())
        result = self.db.execute(
            update(ExecutionModel)
            .where(ExecutionModel.id == execution_id)
            .where(self._due_clause(now))
            .values(
                status="active",
                next_run_at=None,
                claim_token=token,
                claimed_at=now,
                attempts=ExecutionModel.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            return None
        return token

    def reschedule(
        self, execution: ExecutionModel, node_id: str, now: Optional[datetime] = None
    ) -> Optional[ExecutionModel]:
        """Point an execution at ``node_id`` and make it due now.

        Used by operators to resume or replay an execution from a given node.
        The enrollment is reactivated alongside. Returns None, changing
        nothing, while a scheduler run holds the execution.
        """
        now = now or utc_now()
        result = self.db.execute(
            update(ExecutionModel)
            .where(ExecutionModel.id == execution.id)
            .where(ExecutionModel.status != "active")
            .values(
                current_node_id=node_id,
                status="waiting",
                next_run_at=now,
                error_message=None,
                claim_token=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return None
        if execution.enrollment is not None:
            EnrollmentService(self.db).reactivate(execution.enrollment)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(execution)
        return execution

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(ExecutionModel.status, func.count(ExecutionModel.id))
            .group_by(ExecutionModel.status)
            .all()
        )
        return {status: count for status, count in rows}


class ExecutionLogService:
    """Append-only per-node audit entries."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        execution: ExecutionModel,
        node_id: str,
        node_type: str,
        action: str,
        status: str,
        input_data: Optional[Dict[str, Any]] = None,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> ExecutionLogModel:
        """Add a log entry to the session. Committed with the execution."""
        entry = ExecutionLogModel(
            execution_id=execution.id,
            enrollment_id=execution.enrollment_id,
            node_id=node_id,
            node_type=node_type,
            action=action,
            status=status,
            input_data=input_data,
            output_data=output_data,
            error_message=error_message,
            duration_ms=duration_ms,
        )
        self.db.add(entry)
        return entry

    def get_logs(self, execution_id: str) -> List[ExecutionLogModel]:
        return (
            self.db.query(ExecutionLogModel)
            .filter(ExecutionLogModel.execution_id == execution_id)
            .order_by(ExecutionLogModel.created_at.asc())
            .all()
        )


class MessageService:
    """Service for messages."""

    def __init__(self, db: Session):
        self.db = db

    def create_message(self, **fields: Any) -> MessageModel:
        message = MessageModel(**fields)
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    def get_message(self, message_id: str) -> Optional[MessageModel]:
        return self.db.query(MessageModel).filter(MessageModel.id == message_id).first()

    def get_by_provider_id(self, provider_id: str) -> Optional[MessageModel]:
        if not provider_id:
            return None
        return (
            self.db.query(MessageModel)
            .filter(MessageModel.provider_id == provider_id)
            .first()
        )

    def claim(
        self,
        message_id: str,
        expected_status: str,
        now: datetime,
        new_status: str = "sending",
    ) -> bool:
        """Move a message to ``new_status`` if it is still ``expected_status``.

        With the default target this is the at-most-once guard in front of
        every provider call.
        """
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .where(MessageModel.status == expected_status)
        )
        if expected_status == "scheduled":
            stmt = stmt.where(MessageModel.scheduled_at <= now)
        result = self.db.execute(
            stmt.values(
                status=new_status,
                claim_token=str(uuid.uuid4()),
                updated_at=now,
            ).execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def get_due_scheduled_ids(self, now: datetime, limit: int) -> List[str]:
        rows = (
            self.db.query(MessageModel.id)
            .filter(
                MessageModel.status == "scheduled",
                MessageModel.direction == "outbound",
                MessageModel.scheduled_at <= now,
            )
            .order_by(MessageModel.scheduled_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def first_inbound_since(
        self, contact_id: str, since: datetime, channel: Optional[str] = None
    ) -> Optional[MessageModel]:
        """Earliest message the contact sent us after ``since``, if any."""
        query = self.db.query(MessageModel).filter(
            MessageModel.contact_id == contact_id,
            MessageModel.direction == "inbound",
            MessageModel.created_at > since,
        )
        if channel and channel != "any":
            query = query.filter(MessageModel.channel == channel)
        return query.order_by(MessageModel.created_at.asc()).first()

    def has_inbound_since(
        self, contact_id: str, since: datetime, channel: Optional[str] = None
    ) -> bool:
        return self.first_inbound_since(contact_id, since, channel) is not None

    def apply_status(
        self,
        message: MessageModel,
        status: str,
        now: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Forward-only status update.

        Returns True if the status changed. Re-applying the current status
        only refreshes ``updated_at``; anything lower-ranked is ignored.
        """
        now = now or utc_now()
        current_rank = MESSAGE_STATUS_RANK.get(message.status, 0)
        new_rank = MESSAGE_STATUS_RANK.get(status, 0)

        if status == message.status or new_rank <= current_rank:
            message.updated_at = now
            self.db.commit()
            return False

        message.status = status
        message.updated_at = now
        if status == "sent" and message.sent_at is None:
            message.sent_at = now
        elif status == "delivered":
            message.delivered_at = now
            if message.sent_at is None:
                message.sent_at = now
        elif status in ("failed", "bounced"):
            message.failed_at = now
            if error:
                message.provider_error = error

        self.db.commit()
        self.db.refresh(message)
        return True

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(MessageModel.status, func.count(MessageModel.id))
            .group_by(MessageModel.status)
            .all()
        )
        return {status: count for status, count in rows}
