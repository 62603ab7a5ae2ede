"""
Enrollment manager.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import pydantic
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import WorkflowModel, utc_now
from ..db.services import ContactService, EnrollmentService, WorkflowService
from ..errors import GraphError, NotFoundError, ValidationError
from ..schemas.workflow import WorkflowGraph

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentSummary:
    workflow_id: str
    total: int = 0
    enrolled: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "workflow_id": self.workflow_id,
            "total": self.total,
            "enrolled": self.enrolled,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def load_graph(workflow: WorkflowModel) -> WorkflowGraph:
    """Parse a stored graph, turning schema errors into GraphError."""
    try:
        return WorkflowGraph.model_validate(workflow.graph or {})
    except pydantic.ValidationError as e:
        raise GraphError(
            f"Workflow {workflow.id} has an invalid graph: {e.error_count()} error(s)",
            {"workflow_id": workflow.id},
        )


def enroll_contacts(
    db: Session,
    workflow_id: str,
    contact_ids: List[str],
    skip_duplicates: bool = True,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> EnrollmentSummary:
    """Enroll contacts in a workflow.

    The whole batch is rejected when the workflow is missing or disabled or
    the batch is empty or too large. After that, each contact is handled on
    its own: unknown contacts count as failed, contacts already holding an
    active enrollment count as skipped when ``skip_duplicates`` is set, and
    everyone else gets an enrollment plus an execution parked on the
    trigger node and due immediately.
    """
    settings = settings or get_settings()
    now = now or utc_now()

    if not contact_ids:
        raise ValidationError("contact_ids is required and must be a non-empty list")
    max_batch = settings.enrollment_max_batch_size
    if len(contact_ids) > max_batch:
        raise ValidationError(
            f"Maximum batch size is {max_batch} contacts",
            {"received": len(contact_ids), "max": max_batch},
        )

    workflow = WorkflowService(db).get_workflow(workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow", workflow_id)
    if not workflow.is_enabled:
        raise ValidationError("Workflow is not enabled", {"workflow_id": workflow_id})

    trigger_id = load_graph(workflow).trigger.id
    enrollments = EnrollmentService(db)
    existing = ContactService(db).get_existing_ids(contact_ids)
    active = enrollments.active_contact_ids(workflow_id, contact_ids)

    summary = EnrollmentSummary(workflow_id=workflow_id, total=len(contact_ids))
    for contact_id in contact_ids:
        if contact_id not in existing:
            summary.failed += 1
            logger.warning(f"Cannot enroll unknown contact {contact_id} in {workflow_id}")
            continue
        if skip_duplicates and contact_id in active:
            summary.skipped += 1
            continue
        try:
            enrollment = enrollments.create_with_execution(
                workflow_id,
                contact_id,
                trigger_id,
                now=now,
                allow_duplicate=not skip_duplicates,
            )
        except IntegrityError as e:
            if not skip_duplicates:
                summary.failed += 1
                logger.error(f"Failed to enroll contact {contact_id} in {workflow_id}: {e}")
                continue
            # another request enrolled this contact after the active check
            summary.skipped += 1
            active.add(contact_id)
            logger.info(f"Contact {contact_id} already enrolled in {workflow_id}, skipping")
            continue
        except SQLAlchemyError as e:
            summary.failed += 1
            logger.error(f"Failed to enroll contact {contact_id} in {workflow_id}: {e}")
            continue
        active.add(contact_id)
        summary.enrolled += 1
        logger.debug(f"Enrolled contact {contact_id} as enrollment {enrollment.id}")

    logger.info(
        f"Enrollment into {workflow_id}: {summary.enrolled} enrolled, "
        f"{summary.skipped} skipped, {summary.failed} failed"
    )
    return summary
