"""
Scheduler / poller.

Each call processes one bounded batch and returns; there is no long-lived
loop. Overlapping runs are safe because every execution and message is
claimed with a conditional UPDATE before it is touched.
"""

import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import utc_now
from ..db.services import ExecutionService
from ..errors import AuthorizationError, ValidationError
from .dispatch import MessageDispatcher
from .state_machine import WorkflowExecutor

logger = logging.getLogger(__name__)


def authorize_trigger(authorization: Optional[str], settings: Optional[Settings] = None) -> None:
    """Check a ``Bearer <secret>`` header against the configured secret.

    An unset secret rejects every caller.
    """
    settings = settings or get_settings()
    secret = settings.scheduler_secret
    if not secret:
        raise AuthorizationError("Scheduler secret is not configured")
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthorizationError("Missing bearer token")
    provided = authorization[len("Bearer "):].strip()
    if not hmac.compare_digest(provided.encode(), secret.encode()):
        raise AuthorizationError("Invalid bearer token")


def resolve_batch_size(
    requested: Optional[int], default: int, settings: Optional[Settings] = None
) -> int:
    settings = settings or get_settings()
    if requested is None:
        return default
    if requested < 1:
        raise ValidationError("batch_size must be at least 1")
    return min(requested, settings.scheduler_max_batch_size)


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    status_breakdown: Dict[str, int] = field(
        default_factory=lambda: {"completed": 0, "stopped": 0, "waiting": 0, "failed": 0}
    )
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "status_breakdown": dict(self.status_breakdown),
            "duration_ms": self.duration_ms,
        }


class Scheduler:
    """Finds due work and hands it to the state machine or the message sweep."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        dispatcher: Optional[MessageDispatcher] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or MessageDispatcher(db, self.settings)
        self.executor = WorkflowExecutor(db, self.settings, self.dispatcher)

    def run_executions(
        self, batch_size: Optional[int] = None, now: Optional[datetime] = None
    ) -> RunSummary:
        started = time.monotonic()
        now = now or utc_now()
        limit = resolve_batch_size(batch_size, self.settings.scheduler_batch_size, self.settings)
        summary = RunSummary()

        due = ExecutionService(self.db).get_due_ids(now, limit)
        if not due:
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            logger.debug("No executions due")
            return summary

        for execution_id in due:
            try:
                result = self.executor.process_execution(execution_id, now=now)
            except Exception as e:
                self.db.rollback()
                summary.processed += 1
                summary.failed += 1
                summary.status_breakdown["failed"] += 1
                logger.exception(f"Error processing execution {execution_id}: {e}")
                continue

            if not result.processed:
                summary.skipped += 1
                continue

            summary.processed += 1
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
            if result.status in summary.status_breakdown:
                summary.status_breakdown[result.status] += 1

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Scheduler run: {summary.processed} processed, {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.skipped} skipped in {summary.duration_ms}ms"
        )
        return summary

    def run_message_sweep(
        self, batch_size: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        started = time.monotonic()
        limit = resolve_batch_size(
            batch_size, self.settings.message_sweep_batch_size, self.settings
        )
        sweep = self.dispatcher.sweep_scheduled(limit=limit, now=now)
        data: Dict[str, Any] = {"success": True}
        data.update(sweep.to_dict())
        data["duration_ms"] = int((time.monotonic() - started) * 1000)
        return data


def run_scheduler(
    db: Session,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    dispatcher: Optional[MessageDispatcher] = None,
) -> RunSummary:
    """Process one batch of due executions."""
    return Scheduler(db, settings, dispatcher).run_executions(batch_size, now=now)
