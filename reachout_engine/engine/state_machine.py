"""
Execution state machine.

``process_execution`` advances one Execution per call. It claims the row
with a conditional UPDATE, walks the workflow graph from the current node
until it reaches a delay, a stop, the end of the graph or an error, and
commits after every node so the Execution row is always a valid resume
point.

Execution states::

    waiting --claim--> active --+--> waiting    (time_delay)
                                +--> completed  (no outgoing edge)
                                +--> stopped    (stop_on_reply matched)
                                +--> failed     (guard or graph error)

A freshly enrolled execution is ``waiting`` on the trigger node with
``last_run_at`` unset, which is what "not started" means here.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import ContactModel, EnrollmentModel, ExecutionModel, utc_now
from ..db.services import (
    ContactService,
    EnrollmentService,
    ExecutionLogService,
    ExecutionService,
    MessageService,
    TemplateService,
    WorkflowService,
)
from ..errors import EngineError, GraphCycleError, GraphError, ValidationError
from ..schemas.workflow import SEND_NODE_TYPES, WorkflowGraph
from .conditions import evaluate_condition, get_contact_field
from .dispatch import MessageDispatcher
from .enrollment import load_graph

logger = logging.getLogger(__name__)


class ExecutionAborted(Exception):
    """A guard failed; the execution ends with ``status``."""

    def __init__(self, reason: str, status: str = "failed"):
        self.reason = reason
        self.status = status
        super().__init__(reason)


@dataclass
class ExecutionResult:
    execution_id: str
    status: str
    success: bool
    processed: bool = True
    nodes_processed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "success": self.success,
            "processed": self.processed,
            "nodes_processed": self.nodes_processed,
            "error": self.error,
        }


@dataclass
class NodeOutcome:
    """What running one node decided."""

    next_node_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    stop_reason: Optional[str] = None
    log_status: str = "completed"
    action: str = "execute"
    output: Dict[str, Any] = field(default_factory=dict)
    execution_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class _Tick:
    execution: ExecutionModel
    enrollment: EnrollmentModel
    contact: ContactModel
    graph: WorkflowGraph
    now: datetime


class WorkflowExecutor:
    """Runs execution ticks against one database session."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        dispatcher: Optional[MessageDispatcher] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or MessageDispatcher(db, self.settings)
        self.executions = ExecutionService(db)
        self.enrollments = EnrollmentService(db)
        self.logs = ExecutionLogService(db)

    def process_execution(
        self, execution_id: str, now: Optional[datetime] = None
    ) -> ExecutionResult:
        """Advance one execution as far as it can go right now.

        Executions that are terminal, not yet due, or claimed by another run
        come back with ``processed=False`` and nothing is written.
        """
        now = now or utc_now()
        execution = self.executions.get_execution(execution_id)
        if execution is None:
            return ExecutionResult(
                execution_id, "failed", False, processed=False, error="Execution not found"
            )
        if execution.is_terminal:
            return ExecutionResult(execution_id, execution.status, True, processed=False)

        if self.executions.claim(execution_id, now) is None:
            self.db.refresh(execution)
            return ExecutionResult(execution_id, execution.status, True, processed=False)

        self.db.refresh(execution)
        logger.info(
            f"Claimed execution {execution_id} at node {execution.current_node_id} "
            f"(attempt {execution.attempts})"
        )

        nodes_processed = 0
        try:
            tick = self._load(execution, now)
            execution.last_run_at = now
            self.db.commit()
            nodes_processed = self._run(tick)
        except ExecutionAborted as e:
            self._finish(execution, e.status, error=e.reason)
            return ExecutionResult(
                execution_id, e.status, False, nodes_processed=nodes_processed, error=e.reason
            )
        except EngineError as e:
            logger.warning(f"Execution {execution_id} failed: {e.code} {e.message}")
            self._finish(execution, "failed", error=e.message)
            return ExecutionResult(
                execution_id, "failed", False, nodes_processed=nodes_processed, error=e.message
            )
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Unexpected error processing execution {execution_id}: {e}")
            self._finish(execution, "failed", error=str(e) or e.__class__.__name__)
            return ExecutionResult(
                execution_id, "failed", False, nodes_processed=nodes_processed, error=str(e)
            )

        success = execution.status != "failed"
        return ExecutionResult(
            execution_id,
            execution.status,
            success,
            nodes_processed=nodes_processed,
            error=execution.error_message,
        )

    def _load(self, execution: ExecutionModel, now: datetime) -> _Tick:
        enrollment = execution.enrollment
        if enrollment is None:
            raise ExecutionAborted("Enrollment not found")
        if enrollment.status != "active":
            raise ExecutionAborted(f"Enrollment is {enrollment.status}", status="stopped")

        contact = ContactService(self.db).get_contact(enrollment.contact_id)
        if contact is None:
            raise ExecutionAborted("Contact not found")

        workflow = WorkflowService(self.db).get_workflow(enrollment.workflow_id)
        if workflow is None:
            raise ExecutionAborted("Workflow not found")
        if not workflow.is_enabled:
            raise ExecutionAborted("Workflow is disabled")

        return _Tick(execution, enrollment, contact, load_graph(workflow), now)

    def _run(self, tick: _Tick) -> int:
        execution = tick.execution
        cap = self.settings.max_node_iterations
        processed = 0

        while True:
            if processed >= cap:
                raise GraphCycleError(
                    f"Exceeded {cap} nodes in one run (possible cycle)",
                    {"execution_id": execution.id, "node_id": execution.current_node_id},
                )

            node_id = execution.current_node_id
            node = tick.graph.node(node_id) if node_id else None
            if node is None:
                raise GraphError(
                    f"Node '{node_id}' not found in workflow",
                    {"execution_id": execution.id},
                )

            started = time.monotonic()
            try:
                outcome = self._run_node(node, tick)
            except EngineError as e:
                self.logs.record(
                    execution,
                    node.id,
                    node.type,
                    "execute",
                    "failed",
                    input_data=node.model_dump(mode="json"),
                    error_message=e.message,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                self.db.commit()
                raise
            processed += 1

            self.logs.record(
                execution,
                node.id,
                node.type,
                outcome.action,
                outcome.log_status,
                input_data=node.model_dump(mode="json"),
                output_data=outcome.output or None,
                error_message=outcome.error,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            if outcome.execution_data:
                execution.execution_data = {
                    **(execution.execution_data or {}),
                    **outcome.execution_data,
                }

            if outcome.stop_reason:
                self._finish(execution, "stopped", reason=outcome.stop_reason)
                return processed

            if outcome.log_status == "failed" and not self.settings.advance_on_send_failure:
                self._finish(execution, "failed", error=outcome.error)
                return processed

            if outcome.next_node_id is None:
                self._finish(execution, "completed")
                return processed

            execution.current_node_id = outcome.next_node_id
            if outcome.wait_until is not None:
                execution.status = "waiting"
                execution.next_run_at = outcome.wait_until
                execution.error_message = None
                self.db.commit()
                logger.info(
                    f"Execution {execution.id} waiting until "
                    f"{outcome.wait_until.isoformat()} at node {outcome.next_node_id}"
                )
                return processed

            self.db.commit()

    def _run_node(self, node, tick: _Tick) -> NodeOutcome:
        graph = tick.graph

        if node.type == "trigger_start":
            return NodeOutcome(
                next_node_id=graph.next_node_id(node.id),
                output={"action": "workflow_started"},
            )

        if node.type == "time_delay":
            wait_until = tick.now + node.as_timedelta()
            return NodeOutcome(
                next_node_id=graph.next_node_id(node.id),
                wait_until=wait_until,
                output={
                    "action": "delay_scheduled",
                    "duration": node.duration,
                    "unit": node.unit,
                    "scheduled_for": wait_until.isoformat(),
                },
            )

        if node.type == "conditional_split":
            field_value = get_contact_field(tick.contact, node.field)
            result = evaluate_condition(field_value, node.operator, node.value)
            handle = "yes" if result else "no"
            next_id = graph.next_node_id(node.id, handle)
            if next_id is None:
                raise GraphError(
                    f"Conditional node '{node.id}' has no '{handle}' edge",
                    {"node_id": node.id, "branch": handle},
                )
            return NodeOutcome(
                next_node_id=next_id,
                output={
                    "action": "condition_evaluated",
                    "field": node.field,
                    "operator": node.operator,
                    "value": node.value,
                    "field_value": field_value,
                    "result": result,
                    "branch": handle,
                },
                execution_data={"last_condition_result": result},
            )

        if node.type in SEND_NODE_TYPES:
            return self._send(node, tick)

        if node.type == "update_status":
            old_status = tick.contact.status
            ContactService(self.db).update_status(tick.contact.id, node.new_status)
            return NodeOutcome(
                next_node_id=graph.next_node_id(node.id),
                output={
                    "action": "status_updated",
                    "old_status": old_status,
                    "new_status": node.new_status,
                },
            )

        if node.type == "stop_on_reply":
            reply = MessageService(self.db).first_inbound_since(
                tick.contact.id, tick.enrollment.enrolled_at, node.channel
            )
            if reply is not None:
                return NodeOutcome(
                    action="stop",
                    stop_reason=f"Contact replied via {reply.channel}",
                    output={
                        "action": "workflow_stopped",
                        "reason": "contact_replied",
                        "reply_channel": reply.channel,
                    },
                    execution_data={
                        "stopped_by_reply": True,
                        "reply_channel": reply.channel,
                    },
                )
            return NodeOutcome(
                next_node_id=graph.next_node_id(node.id),
                output={"action": "no_reply_detected", "channel_checked": node.channel},
            )

        raise GraphError(f"Unsupported node type: {node.type}", {"node_id": node.id})

    def _send(self, node, tick: _Tick) -> NodeOutcome:
        channel = "sms" if node.type == "send_sms" else "email"
        next_id = tick.graph.next_node_id(node.id)
        contact = tick.contact

        if contact.do_not_contact:
            raise ExecutionAborted("Contact is marked as Do Not Contact")

        if (channel == "sms" and not contact.phone) or (channel == "email" and not contact.email):
            reason = "no_phone_number" if channel == "sms" else "no_email"
            return NodeOutcome(
                next_node_id=next_id,
                log_status="skipped",
                output={"action": f"{channel}_skipped", "reason": reason},
            )

        template = TemplateService(self.db).get_template(node.template_id)
        if template is None or not (template.body or "").strip():
            return NodeOutcome(
                next_node_id=next_id,
                log_status="skipped",
                output={"action": f"{channel}_skipped", "reason": "no_template"},
            )

        subject = None
        if channel == "email":
            subject = node.subject_override or template.subject

        try:
            message = self.dispatcher.send(
                contact_id=contact.id,
                channel=channel,
                body=template.body,
                subject=subject,
                template_id=template.id,
                from_identity_id=node.from_identity_id,
                source="workflow",
                workflow_execution_id=tick.execution.id,
                now=tick.now,
            )
        except ValidationError as e:
            return NodeOutcome(
                next_node_id=next_id,
                log_status="skipped",
                output={"action": f"{channel}_skipped", "reason": e.message},
            )

        if message.status == "failed":
            return NodeOutcome(
                next_node_id=next_id,
                log_status="failed",
                error=message.provider_error,
                output={
                    "action": f"{channel}_failed",
                    "message_id": message.id,
                    "error": message.provider_error,
                },
            )

        sent = list((tick.execution.execution_data or {}).get("sent_message_ids", []))
        sent.append(message.id)
        return NodeOutcome(
            next_node_id=next_id,
            output={
                "action": f"{channel}_sent",
                "message_id": message.id,
                "provider_id": message.provider_id,
            },
            execution_data={"sent_message_ids": sent},
        )

    def _finish(
        self,
        execution: ExecutionModel,
        status: str,
        error: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Put the execution and its enrollment into a terminal state."""
        now = utc_now()
        execution.status = status
        execution.next_run_at = None
        execution.error_message = error
        enrollment = execution.enrollment
        if enrollment is not None and enrollment.status == "active":
            self.enrollments.finalize(enrollment, status, reason=reason or error, now=now)
        self.db.commit()
        logger.info(
            f"Execution {execution.id} {status}"
            + (f": {error or reason}" if (error or reason) else "")
        )


def process_execution(
    db: Session,
    execution_id: str,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    dispatcher: Optional[MessageDispatcher] = None,
) -> ExecutionResult:
    """Advance one execution. See ``WorkflowExecutor.process_execution``."""
    return WorkflowExecutor(db, settings=settings, dispatcher=dispatcher).process_execution(
        execution_id, now=now
    )
