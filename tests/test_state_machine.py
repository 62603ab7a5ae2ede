"""Tests for the execution state machine."""

from datetime import timedelta

import pytest
from conftest import NOW, chain

from reachout_engine.db.models import MessageModel
from reachout_engine.db.services import (
    ExecutionLogService,
    ExecutionService,
    MessageService,
    WorkflowService,
)
from reachout_engine.engine.state_machine import WorkflowExecutor, process_execution
from reachout_engine.schemas.workflow import WorkflowUpdate

TRIGGER = {"id": "start", "type": "trigger_start"}


@pytest.fixture
def executor(db_session, settings, dispatcher):
    return WorkflowExecutor(db_session, settings=settings, dispatcher=dispatcher)


def _reload(db_session, execution_id):
    db_session.expire_all()
    return ExecutionService(db_session).get_execution(execution_id)


def _assert_cursor_invariant(execution):
    assert (execution.next_run_at is not None) == (execution.status == "waiting")


class TestEndToEnd:
    def test_send_then_stop_on_reply(
        self, db_session, settings, dispatcher, adapters, make_contact, make_template,
        make_workflow, enroll,
    ):
        contact = make_contact()
        template = make_template("Hi {{first_name}}, quick question")
        workflow = make_workflow(
            chain(
                TRIGGER,
                {"id": "sms", "type": "send_sms", "template_id": template.id},
                {"id": "stop", "type": "stop_on_reply", "channel": "any"},
            )
        )
        execution = enroll(workflow, contact)

        result = process_execution(
            db_session, execution.id, now=NOW, settings=settings, dispatcher=dispatcher
        )

        assert result.status == "completed"
        assert result.nodes_processed == 3
        assert len(adapters["sms"].sent) == 1
        assert adapters["sms"].sent[0].body == "Hi Ada, quick question"
        assert adapters["sms"].sent[0].to == "+15551234567"

        execution = _reload(db_session, execution.id)
        _assert_cursor_invariant(execution)
        assert execution.enrollment.status == "completed"
        assert execution.enrollment.completed_at is not None
        sent_ids = execution.execution_data["sent_message_ids"]
        assert len(sent_ids) == 1
        message = MessageService(db_session).get_message(sent_ids[0])
        assert message.status == "sent"
        assert message.source == "workflow"
        assert message.workflow_execution_id == execution.id

        dispatcher.record_inbound(contact, "sms", "Tell me more", provider_id="SMinbound1")
        ExecutionService(db_session).reschedule(execution, "stop", now=NOW)

        result = process_execution(
            db_session, execution.id, now=NOW, settings=settings, dispatcher=dispatcher
        )

        assert result.status == "stopped"
        execution = _reload(db_session, execution.id)
        _assert_cursor_invariant(execution)
        assert execution.enrollment.status == "stopped"
        assert execution.enrollment.stop_reason == "Contact replied via sms"
        assert execution.execution_data["stopped_by_reply"] is True
        assert len(adapters["sms"].sent) == 1


class TestTerminalAndDelay:
    def test_completes_exactly_once(self, db_session, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(chain(TRIGGER, {"id": "tag", "type": "update_status", "new_status": "contacted"}))
        execution = enroll(workflow, make_contact())

        first = executor.process_execution(execution.id, now=NOW)
        assert first.processed is True
        assert first.status == "completed"
        logs_after_first = len(ExecutionLogService(db_session).get_logs(execution.id))

        for _ in range(3):
            again = executor.process_execution(execution.id, now=NOW + timedelta(days=1))
            assert again.processed is False
            assert again.status == "completed"

        assert len(ExecutionLogService(db_session).get_logs(execution.id)) == logs_after_first
        execution = _reload(db_session, execution.id)
        assert execution.attempts == 1
        _assert_cursor_invariant(execution)

    def test_one_day_delay_waits(self, db_session, executor, make_contact, make_workflow, enroll):
        contact = make_contact()
        workflow = make_workflow(
            chain(
                TRIGGER,
                {"id": "wait", "type": "time_delay", "duration": 1, "unit": "days"},
                {"id": "tag", "type": "update_status", "new_status": "followed_up"},
            )
        )
        execution = enroll(workflow, contact)

        result = executor.process_execution(execution.id, now=NOW)
        assert result.status == "waiting"
        execution = _reload(db_session, execution.id)
        _assert_cursor_invariant(execution)
        assert execution.current_node_id == "tag"
        assert execution.next_run_at >= NOW + timedelta(hours=24)

        early = NOW + timedelta(hours=23, minutes=59)
        assert execution.id not in ExecutionService(db_session).get_due_ids(early, 10)
        assert executor.process_execution(execution.id, now=early).processed is False

        result = executor.process_execution(execution.id, now=NOW + timedelta(hours=24))
        assert result.status == "completed"
        db_session.expire_all()
        assert contact.status == "followed_up"

    def test_delay_without_next_node_completes(self, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(
            chain(TRIGGER, {"id": "wait", "type": "time_delay", "duration": 5, "unit": "minutes"})
        )
        execution = enroll(workflow, make_contact())
        assert executor.process_execution(execution.id, now=NOW).status == "completed"


class TestBranching:
    @pytest.fixture
    def branch_workflow(self, make_workflow):
        return make_workflow(
            {
                "nodes": [
                    TRIGGER,
                    {"id": "split", "type": "conditional_split", "field": "nickname",
                     "operator": "is_empty", "value": ""},
                    {"id": "empty", "type": "update_status", "new_status": "no_nickname"},
                    {"id": "filled", "type": "update_status", "new_status": "has_nickname"},
                ],
                "edges": [
                    {"source": "start", "target": "split"},
                    {"source": "split", "target": "empty", "source_handle": "yes"},
                    {"source": "split", "target": "filled", "source_handle": "no"},
                ],
            }
        )

    @pytest.mark.parametrize(
        "nickname,expected_status,branch",
        [("", "no_nickname", "yes"), ("x", "has_nickname", "no")],
    )
    def test_is_empty_routes(
        self, db_session, executor, make_contact, enroll, branch_workflow,
        nickname, expected_status, branch,
    ):
        contact = make_contact(custom_fields={"nickname": nickname})
        execution = enroll(branch_workflow, contact)

        assert executor.process_execution(execution.id, now=NOW).status == "completed"

        db_session.expire_all()
        assert contact.status == expected_status
        split_log = next(
            entry for entry in ExecutionLogService(db_session).get_logs(execution.id)
            if entry.node_id == "split"
        )
        assert split_log.output_data["branch"] == branch
        execution = _reload(db_session, execution.id)
        assert execution.execution_data["last_condition_result"] is (branch == "yes")

    def test_missing_branch_edge_fails(self, db_session, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(
            {
                "nodes": [
                    TRIGGER,
                    {"id": "split", "type": "conditional_split", "field": "status",
                     "operator": "equals", "value": "vip"},
                    {"id": "vip", "type": "update_status", "new_status": "vip_contacted"},
                ],
                "edges": [
                    {"source": "start", "target": "split"},
                    {"source": "split", "target": "vip", "source_handle": "yes"},
                ],
            }
        )
        execution = enroll(workflow, make_contact(status="new"))

        result = executor.process_execution(execution.id, now=NOW)

        assert result.status == "failed"
        assert "no 'no' edge" in result.error
        execution = _reload(db_session, execution.id)
        _assert_cursor_invariant(execution)
        assert execution.enrollment.status == "failed"
        split_log = next(
            e for e in ExecutionLogService(db_session).get_logs(execution.id) if e.node_id == "split"
        )
        assert split_log.status == "failed"


class TestSendGuards:
    def test_do_not_contact_never_calls_adapter(
        self, db_session, executor, adapters, make_contact, make_template, make_workflow, enroll
    ):
        template = make_template()
        workflow = make_workflow(
            chain(TRIGGER, {"id": "sms", "type": "send_sms", "template_id": template.id})
        )
        contact = make_contact(do_not_contact=True)
        execution = enroll(workflow, contact)

        result = executor.process_execution(execution.id, now=NOW)

        assert result.status == "failed"
        assert adapters["sms"].sent == []
        assert db_session.query(MessageModel).filter(MessageModel.status != "failed").count() == 0
        assert _reload(db_session, execution.id).enrollment.status == "failed"

    def test_missing_phone_is_skipped(
        self, db_session, executor, adapters, make_contact, make_template, make_workflow, enroll
    ):
        template = make_template()
        workflow = make_workflow(
            chain(
                TRIGGER,
                {"id": "sms", "type": "send_sms", "template_id": template.id},
                {"id": "tag", "type": "update_status", "new_status": "touched"},
            )
        )
        execution = enroll(workflow, make_contact(phone=None))

        assert executor.process_execution(execution.id, now=NOW).status == "completed"
        assert adapters["sms"].sent == []
        sms_log = next(
            e for e in ExecutionLogService(db_session).get_logs(execution.id) if e.node_id == "sms"
        )
        assert sms_log.status == "skipped"
        assert sms_log.output_data["reason"] == "no_phone_number"

    def test_missing_template_is_skipped(self, db_session, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(
            chain(TRIGGER, {"id": "email", "type": "send_email", "template_id": "gone"})
        )
        execution = enroll(workflow, make_contact())

        assert executor.process_execution(execution.id, now=NOW).status == "completed"
        log = next(
            e for e in ExecutionLogService(db_session).get_logs(execution.id) if e.node_id == "email"
        )
        assert log.status == "skipped"
        assert log.output_data["reason"] == "no_template"

    def test_email_uses_subject_override(
        self, executor, adapters, make_contact, make_template, make_workflow, enroll
    ):
        template = make_template("Hello {{first_name}}", channel="email", subject="Template subject")
        workflow = make_workflow(
            chain(
                TRIGGER,
                {"id": "email", "type": "send_email", "template_id": template.id,
                 "subject_override": "For {{first_name}}"},
            )
        )
        execution = enroll(workflow, make_contact())

        executor.process_execution(execution.id, now=NOW)

        assert adapters["email"].sent[0].subject == "For Ada"
        assert adapters["email"].sent[0].to == "ada@example.com"

    @pytest.mark.parametrize("advance,expected", [(True, "completed"), (False, "failed")])
    def test_provider_failure_policy(
        self, db_session, settings, adapters, make_contact, make_template, make_workflow, enroll,
        advance, expected,
    ):
        from reachout_engine.engine.dispatch import MessageDispatcher

        adapters["sms"].fail_with = "Carrier rejected"
        policy = settings.model_copy(update={"advance_on_send_failure": advance})
        dispatcher = MessageDispatcher(db_session, policy, adapter_factory=adapters.__getitem__)
        template = make_template()
        workflow = make_workflow(
            chain(TRIGGER, {"id": "sms", "type": "send_sms", "template_id": template.id})
        )
        execution = enroll(workflow, make_contact())

        result = WorkflowExecutor(db_session, policy, dispatcher).process_execution(
            execution.id, now=NOW
        )

        assert result.status == expected
        message = db_session.query(MessageModel).one()
        assert message.status == "failed"
        assert message.provider_error == "Carrier rejected"

    def test_unexpected_adapter_error_still_advances(
        self, db_session, settings, make_contact, make_template, make_workflow, enroll
    ):
        from reachout_engine.engine.dispatch import MessageDispatcher

        def broken_factory(channel):
            raise KeyError(channel)

        dispatcher = MessageDispatcher(db_session, settings, adapter_factory=broken_factory)
        template = make_template()
        workflow = make_workflow(
            chain(TRIGGER, {"id": "sms", "type": "send_sms", "template_id": template.id})
        )
        execution = enroll(workflow, make_contact())

        result = WorkflowExecutor(db_session, settings, dispatcher).process_execution(
            execution.id, now=NOW
        )

        assert result.status == "completed"
        assert db_session.query(MessageModel).one().status == "failed"


class TestAborts:
    def test_disabled_workflow_fails(self, db_session, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(chain(TRIGGER))
        execution = enroll(workflow, make_contact())
        WorkflowService(db_session).update_workflow(workflow.id, WorkflowUpdate(is_enabled=False))

        result = executor.process_execution(execution.id, now=NOW)

        assert result.status == "failed"
        assert result.error == "Workflow is disabled"

    def test_inactive_enrollment_stops(self, db_session, executor, make_contact, make_workflow, enroll):
        workflow = make_workflow(chain(TRIGGER))
        execution = enroll(workflow, make_contact())
        execution.enrollment.status = "stopped"
        db_session.commit()

        result = executor.process_execution(execution.id, now=NOW)

        assert result.status == "stopped"
        _assert_cursor_invariant(_reload(db_session, execution.id))

    def test_cycle_hits_iteration_cap(self, db_session, settings, dispatcher, make_contact, make_workflow, enroll):
        workflow = make_workflow(
            {
                "nodes": [
                    TRIGGER,
                    {"id": "a", "type": "update_status", "new_status": "a"},
                    {"id": "b", "type": "update_status", "new_status": "b"},
                ],
                "edges": [
                    {"source": "start", "target": "a"},
                    {"source": "a", "target": "b"},
                    {"source": "b", "target": "a"},
                ],
            }
        )
        execution = enroll(workflow, make_contact())
        capped = settings.model_copy(update={"max_node_iterations": 5})

        result = WorkflowExecutor(db_session, capped, dispatcher).process_execution(
            execution.id, now=NOW
        )

        assert result.status == "failed"
        assert "possible cycle" in result.error
        assert result.nodes_processed == 0
        assert len(ExecutionLogService(db_session).get_logs(execution.id)) == 5

    def test_missing_execution_is_a_noop(self, executor):
        result = executor.process_execution("does-not-exist", now=NOW)
        assert result.processed is False


class TestClaim:
    def test_second_claim_loses(self, db_session, make_contact, make_workflow, enroll):
        execution = enroll(make_workflow(chain(TRIGGER)), make_contact())
        service = ExecutionService(db_session)

        assert service.claim(execution.id, NOW) is not None
        assert service.claim(execution.id, NOW) is None

    def test_not_due_cannot_be_claimed(self, db_session, make_contact, make_workflow, enroll):
        execution = enroll(make_workflow(chain(TRIGGER)), make_contact())
        assert ExecutionService(db_session).claim(execution.id, NOW - timedelta(seconds=1)) is None
