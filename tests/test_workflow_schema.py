"""Tests for workflow graph validation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from reachout_engine.schemas.workflow import WorkflowCreate, WorkflowGraph

TRIGGER = {"id": "start", "type": "trigger_start"}


def test_valid_branching_graph():
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                TRIGGER,
                {"id": "split", "type": "conditional_split", "field": "status",
                 "operator": "equals", "value": "lead"},
                {"id": "sms", "type": "send_sms", "template_id": "t1"},
                {"id": "tag", "type": "update_status", "new_status": "cold"},
            ],
            "edges": [
                {"source": "start", "target": "split"},
                {"source": "split", "target": "sms", "source_handle": "yes"},
                {"source": "split", "target": "tag", "source_handle": "no"},
            ],
        }
    )
    assert graph.trigger.id == "start"
    assert graph.next_node_id("split", "yes") == "sms"
    assert graph.next_node_id("split", "no") == "tag"
    assert graph.next_node_id("sms") is None
    assert graph.node("missing") is None


def test_delay_as_timedelta():
    graph = WorkflowGraph.model_validate(
        {"nodes": [TRIGGER, {"id": "wait", "type": "time_delay", "duration": 2, "unit": "hours"}]}
    )
    assert graph.node("wait").as_timedelta() == timedelta(hours=2)


@pytest.mark.parametrize(
    "graph",
    [
        {"nodes": []},
        {"nodes": [TRIGGER, {"id": "second", "type": "trigger_start"}]},
        {"nodes": [TRIGGER, TRIGGER]},
        {"nodes": [TRIGGER], "edges": [{"source": "start", "target": "ghost"}]},
        {"nodes": [TRIGGER, {"id": "wait", "type": "time_delay", "duration": 0, "unit": "days"}]},
        {"nodes": [TRIGGER, {"id": "wait", "type": "time_delay", "duration": 1, "unit": "weeks"}]},
        {"nodes": [TRIGGER, {"id": "x", "type": "launch_rocket"}]},
        {"nodes": [TRIGGER, {"id": "sms", "type": "send_sms"}]},
        {
            "nodes": [TRIGGER, {"id": "a", "type": "update_status", "new_status": "x"},
                      {"id": "b", "type": "update_status", "new_status": "y"}],
            "edges": [{"source": "start", "target": "a"}, {"source": "start", "target": "b"}],
        },
    ],
    ids=[
        "no-trigger",
        "two-triggers",
        "duplicate-ids",
        "dangling-edge",
        "zero-delay",
        "bad-unit",
        "unknown-type",
        "send-without-template",
        "fan-out",
    ],
)
def test_invalid_graphs_rejected(graph):
    with pytest.raises(ValidationError):
        WorkflowGraph.model_validate(graph)


def test_split_edges_need_handles():
    split = {"id": "split", "type": "conditional_split", "field": "x", "operator": "is_empty"}
    end = {"id": "end", "type": "update_status", "new_status": "done"}
    with pytest.raises(ValidationError):
        WorkflowGraph.model_validate(
            {"nodes": [TRIGGER, split, end], "edges": [{"source": "split", "target": "end"}]}
        )
    with pytest.raises(ValidationError):
        WorkflowGraph.model_validate(
            {
                "nodes": [TRIGGER, split, end],
                "edges": [
                    {"source": "split", "target": "end", "source_handle": "yes"},
                    {"source": "split", "target": "start", "source_handle": "yes"},
                ],
            }
        )


def test_workflow_create_forbids_unknown_fields():
    with pytest.raises(ValidationError):
        WorkflowCreate(name="w", graph={"nodes": [TRIGGER]}, owner="someone")
