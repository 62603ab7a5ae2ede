"""
Workflow graph schema.

Node configuration is a tagged union discriminated on ``type``. Graphs are
validated when a workflow is saved so the executor never sees malformed
node configuration at run time.
"""

from __future__ import annotations

from collections import Counter
from datetime import timedelta
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

TimeUnit = Literal["minutes", "hours", "days"]

ComparisonOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
]

ReplyChannel = Literal["any", "sms", "email"]

BRANCH_HANDLES = ("yes", "no")

_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400}


class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: constr(min_length=1, max_length=128)
    label: Optional[str] = None


class TriggerStartNode(_NodeBase):
    type: Literal["trigger_start"]


class TimeDelayNode(_NodeBase):
    type: Literal["time_delay"]
    duration: int = Field(gt=0)
    unit: TimeUnit

    def as_timedelta(self) -> timedelta:
        return timedelta(seconds=self.duration * _UNIT_SECONDS[self.unit])


class ConditionalSplitNode(_NodeBase):
    type: Literal["conditional_split"]
    field: constr(min_length=1)
    operator: ComparisonOperator
    value: Optional[str] = ""


class SendSmsNode(_NodeBase):
    type: Literal["send_sms"]
    template_id: constr(min_length=1)
    from_identity_id: Optional[str] = None


class SendEmailNode(_NodeBase):
    type: Literal["send_email"]
    template_id: constr(min_length=1)
    from_identity_id: Optional[str] = None
    subject_override: Optional[str] = None


class UpdateStatusNode(_NodeBase):
    type: Literal["update_status"]
    new_status: constr(min_length=1, max_length=50)


class StopOnReplyNode(_NodeBase):
    type: Literal["stop_on_reply"]
    channel: ReplyChannel = "any"


WorkflowNode = Annotated[
    Union[
        TriggerStartNode,
        TimeDelayNode,
        ConditionalSplitNode,
        SendSmsNode,
        SendEmailNode,
        UpdateStatusNode,
        StopOnReplyNode,
    ],
    Field(discriminator="type"),
]

SEND_NODE_TYPES = ("send_sms", "send_email")


class WorkflowEdge(BaseModel):
    """Directed edge; branch edges carry a "yes"/"no" source handle."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    source: constr(min_length=1)
    target: constr(min_length=1)
    source_handle: Optional[Literal["yes", "no"]] = None


class WorkflowGraph(BaseModel):
    """A validated node/edge graph."""

    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_structure(self) -> "WorkflowGraph":
        ids = [n.id for n in self.nodes]
        duplicates = [node_id for node_id, count in Counter(ids).items() if count > 1]
        if duplicates:
            raise ValueError(f"Duplicate node ids: {sorted(duplicates)}")

        triggers = [n for n in self.nodes if n.type == "trigger_start"]
        if len(triggers) != 1:
            raise ValueError(
                f"Workflow must have exactly one trigger_start node, found {len(triggers)}"
            )

        by_id = {n.id: n for n in self.nodes}
        for edge in self.edges:
            if edge.source not in by_id:
                raise ValueError(f"Edge source '{edge.source}' is not a node")
            if edge.target not in by_id:
                raise ValueError(f"Edge target '{edge.target}' is not a node")

        outgoing: Dict[str, List[WorkflowEdge]] = {}
        for edge in self.edges:
            outgoing.setdefault(edge.source, []).append(edge)

        for node_id, edges in outgoing.items():
            node = by_id[node_id]
            if node.type == "conditional_split":
                handles = [e.source_handle for e in edges]
                if None in handles:
                    raise ValueError(
                        f"Branch edges from '{node_id}' must be tagged 'yes' or 'no'"
                    )
                repeated = [h for h, count in Counter(handles).items() if count > 1]
                if repeated:
                    raise ValueError(
                        f"Node '{node_id}' has more than one '{repeated[0]}' edge"
                    )
            elif len(edges) > 1:
                raise ValueError(
                    f"Node '{node_id}' ({node.type}) may have at most one outgoing edge"
                )
        return self

    @property
    def trigger(self) -> TriggerStartNode:
        return next(n for n in self.nodes if n.type == "trigger_start")

    def node(self, node_id: str):
        """Return the node with ``node_id`` or None."""
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """Target of the outgoing edge from ``node_id`` (matching ``handle`` if given)."""
        for edge in self.edges:
            if edge.source != node_id:
                continue
            if handle is None or edge.source_handle == handle:
                return edge.target
        return None


class WorkflowCreate(BaseModel):
    """Request body for saving a workflow."""

    model_config = ConfigDict(extra="forbid")

    name: constr(min_length=1, max_length=200)
    description: Optional[str] = None
    is_enabled: bool = False
    graph: WorkflowGraph


class WorkflowUpdate(BaseModel):
    """Partial update; a new graph replaces the old one wholesale."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None
    is_enabled: Optional[bool] = None
    graph: Optional[WorkflowGraph] = None
