"""
Pydantic schemas for workflow graphs and API payloads.
"""

from .api import EnrollRequest, ResumeExecutionRequest, SendMessageRequest
from .workflow import WorkflowCreate, WorkflowGraph, WorkflowUpdate

__all__ = [
    "EnrollRequest",
    "ResumeExecutionRequest",
    "SendMessageRequest",
    "WorkflowCreate",
    "WorkflowGraph",
    "WorkflowUpdate",
]
