"""
Database package for the ReachOut workflow engine.
"""

from .base import Base, get_db, get_engine, get_session_local, init_database, session_scope
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
)

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
    "session_scope",
    "ContactModel",
    "TemplateModel",
    "SettingModel",
    "SenderIdentityModel",
    "WorkflowModel",
    "EnrollmentModel",
    "ExecutionModel",
    "ExecutionLogModel",
    "MessageModel",
]
