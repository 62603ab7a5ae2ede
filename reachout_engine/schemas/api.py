"""
Request bodies for the HTTP surface.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, constr


class EnrollRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_ids: List[constr(min_length=1)] = Field(default_factory=list)
    skip_duplicates: bool = True


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_id: constr(min_length=1)
    channel: Literal["sms", "email"]
    body: constr(min_length=1)
    subject: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    template_id: Optional[str] = None
    from_identity_id: Optional[str] = None
    source: Literal["manual", "bulk", "workflow"] = "manual"


class ResumeExecutionRequest(BaseModel):
    """Point an execution back at a node and make it due now."""

    node_id: constr(min_length=1)
