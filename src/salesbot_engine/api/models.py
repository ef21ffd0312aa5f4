"""
API request and response models
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FlowPayload(BaseModel):
    flow: Dict[str, Any] = Field(..., description="Flow definition (flow_data format)")


class FlowPublished(BaseModel):
    id: str
    version: int
    workspace_id: str


class ValidationReport(BaseModel):
    valid: bool
    issues: List[Dict[str, Any]] = Field(default_factory=list)


class ExecutionRequest(BaseModel):
    flow_id: str
    lead_id: str
    conversation_id: Optional[str] = None
    initial_message: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = "cancelled"


class InboundMessage(BaseModel):
    lead_id: str
    text: str
    message_id: Optional[str] = Field(None, description="Channel message id, used for deduplication")
    workspace_id: Optional[str] = Field(None, description="Start matching message or keyword flows of this workspace")
    instance_name: Optional[str] = Field(None, description="Messaging channel instance the message came from")


class LeadEvent(BaseModel):
    workspace_id: str
    lead_id: str
    event_type: str = Field(..., description="new_lead, stage_entered or tag_added")
    value: Optional[str] = None
    instance_name: Optional[str] = None


class DispatchSummary(BaseModel):
    execution_id: str
    applied: bool
    status: str
    reason: str = ""
    current_node_id: Optional[str] = None
