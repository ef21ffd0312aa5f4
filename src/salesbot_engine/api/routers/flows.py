"""
Flow API routes
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import get_engine
from ..models import FlowPayload, FlowPublished, ValidationReport


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=FlowPublished, status_code=status.HTTP_201_CREATED)
async def publish_flow(request: FlowPayload, engine=Depends(get_engine)) -> FlowPublished:
    """Validate and publish a new version of a flow"""
    flow = await engine.publish_flow(request.flow)
    return FlowPublished(id=flow.id, version=flow.version, workspace_id=flow.workspace_id)


@router.post("/validate", response_model=ValidationReport)
async def validate_flow(request: FlowPayload, engine=Depends(get_engine)) -> ValidationReport:
    """Report structural issues without publishing"""
    issues = engine.validate_flow(request.flow)
    return ValidationReport(valid=not issues, issues=issues)


@router.get("/{flow_id}")
async def get_flow(
    flow_id: str,
    version: Optional[int] = Query(None, ge=1),
    engine=Depends(get_engine),
) -> Dict[str, Any]:
    flow = await engine.get_flow(flow_id, version)
    payload = engine.parser.to_dict(flow)
    payload["executions_count"] = flow.executions_count
    return payload


@router.delete("/{flow_id}")
async def unpublish_flow(flow_id: str, engine=Depends(get_engine)) -> Dict[str, Any]:
    """Deactivate a flow; running executions stop on their next event"""
    await engine.unpublish_flow(flow_id)
    return {"flow_id": flow_id, "is_active": False}
