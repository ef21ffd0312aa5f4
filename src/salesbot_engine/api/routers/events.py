"""
Inbound event routes: lead messages and CRM triggers
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from ..dependencies import get_engine
from ..models import DispatchSummary, InboundMessage, LeadEvent


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/messages", status_code=status.HTTP_202_ACCEPTED)
async def receive_message(request: InboundMessage, engine=Depends(get_engine)) -> Dict[str, Any]:
    results = await engine.receive_message(
        request.lead_id,
        request.text,
        request.message_id,
        workspace_id=request.workspace_id,
        instance_name=request.instance_name,
    )
    return {
        "dispatched": len(results),
        "results": [
            DispatchSummary(
                execution_id=result.execution.id,
                applied=result.applied,
                status=result.status.value,
                reason=result.reason,
                current_node_id=result.execution.current_node_id,
            )
            for result in results
        ],
    }


@router.post("/lead", status_code=status.HTTP_202_ACCEPTED)
async def lead_event(request: LeadEvent, engine=Depends(get_engine)) -> Dict[str, Any]:
    """Start every active flow whose trigger matches the CRM event"""
    started = await engine.on_lead_event(
        request.workspace_id, request.lead_id, request.event_type, request.value,
        instance_name=request.instance_name,
    )
    return {
        "started": [
            {"execution_id": e.id, "flow_id": e.flow_id, "status": e.status.value}
            for e in started
        ]
    }
