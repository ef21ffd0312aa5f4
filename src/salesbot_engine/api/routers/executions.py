"""
Execution API routes
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status

from ..dependencies import get_engine
from ..models import CancelRequest, DispatchSummary, ExecutionRequest


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_execution(request: ExecutionRequest, engine=Depends(get_engine)) -> Dict[str, Any]:
    """Start a lead in a flow, or return its execution already in progress"""
    execution = await engine.start_execution(
        flow_id=request.flow_id,
        lead_id=request.lead_id,
        conversation_id=request.conversation_id,
        initial_message=request.initial_message,
    )
    return await engine.get_execution_status(execution.id)


@router.get("/{execution_id}")
async def get_execution(execution_id: str, engine=Depends(get_engine)) -> Dict[str, Any]:
    return await engine.get_execution_status(execution_id)


@router.post("/{execution_id}/advance", response_model=DispatchSummary)
async def advance_execution(execution_id: str, engine=Depends(get_engine)) -> DispatchSummary:
    """Release the current wait manually"""
    result = await engine.advance(execution_id)
    if result is None:
        execution = await engine.get_execution(execution_id)
        return DispatchSummary(
            execution_id=execution_id,
            applied=False,
            status=execution.status.value,
            reason="requeued",
            current_node_id=execution.current_node_id,
        )
    return DispatchSummary(
        execution_id=execution_id,
        applied=result.applied,
        status=result.status.value,
        reason=result.reason,
        current_node_id=result.execution.current_node_id,
    )


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelRequest] = None,
    engine=Depends(get_engine),
) -> Dict[str, Any]:
    reason = request.reason if request else "cancelled"
    await engine.cancel_execution(execution_id, reason)
    return await engine.get_execution_status(execution_id)
