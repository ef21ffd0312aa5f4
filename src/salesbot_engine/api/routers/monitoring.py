"""
Health and metrics routes
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..dependencies import get_engine


router = APIRouter()


@router.get("/health")
async def health(engine=Depends(get_engine)) -> Dict[str, Any]:
    next_due = engine.scheduler.next_due()
    return {
        "status": "healthy",
        "scheduler_running": engine.scheduler.running,
        "pending_timers": engine.scheduler.pending(),
        "next_timer_at": next_due.isoformat() if next_due else None,
    }


@router.get("/metrics")
async def metrics(engine=Depends(get_engine)) -> Dict[str, Any]:
    return {
        "counters": engine.metrics.snapshot(),
        "timings": engine.metrics.timing_summary(),
    }
