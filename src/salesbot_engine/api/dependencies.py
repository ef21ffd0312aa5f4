"""
FastAPI dependencies
"""
from fastapi import HTTPException, Request, status

from ..core.engine import SalesBotEngine


def get_engine(request: Request) -> SalesBotEngine:
    """Return the engine bound to the application"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Flow engine not initialized"
            }
        )
    return engine
