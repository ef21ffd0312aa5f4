"""
API middleware
"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)

QUIET_PATHS = ("/api/v1/monitoring/health",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id and logs its outcome

    Webhook deliveries from the messaging provider usually carry their own
    ``X-Request-ID``; it is kept so engine logs can be joined with theirs.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        duration = time.perf_counter() - started
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
        if response.status_code >= 500:
            level = logging.WARNING
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {duration * 1000:.1f}ms [request_id={request_id}]",
        )
        return response
