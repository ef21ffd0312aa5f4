"""API routers"""

from . import events, executions, flows, monitoring

__all__ = ["events", "executions", "flows", "monitoring"]
