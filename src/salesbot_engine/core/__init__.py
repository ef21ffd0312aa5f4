"""Core flow engine components"""

from .engine import SalesBotEngine
from .graph import FlowGraph, validate_flow, ensure_valid
from .parser import FlowParser
from .interpreter import FlowInterpreter, DispatchResult
from .dispatcher import EventDispatcher
from .scheduler import TimerScheduler

__all__ = [
    "SalesBotEngine",
    "FlowGraph",
    "validate_flow",
    "ensure_valid",
    "FlowParser",
    "FlowInterpreter",
    "DispatchResult",
    "EventDispatcher",
    "TimerScheduler",
]
