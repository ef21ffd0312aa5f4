"""
SalesBot flow engine - executes sales-bot flows against lead conversations
"""

__version__ = "0.1.0"

from .config import EngineSettings
from .core.engine import SalesBotEngine
from .core.parser import FlowParser
from .core.graph import FlowGraph, validate_flow
from .models.flow import BotFlow, BotNode, Edge, NodeType
from .models.execution import Execution, ExecutionEvent, ExecutionStatus

__all__ = [
    "EngineSettings",
    "SalesBotEngine",
    "FlowParser",
    "FlowGraph",
    "validate_flow",
    "BotFlow",
    "BotNode",
    "Edge",
    "NodeType",
    "Execution",
    "ExecutionEvent",
    "ExecutionStatus",
]
