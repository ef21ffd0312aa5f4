"""Storage and repository interfaces"""

from .repository import (
    FlowRepository,
    ExecutionRepository,
    RotationCursorRepository,
    InMemoryFlowRepository,
    InMemoryExecutionRepository,
    InMemoryRotationCursorRepository,
)

__all__ = [
    "FlowRepository",
    "ExecutionRepository",
    "RotationCursorRepository",
    "InMemoryFlowRepository",
    "InMemoryExecutionRepository",
    "InMemoryRotationCursorRepository",
]
