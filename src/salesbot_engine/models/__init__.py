"""Flow, execution and lead models"""

from .flow import (
    BotFlow, BotNode, Edge, FlowTrigger, NodeType, Outcome, WaitMode,
    AssignMode, MessageKind, SendMessageData, ReactData, CommentData,
    WhatsAppListData, ConditionData, WaitData, TagData, MoveStageData,
    ValidateData, GotoData, AssignData, NoteData, StopData,
)
from .execution import (
    Execution, ExecutionStatus, ExecutionEvent, EventType,
    ResumeCondition, ResumeKind, StepLogEntry, StepStatus,
)
from .lead import (
    LeadSnapshot, LeadMutation, MutationType, WorkspaceMember, MemberRole
)

__all__ = [
    "BotFlow",
    "BotNode",
    "Edge",
    "FlowTrigger",
    "NodeType",
    "Outcome",
    "WaitMode",
    "AssignMode",
    "MessageKind",
    "SendMessageData",
    "ReactData",
    "CommentData",
    "WhatsAppListData",
    "ConditionData",
    "WaitData",
    "TagData",
    "MoveStageData",
    "ValidateData",
    "GotoData",
    "AssignData",
    "NoteData",
    "StopData",
    "Execution",
    "ExecutionStatus",
    "ExecutionEvent",
    "EventType",
    "ResumeCondition",
    "ResumeKind",
    "StepLogEntry",
    "StepStatus",
    "LeadSnapshot",
    "LeadMutation",
    "MutationType",
    "WorkspaceMember",
    "MemberRole",
]
