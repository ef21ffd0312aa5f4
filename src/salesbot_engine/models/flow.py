"""
Bot flow definition models
"""
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4


class NodeType(str, Enum):
    """Node kinds a bot flow can contain"""
    SEND_MESSAGE = "send_message"
    REACT = "react"
    COMMENT = "comment"
    WHATSAPP_LIST = "whatsapp_list"
    CONDITION = "condition"
    ACTION = "action"
    ROUND_ROBIN = "round_robin"
    WAIT = "wait"
    TAG = "tag"
    MOVE_STAGE = "move_stage"
    VALIDATE = "validate"
    GOTO = "goto"
    STOP = "stop"
    CHANGE_RESPONSIBLE = "change_responsible"
    ADD_NOTE = "add_note"


class Outcome(str, Enum):
    """Output port of a node"""
    DEFAULT = "default"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def from_bool(cls, value: bool) -> "Outcome":
        return cls.TRUE if value else cls.FALSE


class WaitMode(str, Enum):
    TIMER = "timer"
    MESSAGE = "message"
    BUSINESS_HOURS = "business_hours"


class AssignMode(str, Enum):
    SPECIFIC = "specific"
    ROUND_ROBIN = "round_robin"


class MessageKind(str, Enum):
    """Kind of content handed to the messaging collaborator"""
    TEXT = "text"
    REACTION = "reaction"
    COMMENT = "comment"
    LIST = "list"


BRANCHING_TYPES = frozenset({NodeType.CONDITION, NodeType.VALIDATE})
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class SendMessageData:
    message: str
    instance_name: Optional[str] = None


@dataclass(frozen=True)
class ReactData:
    emoji: str


@dataclass(frozen=True)
class CommentData:
    text: str


@dataclass(frozen=True)
class WhatsAppListData:
    title: str
    button_text: str = ""
    items: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionData:
    field: str
    operator: str = "contains"
    value: str = ""


@dataclass(frozen=True)
class WaitData:
    mode: WaitMode
    seconds: int = 0
    days: Tuple[str, ...] = ()
    start: Optional[time] = None
    end: Optional[time] = None


@dataclass(frozen=True)
class TagData:
    tag: str
    action: str = "add"


@dataclass(frozen=True)
class MoveStageData:
    stage: str


@dataclass(frozen=True)
class ValidateData:
    validation_type: str = "any"


@dataclass(frozen=True)
class GotoData:
    target_node_id: str


@dataclass(frozen=True)
class AssignData:
    mode: AssignMode
    user_id: Optional[str] = None
    users: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NoteData:
    note: str


@dataclass(frozen=True)
class StopData:
    pass


NodeData = Union[
    SendMessageData, ReactData, CommentData, WhatsAppListData, ConditionData,
    WaitData, TagData, MoveStageData, ValidateData, GotoData, AssignData,
    NoteData, StopData,
]


@dataclass(frozen=True)
class BotNode:
    """A typed step of a bot flow"""
    id: str
    type: NodeType
    data: NodeData
    name: Optional[str] = None

    @property
    def is_branching(self) -> bool:
        return self.type in BRANCHING_TYPES


@dataclass(frozen=True)
class Edge:
    """Directed edge from one node's output port to another node"""
    source: str
    target: str
    outcome: Outcome = Outcome.DEFAULT
    id: str = field(default_factory=lambda: str(uuid4()))


MESSAGE_TRIGGER = "message_received"
KEYWORD_TRIGGER = "keyword"

TRIGGER_COOLDOWNS = {
    MESSAGE_TRIGGER: timedelta(minutes=5),
    KEYWORD_TRIGGER: timedelta(minutes=60),
    "new_lead": timedelta(hours=24),
}


@dataclass(frozen=True)
class FlowTrigger:
    """
    Lead event that starts a flow

    ``keyword`` triggers fire on inbound messages containing ``value``
    (case-insensitive); every other type compares ``value`` exactly. A set
    ``instance_name`` restricts the trigger to one messaging channel instance.
    """
    type: str = "manual"  # manual, new_lead, stage_entered, tag_added, message_received, keyword
    value: Optional[str] = None
    instance_name: Optional[str] = None

    def matches(
        self,
        event_type: str,
        value: Optional[str] = None,
        instance_name: Optional[str] = None,
    ) -> bool:
        if self.instance_name and self.instance_name != instance_name:
            return False
        if self.type == KEYWORD_TRIGGER:
            return (
                event_type == MESSAGE_TRIGGER
                and bool(self.value)
                and self.value.lower() in (value or "").lower()
            )
        if self.type != event_type:
            return False
        if self.value is None or event_type == MESSAGE_TRIGGER:
            return True
        return self.value == value

    @property
    def cooldown(self) -> Optional[timedelta]:
        """How long the same lead cannot re-trigger this flow"""
        return TRIGGER_COOLDOWNS.get(self.type)


@dataclass
class BotFlow:
    """A published bot graph owned by a workspace"""
    id: str
    workspace_id: str
    name: str = ""
    nodes: Dict[str, BotNode] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    version: int = 0
    entry_node_id: Optional[str] = None
    trigger: FlowTrigger = field(default_factory=FlowTrigger)
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    executions_count: int = 0

    def resolve_entry_node(self) -> Optional[str]:
        """Explicit entry node, else the first node nothing points at"""
        if self.entry_node_id:
            return self.entry_node_id
        targets = {edge.target for edge in self.edges}
        for node_id in self.nodes:
            if node_id not in targets:
                return node_id
        return next(iter(self.nodes), None)
