"""
Execution state and engine events
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..exceptions import StateTransitionError


MAX_PROCESSED_EVENTS = 100
MAX_JUMP_TRAIL = 20
MAX_LOG_MESSAGE = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution"""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED, ExecutionStatus.STOPPED, ExecutionStatus.FAILED
})

_ALLOWED_TRANSITIONS = {
    ExecutionStatus.RUNNING: {
        ExecutionStatus.WAITING, ExecutionStatus.COMPLETED,
        ExecutionStatus.STOPPED, ExecutionStatus.FAILED,
    },
    ExecutionStatus.WAITING: {
        ExecutionStatus.RUNNING, ExecutionStatus.STOPPED, ExecutionStatus.FAILED,
    },
}


class EventType(str, Enum):
    """Inputs that drive an execution"""
    FLOW_STARTED = "flow_started"
    MESSAGE_RECEIVED = "message_received"
    TIMER_ELAPSED = "timer_elapsed"
    MANUAL_ADVANCE = "manual_advance"


class StepStatus(str, Enum):
    """Outcome recorded in the step log"""
    SUCCESS = "success"
    WAITING = "waiting"
    SKIPPED = "skipped"
    ERROR = "error"


class ResumeKind(str, Enum):
    DEADLINE = "deadline"
    AWAIT_EVENT = "await_event"


@dataclass(frozen=True)
class ResumeCondition:
    """When a suspended execution may run again"""
    kind: ResumeKind
    at: Optional[datetime] = None
    event: Optional[EventType] = None
    reason: str = ""

    @classmethod
    def deadline(cls, at: datetime, reason: str = "timer") -> "ResumeCondition":
        return cls(kind=ResumeKind.DEADLINE, at=at, reason=reason)

    @classmethod
    def await_event(cls, event: EventType, reason: str = "message") -> "ResumeCondition":
        return cls(kind=ResumeKind.AWAIT_EVENT, event=event, reason=reason)

    def is_due(self, now: datetime) -> bool:
        return self.kind == ResumeKind.DEADLINE and self.at is not None and now >= self.at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "at": self.at.isoformat() if self.at else None,
            "event": self.event.value if self.event else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResumeCondition":
        return cls(
            kind=ResumeKind(data["kind"]),
            at=datetime.fromisoformat(data["at"]) if data.get("at") else None,
            event=EventType(data["event"]) if data.get("event") else None,
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class StepLogEntry:
    """One line of an execution's step log"""
    execution_id: str
    step_sequence: int
    node_id: Optional[str]
    status: StepStatus
    message: str = ""
    node_type: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if len(self.message) > MAX_LOG_MESSAGE:
            object.__setattr__(self, "message", self.message[:MAX_LOG_MESSAGE])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_sequence": self.step_sequence,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ExecutionEvent:
    """An input to the engine, always scoped to one execution"""
    execution_id: str
    type: EventType
    id: str = field(default_factory=lambda: uuid4().hex)
    occurred_at: datetime = field(default_factory=utcnow)
    payload: Dict[str, Any] = field(default_factory=dict)
    sequence: Optional[int] = None

    @property
    def text(self) -> Optional[str]:
        return self.payload.get("text")

    @property
    def message_id(self) -> Optional[str]:
        return self.payload.get("message_id")

    @classmethod
    def flow_started(cls, execution_id: str) -> "ExecutionEvent":
        return cls(execution_id=execution_id, type=EventType.FLOW_STARTED,
                   id=f"start:{execution_id}")

    @classmethod
    def message_received(
        cls,
        execution_id: str,
        text: str,
        message_id: Optional[str] = None,
    ) -> "ExecutionEvent":
        message_id = message_id or uuid4().hex
        return cls(
            execution_id=execution_id,
            type=EventType.MESSAGE_RECEIVED,
            id=f"msg:{message_id}",
            payload={"text": text, "message_id": message_id},
        )

    @classmethod
    def timer_elapsed(cls, execution_id: str, sequence: int) -> "ExecutionEvent":
        return cls(
            execution_id=execution_id,
            type=EventType.TIMER_ELAPSED,
            id=f"timer:{execution_id}:{sequence}",
            sequence=sequence,
        )

    @classmethod
    def manual_advance(cls, execution_id: str) -> "ExecutionEvent":
        return cls(execution_id=execution_id, type=EventType.MANUAL_ADVANCE)


@dataclass
class Execution:
    """One lead's in-progress traversal of a flow version"""
    flow_id: str
    workspace_id: str
    lead_id: str
    flow_version: int
    current_node_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    conversation_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    wait_condition: Optional[ResumeCondition] = None
    context_snapshot: Dict[str, Any] = field(default_factory=dict)
    step_sequence: int = 0
    jump_count: int = 0
    jump_trail: List[str] = field(default_factory=list)
    processed_event_ids: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if self.conversation_id is None:
            self.conversation_id = self.lead_id

    @property
    def wait_until(self) -> Optional[datetime]:
        if self.wait_condition and self.wait_condition.kind == ResumeKind.DEADLINE:
            return self.wait_condition.at
        return None

    @property
    def wait_predicate(self) -> Optional[str]:
        if self.wait_condition is None:
            return None
        if self.wait_condition.kind == ResumeKind.AWAIT_EVENT:
            return self.wait_condition.event.value
        return self.wait_condition.reason

    def is_terminal_state(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_processed(self, event_id: str) -> bool:
        return event_id in self.processed_event_ids

    def mark_processed(self, event_id: str):
        self.processed_event_ids.append(event_id)
        if len(self.processed_event_ids) > MAX_PROCESSED_EVENTS:
            del self.processed_event_ids[:-MAX_PROCESSED_EVENTS]

    def record_jump(self, node_id: str) -> int:
        self.jump_count += 1
        self.jump_trail.append(node_id)
        if len(self.jump_trail) > MAX_JUMP_TRAIL:
            del self.jump_trail[:-MAX_JUMP_TRAIL]
        return self.jump_count

    def _transition(self, target: ExecutionStatus):
        if target not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise StateTransitionError(self.status.value, target.value)
        self.status = target
        self.updated_at = utcnow()
        if target in TERMINAL_STATUSES:
            self.finished_at = self.updated_at

    def suspend(self, condition: ResumeCondition):
        self._transition(ExecutionStatus.WAITING)
        self.wait_condition = condition

    def resume(self):
        self._transition(ExecutionStatus.RUNNING)
        self.wait_condition = None

    def complete(self):
        self._transition(ExecutionStatus.COMPLETED)
        self.wait_condition = None

    def stop(self, reason: str):
        self._transition(ExecutionStatus.STOPPED)
        self.wait_condition = None
        self.error = {"type": "Cancelled", "message": reason, "node_id": self.current_node_id}

    def fail(self, error: Exception, node_id: Optional[str] = None):
        self._transition(ExecutionStatus.FAILED)
        self.wait_condition = None
        self.error = {
            "type": type(error).__name__,
            "message": str(error),
            "node_id": node_id or self.current_node_id,
            "timestamp": utcnow().isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "workspace_id": self.workspace_id,
            "lead_id": self.lead_id,
            "conversation_id": self.conversation_id,
            "flow_version": self.flow_version,
            "current_node_id": self.current_node_id,
            "status": self.status.value,
            "wait_condition": self.wait_condition.to_dict() if self.wait_condition else None,
            "context_snapshot": dict(self.context_snapshot),
            "step_sequence": self.step_sequence,
            "jump_count": self.jump_count,
            "jump_trail": list(self.jump_trail),
            "processed_event_ids": list(self.processed_event_ids),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        wait = data.get("wait_condition")
        finished = data.get("finished_at")
        return cls(
            id=data["id"],
            flow_id=data["flow_id"],
            workspace_id=data["workspace_id"],
            lead_id=data["lead_id"],
            conversation_id=data.get("conversation_id"),
            flow_version=int(data["flow_version"]),
            current_node_id=data["current_node_id"],
            status=ExecutionStatus(data["status"]),
            wait_condition=ResumeCondition.from_dict(wait) if wait else None,
            context_snapshot=dict(data.get("context_snapshot") or {}),
            step_sequence=int(data.get("step_sequence", 0)),
            jump_count=int(data.get("jump_count", 0)),
            jump_trail=list(data.get("jump_trail") or []),
            processed_event_ids=list(data.get("processed_event_ids") or []),
            error=data.get("error"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )
