"""
Lead, workspace member and lead mutation models
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class MemberRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    SELLER = "seller"
    VIEWER = "viewer"


ASSIGNABLE_ROLES = frozenset({MemberRole.SELLER, MemberRole.MANAGER})


@dataclass(frozen=True)
class WorkspaceMember:
    user_id: str
    role: MemberRole = MemberRole.SELLER
    full_name: str = ""

    @property
    def is_assignable(self) -> bool:
        return self.role in ASSIGNABLE_ROLES


@dataclass
class LeadSnapshot:
    """Lead and conversation fields used for condition evaluation"""
    lead_id: str
    message: Optional[str] = None
    last_message: Optional[str] = None
    message_id: Optional[str] = None  # id of the inbound message in ``message``
    tags: List[str] = field(default_factory=list)
    stage: Optional[str] = None
    value: Optional[float] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    assignee_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeadSnapshot":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        known["tags"] = list(known.get("tags") or [])
        return cls(**known)


class MutationType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SET_STAGE = "set_stage"
    SET_ASSIGNEE = "set_assignee"
    APPEND_NOTE = "append_note"


@dataclass(frozen=True)
class LeadMutation:
    """A change to a lead record, applied through the CRM collaborator"""
    lead_id: str
    type: MutationType
    value: str
    key: str = ""  # idempotency key of the step that produced it
