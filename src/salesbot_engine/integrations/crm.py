"""
Lead/CRM collaborator interface
"""
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from ..exceptions import InfrastructureError
from ..models.lead import LeadMutation, LeadSnapshot, MutationType, WorkspaceMember


logger = logging.getLogger(__name__)


class LeadGateway(ABC):
    """Reads lead state and applies lead mutations

    Every mutating call carries the step key; repeating a call with the same
    key must not change the lead twice.
    """

    @abstractmethod
    async def get_snapshot(self, lead_id: str) -> Optional[LeadSnapshot]:
        """Current lead fields, or None when the lead was deleted"""
        pass

    @abstractmethod
    async def list_members(self, workspace_id: str) -> List[WorkspaceMember]:
        pass

    @abstractmethod
    async def set_tag(self, lead_id: str, tag: str, key: str) -> None:
        pass

    @abstractmethod
    async def remove_tag(self, lead_id: str, tag: str, key: str) -> None:
        pass

    @abstractmethod
    async def set_stage(self, lead_id: str, stage: str, key: str) -> None:
        pass

    @abstractmethod
    async def set_assignee(self, lead_id: str, user_id: str, key: str) -> None:
        pass

    @abstractmethod
    async def append_note(self, lead_id: str, note: str, key: str) -> None:
        pass

    async def apply(self, mutation: LeadMutation) -> None:
        handlers = {
            MutationType.ADD_TAG: self.set_tag,
            MutationType.REMOVE_TAG: self.remove_tag,
            MutationType.SET_STAGE: self.set_stage,
            MutationType.SET_ASSIGNEE: self.set_assignee,
            MutationType.APPEND_NOTE: self.append_note,
        }
        await handlers[mutation.type](mutation.lead_id, mutation.value, mutation.key)


class InMemoryLeadStore(LeadGateway):
    """Lead records and workspace members kept in dicts"""

    def __init__(self):
        self.leads: Dict[str, LeadSnapshot] = {}
        self.members: Dict[str, List[WorkspaceMember]] = defaultdict(list)
        self.notes: Dict[str, List[str]] = defaultdict(list)
        self.applied: Set[Tuple[str, MutationType]] = set()
        self.history: List[LeadMutation] = []
        self.unavailable = False

    def add_lead(self, snapshot: LeadSnapshot) -> LeadSnapshot:
        self.leads[snapshot.lead_id] = snapshot
        return snapshot

    def delete_lead(self, lead_id: str) -> bool:
        return self.leads.pop(lead_id, None) is not None

    def add_member(self, workspace_id: str, member: WorkspaceMember):
        self.members[workspace_id].append(member)

    def _check_available(self):
        if self.unavailable:
            raise InfrastructureError("CRM unavailable")

    async def get_snapshot(self, lead_id: str) -> Optional[LeadSnapshot]:
        self._check_available()
        lead = self.leads.get(lead_id)
        if lead is None:
            return None
        return LeadSnapshot.from_dict(lead.to_dict())

    async def list_members(self, workspace_id: str) -> List[WorkspaceMember]:
        self._check_available()
        return list(self.members.get(workspace_id, []))

    def _first_application(self, lead_id: str, mutation_type: MutationType, value: str, key: str):
        """Returns the lead when this (key, type) was not applied yet"""
        self._check_available()
        lead = self.leads.get(lead_id)
        if lead is None or (key, mutation_type) in self.applied:
            return None
        self.applied.add((key, mutation_type))
        self.history.append(LeadMutation(lead_id, mutation_type, value, key))
        return lead

    async def set_tag(self, lead_id: str, tag: str, key: str) -> None:
        lead = self._first_application(lead_id, MutationType.ADD_TAG, tag, key)
        if lead is not None and tag not in lead.tags:
            lead.tags.append(tag)

    async def remove_tag(self, lead_id: str, tag: str, key: str) -> None:
        lead = self._first_application(lead_id, MutationType.REMOVE_TAG, tag, key)
        if lead is not None and tag in lead.tags:
            lead.tags.remove(tag)

    async def set_stage(self, lead_id: str, stage: str, key: str) -> None:
        lead = self._first_application(lead_id, MutationType.SET_STAGE, stage, key)
        if lead is not None:
            lead.stage = stage

    async def set_assignee(self, lead_id: str, user_id: str, key: str) -> None:
        lead = self._first_application(lead_id, MutationType.SET_ASSIGNEE, user_id, key)
        if lead is not None:
            lead.assignee_id = user_id

    async def append_note(self, lead_id: str, note: str, key: str) -> None:
        if self._first_application(lead_id, MutationType.APPEND_NOTE, note, key) is not None:
            self.notes[lead_id].append(note)
