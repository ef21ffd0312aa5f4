"""
Storage repository interfaces and in-memory implementations
"""
import asyncio
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from ..exceptions import FlowNotFoundError
from ..models.execution import Execution, ExecutionStatus, StepLogEntry, TERMINAL_STATUSES
from ..models.flow import BotFlow
from ..models.lead import LeadMutation


class FlowRepository(ABC):
    """Published flow versions, immutable once stored"""

    @abstractmethod
    async def publish(self, flow: BotFlow) -> int:
        """Store ``flow`` as the next version and return that version number"""
        pass

    @abstractmethod
    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[BotFlow]:
        """Get a pinned version, or the latest one when ``version`` is None"""
        pass

    @abstractmethod
    async def set_active(self, flow_id: str, active: bool) -> bool:
        """Publish or unpublish every version of a flow"""
        pass

    @abstractmethod
    async def list_active(self, workspace_id: Optional[str] = None) -> List[BotFlow]:
        """Latest version of every active flow"""
        pass

    @abstractmethod
    async def record_execution(self, flow_id: str) -> None:
        """Count one more execution started for the flow"""
        pass

    async def load(self, flow_id: str, version: Optional[int] = None) -> BotFlow:
        flow = await self.get(flow_id, version)
        if flow is None:
            raise FlowNotFoundError(flow_id, version)
        return flow


class ExecutionRepository(ABC):
    """Durable execution records, step logs and leases"""

    @abstractmethod
    async def save(self, execution: Execution) -> str:
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]:
        pass

    @abstractmethod
    async def commit_step(
        self,
        execution: Execution,
        mutations: List[LeadMutation],
        log: Optional[StepLogEntry] = None,
    ) -> None:
        """Persist the execution together with the lead mutations and log line of its step"""
        pass

    @abstractmethod
    async def list_mutations(self, execution_id: str) -> List[LeadMutation]:
        pass

    @abstractmethod
    async def list_step_logs(self, execution_id: str) -> List[StepLogEntry]:
        pass

    @abstractmethod
    async def find_active(self, lead_id: str, flow_id: str) -> Optional[Execution]:
        """The running or waiting execution of a lead in a flow, if any"""
        pass

    @abstractmethod
    async def list_by_status(self, status: ExecutionStatus) -> List[Execution]:
        pass

    @abstractmethod
    async def list_by_lead(self, lead_id: str) -> List[Execution]:
        pass

    @abstractmethod
    async def acquire_lease(self, execution_id: str, owner: str, ttl: float) -> bool:
        """Take the single-writer lease; False when another owner holds it"""
        pass

    @abstractmethod
    async def release_lease(self, execution_id: str, owner: str) -> None:
        pass


class RotationCursorRepository(ABC):
    """Per-workspace round-robin cursor"""

    @abstractmethod
    async def get_cursor(self, workspace_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def rotate(
        self,
        workspace_id: str,
        key: str,
        choose: Callable[[Optional[str]], str],
    ) -> str:
        """
        Atomically read the cursor, pick the next member and store it

        The read-modify-write is serialized per workspace. Calling again with
        the same ``key`` returns the member picked the first time.
        """
        pass

    @abstractmethod
    async def forget(self, key: str) -> None:
        """Drop the pick stored for a committed step"""
        pass


# In-memory implementations (tests and the simulate command)
class InMemoryFlowRepository(FlowRepository):

    def __init__(self):
        self.flows: Dict[str, Dict[int, BotFlow]] = {}
        self.active: Dict[str, bool] = {}
        self.execution_counts: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    async def publish(self, flow: BotFlow) -> int:
        async with self._lock:
            versions = self.flows.setdefault(flow.id, {})
            version = max(versions, default=0) + 1
            versions[version] = replace(flow, version=version, is_active=True)
            self.active[flow.id] = True
            return version

    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[BotFlow]:
        versions = self.flows.get(flow_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        flow = versions.get(version)
        if flow is None:
            return None
        return replace(
            flow,
            is_active=self.active.get(flow_id, False),
            executions_count=self.execution_counts[flow_id],
        )

    async def set_active(self, flow_id: str, active: bool) -> bool:
        if flow_id not in self.flows:
            return False
        self.active[flow_id] = active
        return True

    async def list_active(self, workspace_id: Optional[str] = None) -> List[BotFlow]:
        results = []
        for flow_id in self.flows:
            if not self.active.get(flow_id):
                continue
            flow = await self.get(flow_id)
            if workspace_id is None or flow.workspace_id == workspace_id:
                results.append(flow)
        return results

    async def record_execution(self, flow_id: str) -> None:
        self.execution_counts[flow_id] += 1


class InMemoryExecutionRepository(ExecutionRepository):
    """Stores serialized copies so callers never share mutable state"""

    def __init__(self):
        self.executions: Dict[str, dict] = {}
        self.mutations: Dict[str, List[LeadMutation]] = defaultdict(list)
        self.step_logs: Dict[str, List[StepLogEntry]] = defaultdict(list)
        self.leases: Dict[str, Tuple[str, float]] = {}

    async def save(self, execution: Execution) -> str:
        self.executions[execution.id] = execution.to_dict()
        return execution.id

    async def get(self, execution_id: str) -> Optional[Execution]:
        data = self.executions.get(execution_id)
        return Execution.from_dict(data) if data else None

    async def commit_step(
        self,
        execution: Execution,
        mutations: List[LeadMutation],
        log: Optional[StepLogEntry] = None,
    ) -> None:
        self.executions[execution.id] = execution.to_dict()
        self.mutations[execution.id].extend(mutations)
        if log is not None:
            self.step_logs[execution.id].append(log)

    async def list_mutations(self, execution_id: str) -> List[LeadMutation]:
        return list(self.mutations.get(execution_id, []))

    async def list_step_logs(self, execution_id: str) -> List[StepLogEntry]:
        return list(self.step_logs.get(execution_id, []))

    async def find_active(self, lead_id: str, flow_id: str) -> Optional[Execution]:
        for data in self.executions.values():
            if data["lead_id"] != lead_id or data["flow_id"] != flow_id:
                continue
            if ExecutionStatus(data["status"]) not in TERMINAL_STATUSES:
                return Execution.from_dict(data)
        return None

    async def list_by_status(self, status: ExecutionStatus) -> List[Execution]:
        return [
            Execution.from_dict(data)
            for data in self.executions.values()
            if data["status"] == status.value
        ]

    async def list_by_lead(self, lead_id: str) -> List[Execution]:
        return [
            Execution.from_dict(data)
            for data in self.executions.values()
            if data["lead_id"] == lead_id
        ]

    async def acquire_lease(self, execution_id: str, owner: str, ttl: float) -> bool:
        now = time.monotonic()
        holder = self.leases.get(execution_id)
        if holder and holder[0] != owner and holder[1] > now:
            return False
        self.leases[execution_id] = (owner, now + ttl)
        return True

    async def release_lease(self, execution_id: str, owner: str) -> None:
        holder = self.leases.get(execution_id)
        if holder and holder[0] == owner:
            del self.leases[execution_id]


class InMemoryRotationCursorRepository(RotationCursorRepository):

    def __init__(self):
        self.cursors: Dict[str, Optional[str]] = {}
        self.picks: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_cursor(self, workspace_id: str) -> Optional[str]:
        return self.cursors.get(workspace_id)

    async def rotate(
        self,
        workspace_id: str,
        key: str,
        choose: Callable[[Optional[str]], str],
    ) -> str:
        async with self._locks[workspace_id]:
            if key in self.picks:
                return self.picks[key]
            chosen = choose(self.cursors.get(workspace_id))
            self.cursors[workspace_id] = chosen
            self.picks[key] = chosen
            return chosen

    async def forget(self, key: str) -> None:
        self.picks.pop(key, None)
