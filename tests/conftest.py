"""
Pytest configuration and shared fixtures
"""
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from salesbot_engine.config import EngineSettings
from salesbot_engine.core.engine import SalesBotEngine
from salesbot_engine.integrations import (
    EventBus, FixedClock, InMemoryLeadStore, InMemoryMessagingGateway,
)
from salesbot_engine.models import LeadSnapshot, MemberRole, WorkspaceMember


# Monday 2024-01-15 10:00 UTC
MONDAY_MORNING = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class RecordingSleep:
    """Stands in for asyncio.sleep in retry tests"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_flow(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    flow = {
        "id": extra.pop("id", "flow-1"),
        "workspace_id": extra.pop("workspace_id", "ws-1"),
        "name": extra.pop("name", "Test flow"),
        "flow_data": {"nodes": nodes, "edges": edges or []},
    }
    flow.update(extra)
    return flow


def chain(*node_ids: str) -> List[Dict[str, Any]]:
    """Default edges linking the given nodes in order"""
    return [{"source": a, "target": b} for a, b in zip(node_ids, node_ids[1:])]


@pytest.fixture
def settings():
    return EngineSettings(timezone="UTC", max_loop_jumps=5, retry_initial_delay=0.1)


@pytest.fixture
def clock():
    return FixedClock(MONDAY_MORNING)


@pytest.fixture
def crm():
    store = InMemoryLeadStore()
    store.add_lead(LeadSnapshot(lead_id="lead-1", name="Maria", phone="5511999990000", stage="new"))
    for user_id in ("alice", "bob", "carol"):
        store.add_member("ws-1", WorkspaceMember(user_id=user_id, role=MemberRole.SELLER))
    store.add_member("ws-1", WorkspaceMember(user_id="owner", role=MemberRole.OWNER))
    return store


@pytest.fixture
def messaging():
    return InMemoryMessagingGateway()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def engine(settings, clock, crm, messaging, event_bus, sleeper):
    """Engine wired to in-memory collaborators and a fixed clock"""
    return SalesBotEngine(
        messaging=messaging,
        crm=crm,
        clock=clock,
        event_bus=event_bus,
        settings=settings,
        sleep=sleeper,
    )
