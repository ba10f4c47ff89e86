"""
Shared fixtures for Agent Autopilot tests.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agent_autopilot.collaborators import SimulatedExecutor, SimulatedGrantCollaborator, StaticMarketData
from agent_autopilot.decision import DecisionEngine
from agent_autopilot.orchestrator import ExecutionOrchestrator
from agent_autopilot.permissions import PermissionStore
from agent_autopilot.scheduling import ScheduleEngine, ScheduleSupervisor
from agent_autopilot.storage import JsonFileStorage

TOKEN = "0x" + "a1" * 20
ROUTER = "0x" + "b2" * 20
OTHER_CONTRACT = "0x" + "c3" * 20


class FakeClock:
    """Controllable clock injected in place of utc_now."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, 123456, tzinfo=timezone.utc))


@pytest.fixture
def temp_storage():
    """Create a temporary storage instance."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage_path = Path(tmpdir) / "test_state.json"
        yield JsonFileStorage(str(storage_path))


@pytest.fixture
def grants():
    return SimulatedGrantCollaborator()


@pytest.fixture
def store(grants, temp_storage, clock):
    return PermissionStore(grants=grants, storage=temp_storage, clock=clock)


@pytest.fixture
def make_request(clock):
    """Factory for valid permission request dicts, overridable per field."""

    def _make(**overrides):
        request = {
            "token_address": TOKEN,
            "max_spend_amount": "100",
            "start_time": clock.now - timedelta(hours=1),
            "end_time": clock.now + timedelta(days=1),
            "allowed_contracts": [ROUTER],
        }
        request.update(overrides)
        return request

    return _make


@pytest.fixture
def permission(store, make_request):
    return store.create_permission(make_request())


@pytest.fixture
def executor():
    return SimulatedExecutor()


@pytest.fixture
def market_data():
    return StaticMarketData(gas_price="20", network_congestion="low")


@pytest.fixture
def schedules(store, temp_storage, clock):
    return ScheduleEngine(
        storage=temp_storage,
        clock=clock,
        supervisor=ScheduleSupervisor(store),
        retry_delay=timedelta(seconds=1),
    )


@pytest.fixture
def orchestrator(store, executor, market_data, schedules, temp_storage, clock):
    return ExecutionOrchestrator(
        permissions=store,
        decisions=DecisionEngine(store),
        executor=executor,
        market_data=market_data,
        schedules=schedules,
        storage=temp_storage,
        clock=clock,
    )


@pytest.fixture
def make_intent(permission):
    """Factory for intent dicts bound to the default permission."""

    def _make(**overrides):
        intent = {
            "description": "Swap 10 USDC for ETH",
            "token_address": TOKEN,
            "amount": "10",
            "contract_address": ROUTER,
            "permission_id": permission.id,
        }
        intent.update(overrides)
        return intent

    return _make
