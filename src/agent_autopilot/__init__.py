"""
Agent Autopilot

Bounded spending permissions and scheduled intent execution for autonomous agents.

A user grants the agent a permission scoped to one token, a spend cap, a
time window and a contract allowlist. The agent then accepts natural
language intents, optionally recurring, and only executes them when every
permission boundary holds and the decision step approves.

Example:
    >>> from agent_autopilot import (
    ...     ExecutionOrchestrator, AutopilotSettings,
    ...     SimulatedGrantCollaborator, SimulatedExecutor, StaticMarketData,
    ... )
    >>>
    >>> autopilot = ExecutionOrchestrator.from_settings(
    ...     AutopilotSettings(),
    ...     grants=SimulatedGrantCollaborator(),
    ...     executor=SimulatedExecutor(),
    ...     market_data=StaticMarketData(),
    ... )
    >>> permission = autopilot.permissions.create_permission({...})
    >>> execution = autopilot.submit_intent({
    ...     "description": "Swap 5 USDC every day",
    ...     "token_address": permission.token_address,
    ...     "amount": "5",
    ...     "contract_address": permission.allowed_contracts[0],
    ...     "permission_id": permission.id,
    ... })
"""

from .collaborators import (
    InMemoryIndexer,
    RandomMarketData,
    SimulatedExecutor,
    SimulatedGrantCollaborator,
    StaticMarketData,
)
from .config import AutopilotSettings, configure_logging
from .decision import DecisionEngine, HttpReasoningProvider, fallback_decision
from .errors import (
    AutopilotError,
    ExecutionError,
    LedgerInvariantError,
    PersistenceError,
    ProviderError,
    StateError,
    ValidationError,
)
from .orchestrator import ExecutionOrchestrator
from .permissions import PermissionStore
from .reconciliation import reconcile_spend
from .scheduling import ScheduleEngine, ScheduleSupervisor, calculate_next_execution, parse_schedule
from .storage import InMemoryStorage, JsonFileStorage
from .types import (
    Decision,
    Execution,
    ExecutionStatus,
    Frequency,
    Intent,
    MarketContext,
    NetworkCongestion,
    Permission,
    PermissionRequest,
    PermissionStatus,
    Schedule,
    ScheduleType,
    SpendEntry,
    SpendTracking,
)

__version__ = "0.1.0"

__all__ = [
    "AutopilotError",
    "AutopilotSettings",
    "Decision",
    "DecisionEngine",
    "Execution",
    "ExecutionError",
    "ExecutionOrchestrator",
    "ExecutionStatus",
    "Frequency",
    "HttpReasoningProvider",
    "InMemoryIndexer",
    "InMemoryStorage",
    "Intent",
    "JsonFileStorage",
    "LedgerInvariantError",
    "MarketContext",
    "NetworkCongestion",
    "Permission",
    "PermissionRequest",
    "PermissionStatus",
    "PermissionStore",
    "PersistenceError",
    "ProviderError",
    "RandomMarketData",
    "Schedule",
    "ScheduleEngine",
    "ScheduleSupervisor",
    "ScheduleType",
    "SimulatedExecutor",
    "SimulatedGrantCollaborator",
    "SpendEntry",
    "SpendTracking",
    "StateError",
    "StaticMarketData",
    "ValidationError",
    "calculate_next_execution",
    "configure_logging",
    "fallback_decision",
    "parse_schedule",
    "reconcile_spend",
]
