"""
Type definitions for Agent Autopilot.

This module defines all core data models using Pydantic v2 for validation and serialization.
All amounts are represented as Decimal to avoid floating-point precision issues, and
all timestamps are timezone-aware UTC datetimes so that a persisted record reloads
with exactly the same field values.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str, now: Optional[datetime] = None) -> str:
    """
    Generate an identifier of the form ``<prefix>_<epoch ms>_<9 hex chars>``.

    The millisecond component keeps ids roughly sortable by creation time.
    """
    moment = now or utc_now()
    return f"{prefix}_{int(moment.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def to_decimal(v: Any) -> Decimal:
    """Convert string or numeric input to Decimal, raising ValueError when it can't."""
    if isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise ValueError("Boolean is not a valid amount")
    try:
        return Decimal(str(v).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid decimal amount: {v!r}")


class _UtcModel(BaseModel):
    """Base model that normalizes every datetime field to UTC."""

    @field_validator('*', mode='after')
    @classmethod
    def _normalize_datetimes(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class PermissionStatus(str, Enum):
    """Lifecycle states of a permission: pending -> active -> expired | revoked."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class PermissionRequest(_UtcModel):
    """
    A user's request to grant the agent a spending permission.

    Attributes:
        token_address: Token the agent may spend
        max_spend_amount: Total amount that may be spent over the window
        start_time: Start of the validity window
        end_time: End of the validity window
        allowed_contracts: Contracts the agent may interact with
    """
    token_address: str
    max_spend_amount: Decimal
    start_time: datetime
    end_time: datetime
    allowed_contracts: List[str] = Field(default_factory=list)

    @field_validator('max_spend_amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)


class Permission(_UtcModel):
    """
    A granted, time-bound, amount-bound, contract-scoped authorization.

    Attributes:
        id: Unique identifier
        token_address: Token the agent may spend
        max_spend_amount: Total spend cap
        start_time: Start of the validity window
        end_time: End of the validity window
        allowed_contracts: Contract allowlist
        status: Current lifecycle status
        granted_at: When the permission was created
        grant_reference: Identifier returned by the grant collaborator
        transaction_reference: Optional on-chain reference of the grant
    """
    id: str = Field(..., min_length=1)
    token_address: str
    max_spend_amount: Decimal
    start_time: datetime
    end_time: datetime
    allowed_contracts: List[str] = Field(default_factory=list)
    status: PermissionStatus = PermissionStatus.PENDING
    granted_at: datetime = Field(default_factory=utc_now)
    grant_reference: Optional[str] = None
    transaction_reference: Optional[str] = None

    @field_validator('max_spend_amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    def is_past_window(self, now: datetime) -> bool:
        return ensure_utc(now) > self.end_time


class SpendEntry(_UtcModel):
    """One recorded spend against a permission."""
    timestamp: datetime
    amount: Decimal
    transaction_reference: str
    remaining_after: Decimal

    @field_validator('amount', 'remaining_after', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)


class SpendTracking(BaseModel):
    """
    Running spend ledger for a single permission.

    Invariant: ``total_spent + remaining_allowance == max_spend_amount``.
    """
    permission_id: str
    total_spent: Decimal = Decimal('0')
    remaining_allowance: Decimal
    spend_entries: List[SpendEntry] = Field(default_factory=list)

    @field_validator('total_spent', 'remaining_allowance', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @classmethod
    def initial(cls, permission_id: str, max_spend_amount: Decimal) -> 'SpendTracking':
        """Create an empty ledger with the full allowance remaining."""
        return cls(
            permission_id=permission_id,
            total_spent=Decimal('0'),
            remaining_allowance=max_spend_amount,
            spend_entries=[],
        )


class ScheduleType(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"


class Frequency(str, Enum):
    MINUTELY = "minutely"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Schedule(_UtcModel):
    """
    Recurrence descriptor attached to an intent.

    Attributes:
        type: once or recurring
        frequency: Base unit of recurrence (recurring only)
        interval: Positive multiplier of the frequency
        next_execution: When the schedule fires next (recurring only)
        is_active: Whether the schedule should keep firing
    """
    type: ScheduleType = ScheduleType.ONCE
    frequency: Optional[Frequency] = None
    interval: int = Field(default=1, gt=0)
    next_execution: Optional[datetime] = None
    is_active: bool = False

    @property
    def is_recurring(self) -> bool:
        return self.type == ScheduleType.RECURRING and self.frequency is not None


class Intent(_UtcModel):
    """
    A natural-language instruction the agent should carry out.

    Attributes:
        description: Free-text description, also used to detect recurrence
        token_address: Token to spend
        amount: Amount to spend
        contract_address: Target contract
        permission_id: Permission the action is authorized under
        schedule: Parsed recurrence, if any
    """
    description: str
    token_address: str
    amount: Decimal
    contract_address: str
    permission_id: str
    schedule: Optional[Schedule] = None

    @field_validator('amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)


class NetworkCongestion(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MarketContext(_UtcModel):
    """
    Point-in-time snapshot of external conditions used as decision input.

    Attributes:
        gas_price: Gas price in gwei
        token_price: Token price in USD
        network_congestion: low, medium or high
        timestamp: When the snapshot was taken
    """
    gas_price: Decimal
    token_price: Decimal = Decimal('0')
    network_congestion: NetworkCongestion = NetworkCongestion.LOW
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator('gas_price', 'token_price', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)


class Decision(BaseModel):
    """
    The agent's verdict on a candidate action.

    Accepts both snake_case field names and the camelCase keys used in
    reasoning-provider replies (``shouldExecute``, ``riskAssessment``).
    """
    model_config = ConfigDict(populate_by_name=True)

    should_execute: bool = Field(..., alias='shouldExecute')
    reasoning: str = ""
    confidence: int = 0
    risk_assessment: str = Field(default="", alias='riskAssessment')

    @field_validator('confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v: Any) -> int:
        """Round to an integer and clamp into [0, 100]."""
        try:
            value = round(float(v))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid confidence: {v!r}")
        return max(0, min(100, value))

    @classmethod
    def undecided(cls) -> 'Decision':
        return cls(should_execute=False, reasoning="", confidence=0, risk_assessment="")


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    BLOCKED = "blocked"


class Execution(_UtcModel):
    """
    Record of one attempt to carry out an intent.

    Attributes:
        id: Unique identifier
        intent: Snapshot of the intent at the time of the run
        decision: Decision taken (undecided if blocked before deciding)
        status: pending until the run finishes, then executed, failed or blocked
        timestamp: When the run started
        transaction_reference: Reference returned by the execution collaborator
        explanation: Human-readable summary of the outcome
        error: Error message when status is failed
        gas_used: Gas reported by the execution collaborator
        schedule_id: Schedule that triggered the run, if any
        market_context: Snapshot used for the decision
    """
    id: str
    intent: Intent
    decision: Decision = Field(default_factory=Decision.undecided)
    status: ExecutionStatus = ExecutionStatus.PENDING
    timestamp: datetime = Field(default_factory=utc_now)
    transaction_reference: Optional[str] = None
    explanation: str = ""
    error: Optional[str] = None
    gas_used: Optional[str] = None
    schedule_id: Optional[str] = None
    market_context: Optional[MarketContext] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.PENDING


class ScheduledIntent(_UtcModel):
    """Registry entry of the schedule engine: an intent with an active recurrence."""
    id: str
    intent: Intent
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def check_recurring(self) -> 'ScheduledIntent':
        if self.intent.schedule is None or not self.intent.schedule.is_recurring:
            raise ValueError('Scheduled intent requires a recurring schedule')
        return self

    @property
    def schedule(self) -> Schedule:
        return self.intent.schedule


class GrantResult(BaseModel):
    """Reply of the grant collaborator for a newly requested permission."""
    permission_id: str
    signature: Optional[str] = None
    transaction_reference: Optional[str] = None


class TransactionResult(BaseModel):
    """Reply of the execution collaborator for a submitted transaction."""
    tx_reference: str = Field(..., min_length=1)
    gas_used: Optional[str] = None


class IndexedTransfer(_UtcModel):
    """A spend observed on chain by the indexing collaborator."""
    transaction_reference: str
    amount: Decimal
    timestamp: datetime
    token_address: Optional[str] = None
    contract_address: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)


class ReconciliationReport(BaseModel):
    """Differences between the local spend ledger and indexed chain data."""
    permission_id: str
    local_total: Decimal
    indexed_total: Decimal
    missing_locally: List[str] = Field(default_factory=list)
    not_indexed: List[str] = Field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.missing_locally and not self.not_indexed
