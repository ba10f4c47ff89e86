"""
Execution orchestration for Agent Autopilot.

This module provides the ExecutionOrchestrator, the state machine that
takes an intent from submission to a terminal Execution:

    pending -> blocked | failed | executed

Manual submissions and scheduled firings go through the same
``run_pipeline`` method.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .collaborators import ExecutionCollaborator, GrantCollaborator, MarketDataSource
from .config import AutopilotSettings
from .decision import DecisionEngine
from .errors import ExecutionError, PersistenceError, ValidationError
from .permissions import PermissionStore
from .scheduling import ScheduleEngine, ScheduleSupervisor, parse_schedule
from .storage import EXECUTIONS, JsonFileStorage, StorageDriver
from .types import Decision, Execution, ExecutionStatus, Intent, new_id, utc_now

logger = logging.getLogger(__name__)

BOUNDARY_EXPLANATION = "Action blocked: Exceeds permission boundaries"
BOUNDARY_REASONING = (
    "The requested action would violate one or more permission constraints "
    "(spend limit, time window, or contract restrictions)"
)


class ExecutionOrchestrator:
    """
    ExecutionOrchestrator drives intents through validation, decision and execution.

    The ExecutionOrchestrator class provides the primary interface for:
    - Submitting intents (parsing and registering any recurrence)
    - Running the execution pipeline for one intent
    - Accessing the execution history

    A pipeline run never raises. Boundary violations and declined
    decisions end as ``blocked``; any error from market data, the decision
    step or the execution collaborator ends as ``failed`` with the message
    captured. Spend is only recorded after the execution collaborator has
    returned a transaction reference.
    """

    def __init__(
        self,
        permissions: PermissionStore,
        decisions: DecisionEngine,
        executor: ExecutionCollaborator,
        market_data: MarketDataSource,
        schedules: Optional[ScheduleEngine] = None,
        storage: Optional[StorageDriver] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize an orchestrator and load the persisted execution history.

        Args:
            permissions: Authorization gate and spend ledger
            decisions: Decision engine consulted before executing
            executor: Collaborator that carries out transactions
            market_data: Source of market snapshots
            schedules: Optional schedule engine; its pipeline is set to ``run_pipeline``
            storage: Optional storage driver (defaults to JsonFileStorage)
            clock: Callable returning the current UTC time
        """
        self.permissions = permissions
        self.decisions = decisions
        self.executor = executor
        self.market_data = market_data
        self.schedules = schedules
        self.storage = storage if storage is not None else JsonFileStorage()
        self._clock = clock
        self._executions: Dict[str, Execution] = {}
        self._lock = threading.RLock()

        if self.schedules is not None:
            self.schedules.attach_pipeline(self.run_pipeline)

        self.load()

    @classmethod
    def from_settings(
        cls,
        settings: AutopilotSettings,
        grants: GrantCollaborator,
        executor: ExecutionCollaborator,
        market_data: MarketDataSource,
        storage: Optional[StorageDriver] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> 'ExecutionOrchestrator':
        """
        Wire a complete orchestrator from settings.

        All stores share one storage driver, built from ``settings.storage_path``
        unless one is given.

        Example:
            >>> orchestrator = ExecutionOrchestrator.from_settings(
            ...     AutopilotSettings(),
            ...     grants=SimulatedGrantCollaborator(),
            ...     executor=SimulatedExecutor(),
            ...     market_data=RandomMarketData(),
            ... )
        """
        storage_driver = storage if storage is not None else JsonFileStorage(str(settings.storage_path))
        permissions = PermissionStore(
            grants=grants,
            storage=storage_driver,
            clock=clock,
            limits=settings.permission_limits(),
        )
        decisions = DecisionEngine(permissions, provider=settings.build_reasoning_provider())
        schedules = ScheduleEngine(
            storage=storage_driver,
            clock=clock,
            supervisor=ScheduleSupervisor(permissions),
            retry_delay=timedelta(seconds=settings.schedule_retry_delay_seconds),
        )
        return cls(
            permissions=permissions,
            decisions=decisions,
            executor=executor,
            market_data=market_data,
            schedules=schedules,
            storage=storage_driver,
            clock=clock,
        )

    def load(self) -> None:
        """Replace the in-memory execution history with the persisted one."""
        try:
            raw = self.storage.load_collection(EXECUTIONS)
        except PersistenceError as e:
            logger.warning("Failed to load persisted executions: %s", e)
            return

        executions: Dict[str, Execution] = {}
        for execution_id, data in raw.items():
            try:
                executions[execution_id] = Execution.model_validate(data)
            except PydanticValidationError as e:
                logger.warning("Skipping unreadable execution %s: %s", execution_id, e)

        with self._lock:
            self._executions = executions

    def save(self) -> bool:
        with self._lock:
            records = {eid: e.model_dump(mode='json') for eid, e in self._executions.items()}
        try:
            self.storage.save_collection(EXECUTIONS, records)
        except PersistenceError as e:
            logger.warning("Failed to persist executions: %s", e)
            return False
        return True

    def submit_intent(self, intent: Union[Intent, Mapping[str, Any]]) -> Execution:
        """
        Submit an intent: detect recurrence, register it, and run it once now.

        Args:
            intent: Intent or a dict with the same fields. Any schedule on it
                is replaced by the one parsed from the description.

        Returns:
            The Execution of the immediate run

        Raises:
            ValidationError: If the intent is malformed

        Example:
            >>> execution = orchestrator.submit_intent({
            ...     "description": "Buy 10 USDC of ETH every day",
            ...     "token_address": token,
            ...     "amount": "10",
            ...     "contract_address": router,
            ...     "permission_id": permission.id,
            ... })
        """
        if not isinstance(intent, Intent):
            try:
                intent = Intent.model_validate(intent)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid intent: {e}") from e

        if not intent.description.strip():
            raise ValidationError("Intent description is required")
        if not intent.amount.is_finite() or intent.amount <= 0:
            raise ValidationError("Intent amount must be positive")

        schedule = parse_schedule(intent.description, self._clock())
        intent = intent.model_copy(update={'schedule': schedule}, deep=True)
        logger.info(
            "Intent submitted for %s: %r (schedule %s)",
            intent.permission_id, intent.description, schedule.type.value,
        )

        schedule_id: Optional[str] = None
        note: Optional[str] = None
        if schedule.is_recurring:
            if self.schedules is None:
                logger.warning("Recurring intent submitted without a schedule engine; running once")
            else:
                schedule_id = self.schedules.schedule_recurring_intent(intent)
                note = (
                    f"Scheduled to run {schedule.frequency.value}. "
                    "First execution will be evaluated now."
                )

        return self.run_pipeline(intent, schedule_id, note=note)

    def run_pipeline(
        self,
        intent: Intent,
        schedule_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Execution:
        """
        Run one intent through validation, decision and execution.

        Used for both direct submissions and scheduled firings.

        Args:
            intent: Intent to run
            schedule_id: Schedule that triggered the run, if any
            note: Optional text prepended to the explanation

        Returns:
            The terminal Execution (blocked, failed or executed)
        """
        now = self._clock()
        execution = Execution(
            id=new_id('exec', now),
            intent=intent.model_copy(deep=True),
            decision=Decision.undecided(),
            status=ExecutionStatus.PENDING,
            timestamp=now,
            schedule_id=schedule_id,
        )

        try:
            within_bounds = self.permissions.validate_action(
                intent.permission_id,
                intent.token_address,
                intent.amount,
                intent.contract_address,
            )
            if not within_bounds:
                execution.status = ExecutionStatus.BLOCKED
                execution.explanation = BOUNDARY_EXPLANATION
                execution.decision.reasoning = BOUNDARY_REASONING
            else:
                context = self.market_data.get_market_context()
                execution.market_context = context

                decision = self.decisions.decide(intent, context)
                execution.decision = decision

                if decision.should_execute:
                    self._execute_transaction(execution)
                else:
                    execution.status = ExecutionStatus.BLOCKED
                    execution.explanation = f"Agent declined to execute: {decision.reasoning}"
        except ExecutionError as e:
            self._mark_failed(execution, e)
            logger.warning("Execution %s failed: %s", execution.id, e)
        except Exception as e:
            self._mark_failed(execution, e)
            logger.exception("Execution %s failed unexpectedly", execution.id)

        if note:
            execution.explanation = f"{note} {execution.explanation}"

        with self._lock:
            self._executions[execution.id] = execution
        self.save()

        logger.info(
            "Execution %s for %s: %s",
            execution.id, intent.permission_id, execution.status.value,
        )
        return execution.model_copy(deep=True)

    def _mark_failed(self, execution: Execution, error: Exception) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.error = str(error) or type(error).__name__
        execution.explanation = f"Execution failed: {execution.error}"

    def _execute_transaction(self, execution: Execution) -> None:
        """Carry out an approved execution and record its spend."""
        intent = execution.intent
        permission = self.permissions.get_permission(intent.permission_id)
        if permission is None:
            raise ExecutionError(f"Permission not found: {intent.permission_id}")

        result = self.executor.execute(
            destination=intent.contract_address,
            value=intent.amount,
            data=None,
            permission_ref=permission.grant_reference or permission.id,
        )
        if result is None or not result.tx_reference:
            raise ExecutionError("Execution collaborator returned no transaction reference")

        execution.transaction_reference = result.tx_reference
        execution.gas_used = result.gas_used

        self.permissions.record_spend(intent.permission_id, intent.amount, result.tx_reference)

        execution.status = ExecutionStatus.EXECUTED
        execution.explanation = f"Successfully executed transaction: {execution.decision.reasoning}"

    def get_executions(
        self,
        status: Optional[Union[ExecutionStatus, str]] = None
    ) -> List[Execution]:
        """
        List executions, newest first.

        Args:
            status: Optional status to filter on
        """
        wanted = ExecutionStatus(status) if status is not None else None
        with self._lock:
            executions = [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if wanted is None or e.status == wanted
            ]
        executions.sort(key=lambda e: e.timestamp, reverse=True)
        return executions

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution is not None else None
