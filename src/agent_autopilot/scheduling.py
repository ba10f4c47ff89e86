"""
Recurring intent scheduling for Agent Autopilot.

This module contains:
- ``parse_schedule``: detects recurrence in a free-text intent description
- ``calculate_next_execution``: computes the next fire time of a recurrence
- ``ScheduleEngine``: owns the registry of active schedules and a
  time-ordered queue of pending firings, polled by a single loop
- ``ScheduleSupervisor``: decides after each run whether a schedule
  keeps going or is paused

Firings of one schedule are strictly serial: the next fire time is only
computed once the current run has returned. Distinct schedules are
independent and fire in fire-time order.
"""

import calendar
import heapq
import itertools
import logging
import re
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from .errors import PersistenceError, ValidationError
from .permissions import PermissionStore
from .storage import SCHEDULES, JsonFileStorage, StorageDriver
from .types import (
    Execution,
    Frequency,
    Intent,
    Schedule,
    ScheduledIntent,
    ScheduleType,
    ensure_utc,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

# (phrases, frequency) checked in this order, first match wins
_FIXED_PHRASES: Tuple[Tuple[Tuple[str, ...], Frequency], ...] = (
    (('every minute', 'per minute'), Frequency.MINUTELY),
    (('daily', 'every day'), Frequency.DAILY),
    (('weekly', 'every week'), Frequency.WEEKLY),
    (('hourly', 'every hour'), Frequency.HOURLY),
    (('monthly', 'every month'), Frequency.MONTHLY),
)

_INTERVAL_PATTERN = re.compile(r'every (\d+) (minute|hour|day|week|month)s?')

_UNIT_FREQUENCIES = {
    'minute': Frequency.MINUTELY,
    'hour': Frequency.HOURLY,
    'day': Frequency.DAILY,
    'week': Frequency.WEEKLY,
    'month': Frequency.MONTHLY,
}

_FIXED_STEPS = {
    Frequency.MINUTELY: timedelta(seconds=60),
    Frequency.HOURLY: timedelta(seconds=3600),
    Frequency.DAILY: timedelta(seconds=86400),
    Frequency.WEEKLY: timedelta(seconds=604800),
}

Pipeline = Callable[[Intent, Optional[str]], Execution]


def add_months(moment: datetime, months: int) -> datetime:
    """
    Advance a datetime by calendar months.

    The day of month is kept when the target month has it, otherwise it is
    clamped to that month's last day (Jan 31 + 1 month -> Feb 28/29).
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_next_execution(
    frequency: Frequency,
    interval: int = 1,
    now: Optional[datetime] = None
) -> datetime:
    """
    Compute when a recurrence should fire next.

    Args:
        frequency: Base unit of the recurrence
        interval: Positive multiplier
        now: Reference time (defaults to the current UTC time)

    Returns:
        ``now`` plus ``interval`` units of ``frequency``

    Raises:
        ValidationError: If the result falls outside the representable range
    """
    now = ensure_utc(now) if now is not None else utc_now()
    frequency = Frequency(frequency)
    try:
        if frequency == Frequency.MONTHLY:
            return add_months(now, interval)
        return now + _FIXED_STEPS[frequency] * interval
    except (OverflowError, ValueError) as e:
        raise ValidationError(f"Schedule interval out of range: {interval} x {frequency.value}") from e


def _recurring(frequency: Frequency, interval: int, now: Optional[datetime]) -> Schedule:
    return Schedule(
        type=ScheduleType.RECURRING,
        frequency=frequency,
        interval=interval,
        next_execution=calculate_next_execution(frequency, interval, now),
        is_active=True,
    )


def parse_schedule(description: str, now: Optional[datetime] = None) -> Schedule:
    """
    Detect recurrence in a free-text description.

    Matching is case-insensitive. Fixed phrases ("every minute", "daily",
    "weekly", "hourly", "monthly" and their "every <unit>" forms) are
    checked first, then the generic "every N <unit>" pattern.

    Args:
        description: Intent description
        now: Reference time for the first fire time

    Returns:
        A recurring Schedule, or a one-off inactive Schedule if nothing matched

    Example:
        >>> parse_schedule("Buy 10 USDC every 3 days").interval
        3
    """
    text = description.lower()

    for phrases, frequency in _FIXED_PHRASES:
        if any(phrase in text for phrase in phrases):
            return _recurring(frequency, 1, now)

    match = _INTERVAL_PATTERN.search(text)
    if match:
        interval = int(match.group(1))
        if interval > 0:
            return _recurring(_UNIT_FREQUENCIES[match.group(2)], interval, now)

    return Schedule(type=ScheduleType.ONCE, is_active=False)


class SupervisorAction(str, Enum):
    CONTINUE = "continue"
    PAUSE = "pause"


class ScheduleSupervisor:
    """
    Reviews the outcome of every scheduled run.

    A schedule is paused (stopped) once the permission it runs under is no
    longer active, since every further run would be blocked. Blocked and
    failed runs otherwise keep the schedule going; the next tick is the retry.
    """

    def __init__(self, permissions: Optional[PermissionStore] = None):
        self.permissions = permissions

    def review(
        self,
        scheduled: ScheduledIntent,
        execution: Optional[Execution],
        error: Optional[BaseException] = None,
    ) -> SupervisorAction:
        if error is not None:
            logger.error("Scheduled run of %s raised: %s", scheduled.id, error)

        if self.permissions is not None and not self.permissions.is_active(scheduled.intent.permission_id):
            logger.info(
                "Pausing schedule %s: permission %s is no longer active",
                scheduled.id, scheduled.intent.permission_id,
            )
            return SupervisorAction.PAUSE

        return SupervisorAction.CONTINUE


class ScheduleEngine:
    """
    Owns the active-schedule registry and the queue of pending firings.

    Timers are entries ``(fire_at, sequence, schedule_id)`` in a heap.
    Re-arming a schedule pushes a new entry and invalidates the old one,
    so stale entries are simply skipped when popped. Nothing fires on its
    own: ``run_pending`` fires whatever is due and ``run_forever`` polls it.
    """

    def __init__(
        self,
        storage: Optional[StorageDriver] = None,
        clock: Callable[[], datetime] = utc_now,
        supervisor: Optional[ScheduleSupervisor] = None,
        retry_delay: timedelta = timedelta(seconds=1),
        pipeline: Optional[Pipeline] = None,
    ):
        """
        Initialize a ScheduleEngine and load persisted schedules without arming them.

        Args:
            storage: Optional storage driver (defaults to JsonFileStorage)
            clock: Callable returning the current UTC time
            supervisor: Reviews each run; defaults to one that always continues
            retry_delay: Delay used when a fire time is already in the past
            pipeline: Callable running one intent, usually ``ExecutionOrchestrator.run_pipeline``
        """
        self.storage = storage if storage is not None else JsonFileStorage()
        self.supervisor = supervisor if supervisor is not None else ScheduleSupervisor()
        self.retry_delay = retry_delay
        self._clock = clock
        self._pipeline = pipeline
        self._scheduled: Dict[str, ScheduledIntent] = {}
        self._queue: List[Tuple[datetime, int, str]] = []
        self._armed: Dict[str, int] = {}
        self._running: Set[str] = set()
        self._sequence = itertools.count()
        self._lock = threading.RLock()
        self.load()

    def attach_pipeline(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline

    # Persistence

    def load(self) -> None:
        """Restore persisted schedules into the registry. Nothing is armed."""
        try:
            raw = self.storage.load_collection(SCHEDULES)
        except PersistenceError as e:
            logger.warning("Failed to load persisted schedules: %s", e)
            return

        scheduled: Dict[str, ScheduledIntent] = {}
        for schedule_id, data in raw.items():
            try:
                scheduled[schedule_id] = ScheduledIntent.model_validate(data)
            except PydanticValidationError as e:
                logger.warning("Skipping unreadable schedule %s: %s", schedule_id, e)

        with self._lock:
            self._scheduled = scheduled
            self._queue.clear()
            self._armed.clear()

        if scheduled:
            logger.info("Loaded %d persisted schedules (not started)", len(scheduled))

    def save(self) -> bool:
        with self._lock:
            records = {sid: s.model_dump(mode='json') for sid, s in self._scheduled.items()}
        try:
            self.storage.save_collection(SCHEDULES, records)
        except PersistenceError as e:
            logger.warning("Failed to persist schedules: %s", e)
            return False
        return True

    # Registration and cancellation

    def schedule_recurring_intent(self, intent: Intent) -> str:
        """
        Register a recurring intent and arm its first firing.

        Args:
            intent: Intent whose schedule is recurring

        Returns:
            The new schedule id

        Raises:
            ValidationError: If the intent has no recurring schedule
        """
        if intent.schedule is None or not intent.schedule.is_recurring:
            raise ValidationError("Intent has no recurring schedule")

        snapshot = intent.model_copy(deep=True)
        schedule = snapshot.schedule
        if schedule.next_execution is None:
            schedule.next_execution = calculate_next_execution(
                schedule.frequency, schedule.interval, self._clock()
            )
        schedule.is_active = True

        now = self._clock()
        schedule_id = new_id('schedule', now)
        with self._lock:
            self._scheduled[schedule_id] = ScheduledIntent(id=schedule_id, intent=snapshot, created_at=now)
            self._arm(schedule_id, schedule.next_execution)
        self.save()

        logger.info(
            "Scheduled %s: %r every %d %s, first run %s",
            schedule_id, intent.description, schedule.interval,
            schedule.frequency.value, schedule.next_execution.isoformat(),
        )
        return schedule_id

    def _arm(self, schedule_id: str, fire_at: datetime) -> None:
        """Push a single-shot timer for a schedule, replacing any pending one."""
        now = self._clock()
        if fire_at <= now:
            # Backlog or clock drift: fire again shortly instead of skipping a cycle
            fire_at = now + self.retry_delay
        sequence = next(self._sequence)
        self._armed[schedule_id] = sequence
        heapq.heappush(self._queue, (fire_at, sequence, schedule_id))

    def stop_schedule(self, schedule_id: str) -> bool:
        """
        Cancel a schedule's pending timer and drop it from the registry.

        An in-flight run is not interrupted, but it will not re-arm.

        Returns:
            True if the schedule was active, False if unknown or already stopped
        """
        with self._lock:
            self._armed.pop(schedule_id, None)
            scheduled = self._scheduled.pop(schedule_id, None)
            if scheduled is None:
                return False
            scheduled.schedule.is_active = False
        self.save()
        logger.info("Stopped schedule %s", schedule_id)
        return True

    def stop_all_schedules(self) -> int:
        """Stop every schedule. Returns how many were stopped."""
        with self._lock:
            count = len(self._scheduled)
            for scheduled in self._scheduled.values():
                scheduled.schedule.is_active = False
            self._scheduled.clear()
            self._armed.clear()
            self._queue.clear()
        self.save()
        logger.info("Stopped all %d schedules", count)
        return count

    def resume(self, schedule_id: str) -> bool:
        """
        Arm a loaded schedule that has no pending timer.

        Returns:
            True if a timer was armed
        """
        with self._lock:
            scheduled = self._scheduled.get(schedule_id)
            if scheduled is None or not scheduled.schedule.is_active:
                return False
            if schedule_id in self._armed or schedule_id in self._running:
                return False
            self._arm(schedule_id, scheduled.schedule.next_execution or self._clock())
        logger.info("Resumed schedule %s", schedule_id)
        return True

    def resume_all(self) -> int:
        with self._lock:
            ids = list(self._scheduled)
        return sum(1 for schedule_id in ids if self.resume(schedule_id))

    # Inspection

    def get_schedule(self, schedule_id: str) -> Optional[ScheduledIntent]:
        with self._lock:
            scheduled = self._scheduled.get(schedule_id)
            return scheduled.model_copy(deep=True) if scheduled is not None else None

    def cleanup_invalid_schedules(self, permissions: PermissionStore) -> List[str]:
        """
        Stop schedules whose permission is missing, expired or revoked.

        Returns:
            Ids of the stopped schedules
        """
        with self._lock:
            candidates = list(self._scheduled.values())
        removed = [
            s.id for s in candidates
            if not permissions.is_active(s.intent.permission_id)
        ]
        for schedule_id in removed:
            self.stop_schedule(schedule_id)
        if removed:
            logger.info("Cleaned up %d schedules with inactive permissions", len(removed))
        return removed

    def get_active_schedules(self, permissions: Optional[PermissionStore] = None) -> List[ScheduledIntent]:
        """
        List active schedules.

        When a PermissionStore is given, schedules whose permission is no
        longer active are stopped first and left out.
        """
        if permissions is not None:
            self.cleanup_invalid_schedules(permissions)
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._scheduled.values()
                if s.schedule.is_active
            ]

    def next_fire_time(self) -> Optional[datetime]:
        """Earliest pending fire time, or None if nothing is armed."""
        with self._lock:
            self._drop_stale()
            return self._queue[0][0] if self._queue else None

    def _drop_stale(self) -> None:
        while self._queue:
            _, sequence, schedule_id = self._queue[0]
            if self._armed.get(schedule_id) == sequence:
                return
            heapq.heappop(self._queue)

    def debug_info(self) -> Dict[str, Any]:
        """Summary of the registry and timers, for diagnostics."""
        now = self._clock()
        with self._lock:
            schedules = []
            for schedule_id, scheduled in self._scheduled.items():
                next_execution = scheduled.schedule.next_execution or now
                remaining = (next_execution - now).total_seconds()
                schedules.append({
                    'id': schedule_id,
                    'description': scheduled.intent.description,
                    'frequency': scheduled.schedule.frequency.value if scheduled.schedule.frequency else 'unknown',
                    'interval': scheduled.schedule.interval,
                    'next_execution': next_execution.isoformat(),
                    'time_until_next': f"{round(remaining)}s" if remaining > 0 else 'overdue',
                    'is_active': scheduled.schedule.is_active,
                    'armed': schedule_id in self._armed,
                })
            return {
                'total_schedules': len(self._scheduled),
                'armed_timers': len(self._armed),
                'schedules': schedules,
            }

    # Firing

    def run_pending(self) -> List[Execution]:
        """
        Fire every schedule that is due, each at most once.

        Returns:
            Executions produced by this call, in firing order
        """
        now = self._clock()
        due: List[str] = []
        with self._lock:
            if self._pipeline is None:
                raise RuntimeError("ScheduleEngine has no pipeline attached")
            while self._queue and self._queue[0][0] <= now:
                _, sequence, schedule_id = heapq.heappop(self._queue)
                if self._armed.get(schedule_id) != sequence:
                    continue
                del self._armed[schedule_id]
                due.append(schedule_id)

        executions = []
        for schedule_id in due:
            execution = self._fire(schedule_id)
            if execution is not None:
                executions.append(execution)
        return executions

    def _fire(self, schedule_id: str) -> Optional[Execution]:
        with self._lock:
            scheduled = self._scheduled.get(schedule_id)
            if scheduled is None or not scheduled.schedule.is_active:
                return None
            self._running.add(schedule_id)
            intent = scheduled.intent.model_copy(deep=True)

        logger.info("Firing schedule %s: %r", schedule_id, intent.description)
        execution: Optional[Execution] = None
        error: Optional[BaseException] = None
        try:
            execution = self._pipeline(intent, schedule_id)
        except Exception as e:
            # The pipeline absorbs its own failures; this only guards the loop
            error = e
        finally:
            with self._lock:
                self._running.discard(schedule_id)

        if execution is not None:
            logger.info("Scheduled run of %s finished: %s", schedule_id, execution.status.value)

        action = self.supervisor.review(scheduled, execution, error)
        if action == SupervisorAction.PAUSE:
            self.stop_schedule(schedule_id)
            return execution

        with self._lock:
            current = self._scheduled.get(schedule_id)
            if current is None or not current.schedule.is_active:
                logger.info("Schedule %s no longer active, not re-arming", schedule_id)
                return execution
            schedule = current.schedule
            try:
                next_execution = calculate_next_execution(
                    schedule.frequency, schedule.interval, self._clock()
                )
            except ValidationError as e:
                next_execution = None
                logger.warning("Cannot re-arm schedule %s: %s", schedule_id, e)
            else:
                schedule.next_execution = next_execution
                self._arm(schedule_id, next_execution)
        if next_execution is None:
            self.stop_schedule(schedule_id)
            return execution
        self.save()
        logger.debug("Schedule %s re-armed for %s", schedule_id, schedule.next_execution.isoformat())
        return execution

    def run_forever(self, stop_event: threading.Event, poll_interval: float = 1.0) -> None:
        """
        Poll ``run_pending`` until ``stop_event`` is set.

        Sleeps until the next fire time, but never longer than ``poll_interval``
        so newly registered schedules are picked up promptly.
        """
        logger.info("Scheduler loop started")
        while not stop_event.is_set():
            self.run_pending()
            wait = poll_interval
            upcoming = self.next_fire_time()
            if upcoming is not None:
                until = (upcoming - self._clock()).total_seconds()
                wait = max(0.0, min(poll_interval, until))
            stop_event.wait(wait)
        logger.info("Scheduler loop stopped")
