"""
Retry coordination for webhook deliveries.

Drives each (event, destination) lineage through
``pending -> processing -> {completed | failed}``, re-scheduling
transient failures with backoff until the retry budget is spent.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterable, List, Optional, Tuple

import structlog

from ..utils.logging import delivery_context
from .delivery import DeliveryExecutor
from .events import (
    DeliveryOutcome,
    DeliveryTask,
    Destination,
    Event,
    EventStatus,
)

if TYPE_CHECKING:
    from ..client.base import EventSource, OutcomeSink
    from ..utils.health import HealthMonitor

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryState:
    """Retry bookkeeping for one (event, destination) lineage."""

    event_id: str
    destination: str
    max_retries: int
    lineage_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_count: int = 0
    base_retry_count: int = 0
    status: EventStatus = EventStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    failure_reason: Optional[str] = None
    replay_of: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.event_id, self.destination)

    @property
    def total_retry_count(self) -> int:
        """Retries including the counter carried over from a replayed event."""
        return self.base_retry_count + self.retry_count

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "event_id": self.event_id,
            "destination": self.destination,
            "lineage_id": self.lineage_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "base_retry_count": self.base_retry_count,
            "max_retries": self.max_retries,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "failure_reason": self.failure_reason,
            "replay_of": self.replay_of,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


class RetryCoordinator:
    """
    Owns the delivery state machine of every active lineage.

    A lineage runs its attempts sequentially, so a pair never has two
    attempts in flight. Event-level status is derived from all lineages
    of the event: it stays non-terminal while any destination is still
    being delivered, becomes ``completed`` when every destination
    completed and ``failed`` otherwise.
    """

    def __init__(
        self,
        executor: DeliveryExecutor,
        event_source: "EventSource",
        outcome_sink: "OutcomeSink",
        health_monitor: Optional["HealthMonitor"] = None,
        gate_on_health: bool = True,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        backoff_multiplier: float = 2.0,
        max_history_size: int = 10000,
    ):
        """
        Initialize the coordinator.

        Args:
            executor: Performs single forwarding attempts
            event_source: Receives event-level status updates
            outcome_sink: Receives per-attempt outcomes and lineage results
            health_monitor: Optional source of destination health records
            gate_on_health: Skip attempts to destinations known to be down
            initial_backoff_seconds: Delay before the first retry
            max_backoff_seconds: Ceiling for the retry delay
            backoff_multiplier: Exponential growth factor of the delay
            max_history_size: Finished lineages kept for inspection
        """
        self.executor = executor
        self.event_source = event_source
        self.outcome_sink = outcome_sink
        self.health_monitor = health_monitor
        self.gate_on_health = gate_on_health
        self.initial_backoff_seconds = initial_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.backoff_multiplier = backoff_multiplier

        self._lock = asyncio.Lock()
        self._active: Dict[Tuple[str, str], DeliveryState] = {}
        self._lineages: Dict[str, Dict[str, DeliveryState]] = {}
        self._history: Deque[DeliveryState] = deque(maxlen=max_history_size)

        self._tasks_created = 0
        self._completed = 0
        self._failed = 0
        self._retries = 0

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** (retry_number - 1))
        return min(delay, self.max_backoff_seconds)

    async def deliver(self, event: Event, destination: Destination) -> Optional[DeliveryState]:
        """Deliver one event to one destination until a terminal state."""
        states = await self.deliver_all(event, [destination])
        return states[0] if states else None

    async def deliver_all(
        self,
        event: Event,
        destinations: Iterable[Destination],
        replay_of: Optional[str] = None,
    ) -> List[DeliveryState]:
        """
        Deliver an event to several destinations concurrently.

        All lineages are registered before any attempt starts so the
        event-level status accounts for every destination.

        Args:
            event: Event to deliver
            destinations: Resolved destinations
            replay_of: Original event id when this is a manual replay

        Returns:
            Final state of every lineage that was started
        """
        pending: List[Tuple[DeliveryState, Destination]] = []
        async with self._lock:
            for destination in destinations:
                state = self._register(event, destination, replay_of)
                if state is not None:
                    pending.append((state, destination))

        if not pending:
            return []

        return list(
            await asyncio.gather(
                *(self._run_lineage(event, destination, state) for state, destination in pending)
            )
        )

    async def replay(
        self, event: Event, destinations: Iterable[Destination]
    ) -> List[DeliveryState]:
        """
        Manually re-deliver an event, including one in a terminal state.

        Each replay is a new lineage referencing the original event. The
        event's retry counter is carried forward for information only;
        the new lineage gets a fresh retry budget.
        """
        logger.info(
            "webhook_request_replay",
            event_id=event.id,
            previous_status=event.status.value,
            previous_retry_count=event.retry_count,
        )
        return await self.deliver_all(event, destinations, replay_of=event.id)

    def _register(
        self, event: Event, destination: Destination, replay_of: Optional[str]
    ) -> Optional[DeliveryState]:
        key = (event.id, destination.name)
        if key in self._active:
            logger.warning(
                "Delivery already in flight, not starting another",
                event_id=event.id,
                destination=destination.name,
            )
            return None

        if replay_of is None and event.is_terminal:
            logger.info(
                "Event already in terminal status, not delivering",
                event_id=event.id,
                status=event.status.value,
            )
            return None

        if replay_of is None:
            state = DeliveryState(
                event_id=event.id,
                destination=destination.name,
                max_retries=event.max_retries,
                retry_count=min(event.retry_count, event.max_retries),
            )
        else:
            state = DeliveryState(
                event_id=event.id,
                destination=destination.name,
                max_retries=event.max_retries,
                base_retry_count=event.retry_count,
                replay_of=replay_of,
            )

        self._active[key] = state
        self._lineages.setdefault(event.id, {})[destination.name] = state
        return state

    async def _run_lineage(
        self, event: Event, destination: Destination, state: DeliveryState
    ) -> DeliveryState:
        with delivery_context(event.id, destination.name, state.lineage_id):
            return await self._drive_lineage(event, destination, state)

    async def _drive_lineage(
        self, event: Event, destination: Destination, state: DeliveryState
    ) -> DeliveryState:
        try:
            while True:
                state.attempts += 1
                state.status = EventStatus.PROCESSING
                self._tasks_created += 1
                await self._publish_event_status(event.id)

                task = DeliveryTask(
                    event=event,
                    destination=destination,
                    attempt_number=state.attempts,
                    lineage_id=state.lineage_id,
                    replay_of=state.replay_of,
                )
                outcome = await self._attempt(task)
                await self._record_outcome(task, outcome)

                if outcome.is_success:
                    state.status = EventStatus.COMPLETED
                    state.completed_at = time.time()
                    self._completed += 1
                    await self._finish_lineage(state)
                    return state

                state.last_error = outcome.error

                if state.retry_count < state.max_retries:
                    state.retry_count += 1
                    state.status = EventStatus.PENDING
                    self._retries += 1
                    await self._publish_event_status(event.id)

                    delay = self.backoff_delay(state.retry_count)
                    logger.info(
                        "Retrying delivery",
                        event_id=event.id,
                        destination=destination.name,
                        retry_count=state.retry_count,
                        max_retries=state.max_retries,
                        next_attempt_in_seconds=delay,
                        error=outcome.error,
                    )
                    if delay > 0:
                        await asyncio.sleep(delay)
                    continue

                state.status = EventStatus.FAILED
                state.failure_reason = (
                    f"Max retries ({state.max_retries}) reached. Last error: {outcome.error}"
                )
                state.completed_at = time.time()
                self._failed += 1
                await self._finish_lineage(state)
                return state
        except asyncio.CancelledError:
            # Left in processing so the next start re-evaluates the event
            if not state.status.is_terminal:
                state.status = EventStatus.PROCESSING
                logger.info(
                    "Delivery interrupted",
                    event_id=event.id,
                    destination=destination.name,
                    retry_count=state.retry_count,
                )
                await self._publish_event_status(event.id)
            raise
        finally:
            self._active.pop(state.key, None)
            lineages = self._lineages.get(state.event_id, {})
            if lineages and all(s.status.is_terminal for s in lineages.values()):
                for finished in self._lineages.pop(state.event_id).values():
                    self._history.append(finished)

    async def _attempt(self, task: DeliveryTask) -> DeliveryOutcome:
        if self.gate_on_health and self.health_monitor is not None:
            record = self.health_monitor.get_health(task.destination.name)
            if record is not None and not record.is_healthy:
                logger.info(
                    "Destination unhealthy, attempt not sent",
                    event_id=task.event.id,
                    destination=task.destination.name,
                    last_checked_at=record.last_checked_at,
                )
                return DeliveryOutcome.failure(
                    f"Destination {task.destination.name} is unhealthy"
                )

        try:
            return await self.executor.execute(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Delivery attempt raised",
                event_id=task.event.id,
                destination=task.destination.name,
                error=str(e),
                exc_info=True,
            )
            return DeliveryOutcome.failure(f"Delivery exception: {e}")

    async def _record_outcome(self, task: DeliveryTask, outcome: DeliveryOutcome) -> None:
        try:
            await self.outcome_sink.record_delivery_outcome(
                task.event.id,
                task.destination.name,
                outcome,
                lineage_id=task.lineage_id,
                replay_of=task.replay_of,
            )
        except Exception as e:
            logger.error(
                "Failed to record delivery outcome",
                event_id=task.event.id,
                destination=task.destination.name,
                error=str(e),
            )

    async def _finish_lineage(self, state: DeliveryState) -> None:
        if state.status == EventStatus.COMPLETED:
            logger.info(
                "webhook_request_completed",
                event_id=state.event_id,
                destination=state.destination,
                attempts=state.attempts,
                retry_count=state.retry_count,
            )
        else:
            logger.warning(
                "webhook_request_failed",
                event_id=state.event_id,
                destination=state.destination,
                attempts=state.attempts,
                failure_reason=state.failure_reason,
            )

        try:
            if state.status == EventStatus.COMPLETED:
                await self.outcome_sink.mark_completed(state.event_id, state.destination)
            else:
                await self.outcome_sink.mark_failed(
                    state.event_id, state.destination, state.failure_reason or ""
                )
        except Exception as e:
            logger.error(
                "Failed to persist lineage result",
                event_id=state.event_id,
                destination=state.destination,
                error=str(e),
            )

        await self._publish_event_status(state.event_id)

    def aggregate_status(
        self, event_id: str
    ) -> Optional[Tuple[EventStatus, int, Optional[str]]]:
        """Event-level (status, retry_count, failure_reason) over its lineages."""
        lineages = list(self._lineages.get(event_id, {}).values())
        if not lineages:
            return None

        retry_count = max(s.total_retry_count for s in lineages)
        if any(not s.status.is_terminal for s in lineages):
            if any(s.status == EventStatus.PROCESSING for s in lineages):
                return EventStatus.PROCESSING, retry_count, None
            return EventStatus.PENDING, retry_count, None

        failed = [s for s in lineages if s.status == EventStatus.FAILED]
        if failed:
            return EventStatus.FAILED, retry_count, failed[-1].failure_reason
        return EventStatus.COMPLETED, retry_count, None

    async def _publish_event_status(self, event_id: str) -> None:
        aggregate = self.aggregate_status(event_id)
        if aggregate is None:
            return
        status, retry_count, failure_reason = aggregate
        try:
            await self.event_source.update_event_status(
                event_id,
                status,
                retry_count=retry_count,
                failure_reason=failure_reason,
            )
        except Exception as e:
            logger.error(
                "Failed to update event status",
                event_id=event_id,
                status=status.value,
                error=str(e),
            )

    def is_in_flight(self, event_id: str, destination_name: str) -> bool:
        return (event_id, destination_name) in self._active

    def get_state(self, event_id: str, destination_name: str) -> Optional[DeliveryState]:
        """Latest lineage state for a pair, active or recently finished."""
        state = self._lineages.get(event_id, {}).get(destination_name)
        if state is not None:
            return state
        for finished in reversed(self._history):
            if finished.event_id == event_id and finished.destination == destination_name:
                return finished
        return None

    @property
    def active_count(self) -> int:
        return len(self._active)

    def get_recent_lineages(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recently finished lineages, newest first."""
        recent = list(self._history)[-limit:]
        return [state.to_dict() for state in reversed(recent)]

    def get_stats(self) -> Dict[str, Any]:
        """Get retry statistics."""
        return {
            "active_lineages": len(self._active),
            "tasks_created": self._tasks_created,
            "lineages_completed": self._completed,
            "lineages_failed": self._failed,
            "retries_scheduled": self._retries,
            "configuration": {
                "gate_on_health": self.gate_on_health,
                "initial_backoff_seconds": self.initial_backoff_seconds,
                "max_backoff_seconds": self.max_backoff_seconds,
                "backoff_multiplier": self.backoff_multiplier,
            },
        }
