"""
Event intake with identifier deduplication.

Polls the event source on an interval and hands each event that has
not been seen before to the pipeline exactly once per process.
"""

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Set

import structlog

from .events import Event

if TYPE_CHECKING:
    from ..client.base import EventSource

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]
SeedHandler = Callable[[List[Event]], Awaitable[None]]


class EventIntake:
    """
    Poll-based producer of new events.

    The first successful poll only seeds the seen-set: events that
    already existed when the process started are reported to
    ``on_seed`` instead of being delivered. Every later poll delivers
    the events whose identifiers are not yet in the seen-set.
    """

    def __init__(
        self,
        event_source: "EventSource",
        webhook_id: str,
        on_event: EventHandler,
        poll_interval_seconds: float = 5.0,
        on_seed: Optional[SeedHandler] = None,
    ):
        """
        Initialize intake.

        Args:
            event_source: Source to list events from
            webhook_id: Webhook whose events are polled
            on_event: Called once for each newly discovered event
            poll_interval_seconds: Delay between polls
            on_seed: Called with the events found by the seeding poll
        """
        self.event_source = event_source
        self.webhook_id = webhook_id
        self.on_event = on_event
        self.on_seed = on_seed
        self.poll_interval_seconds = poll_interval_seconds

        self._seen: Set[str] = set()
        self._seen_lock = asyncio.Lock()
        self._seeded = False
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._polls = 0
        self._poll_errors = 0
        self._events_dispatched = 0

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    @property
    def is_seeded(self) -> bool:
        return self._seeded

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop. The first poll runs immediately."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Event intake started",
            webhook_id=self.webhook_id,
            poll_interval_seconds=self.poll_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop polling. Deliveries already handed off keep running."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Event intake stopped", seen_events=len(self._seen))

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._poll_errors += 1
                logger.error(
                    "Event poll failed, retrying next interval",
                    webhook_id=self.webhook_id,
                    error=str(e),
                )
            await asyncio.sleep(self.poll_interval_seconds)

    async def poll_once(self) -> List[Event]:
        """
        Run one poll.

        Returns:
            Events handed to ``on_event`` by this poll

        Raises:
            Exception: Whatever the event source raised; the seen-set is
                left unchanged in that case
        """
        events = await self.event_source.list_events(self.webhook_id)
        self._polls += 1

        fresh: List[Event] = []
        async with self._seen_lock:
            seeding = not self._seeded
            if seeding:
                self._seen.update(event.id for event in events)
                self._seeded = True
            else:
                for event in events:
                    if event.id in self._seen:
                        continue
                    self._seen.add(event.id)
                    fresh.append(event)

        if seeding:
            logger.info("Seeded seen events", count=len(events))
            if self.on_seed is not None:
                try:
                    await self.on_seed(list(events))
                except Exception as e:
                    logger.error("Seed handler failed", error=str(e), exc_info=True)

        for event in fresh:
            await self._dispatch(event)
        return fresh

    async def submit(self, event: Event) -> bool:
        """
        Feed an externally pushed event through the same dedup path.

        Returns:
            True if the event was new and handed to ``on_event``
        """
        async with self._seen_lock:
            if event.id in self._seen:
                logger.debug("Ignoring already seen event", event_id=event.id)
                return False
            self._seen.add(event.id)

        await self._dispatch(event)
        return True

    async def _dispatch(self, event: Event) -> None:
        self._events_dispatched += 1
        logger.info(
            "webhook_event_received",
            event_id=event.id,
            source=event.source,
            status=event.status.value,
        )
        try:
            await self.on_event(event)
        except Exception as e:
            logger.error("Event handler failed", event_id=event.id, error=str(e), exc_info=True)

    def get_stats(self):
        """Get intake statistics."""
        return {
            "running": self._running,
            "seeded": self._seeded,
            "seen_events": len(self._seen),
            "polls": self._polls,
            "poll_errors": self._poll_errors,
            "events_dispatched": self._events_dispatched,
            "poll_interval_seconds": self.poll_interval_seconds,
        }
