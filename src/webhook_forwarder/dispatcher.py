"""
Main webhook dispatcher implementation.

Wires event intake, routing, health monitoring, forwarding and retry
coordination together and owns their lifecycle.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Tuple

import structlog

from .client.base import EventSource, OutcomeSink
from .client.broker_client import BrokerClient
from .config.settings import Config, ConfigReloader, RoutingTable
from .utils.health import HealthMonitor, summarize_health
from .webhooks.delivery import DeliveryExecutor
from .webhooks.events import Destination, Event, EventStatus
from .webhooks.intake import EventIntake
from .webhooks.retry import DeliveryState, RetryCoordinator
from .webhooks.routing import RoutingResolver

logger = structlog.get_logger(__name__)

INTERRUPTED_REASON = "Delivery interrupted"


class WebhookDispatcher:
    """
    Long-running delivery agent.

    Every collaborator can be injected; anything not supplied is built
    from the configuration. The routing table is read from
    ``routing_provider`` on every event so configuration changes apply
    without a restart.
    """

    def __init__(
        self,
        config: Config,
        event_source: Optional[EventSource] = None,
        outcome_sink: Optional[OutcomeSink] = None,
        health_monitor: Optional[HealthMonitor] = None,
        executor: Optional[DeliveryExecutor] = None,
        routing_provider: Optional[Callable[[], RoutingTable]] = None,
        config_path: Optional[Path] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Forwarder configuration
            event_source: Event source, defaults to a broker client
            outcome_sink: Outcome sink, defaults to the same broker client
            health_monitor: Destination prober, built when health is enabled
            executor: Forwarding executor
            routing_provider: Returns the current routing table
            config_path: Configuration file watched for routing changes
        """
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.broker_client: Optional[BrokerClient] = None
        if event_source is None or outcome_sink is None:
            self.broker_client = BrokerClient(config.broker)
        self.event_source = event_source or self.broker_client
        self.outcome_sink = outcome_sink or self.broker_client

        if health_monitor is None and config.health.enabled:
            health_monitor = HealthMonitor(
                probe_timeout_seconds=config.health.probe_timeout_seconds,
                healthy_interval_seconds=config.health.healthy_interval_seconds,
                unhealthy_interval_seconds=config.health.unhealthy_interval_seconds,
            )
        self.health_monitor = health_monitor

        self.executor = executor or DeliveryExecutor(
            timeout_seconds=config.delivery.timeout_seconds,
            max_concurrent_deliveries=config.delivery.max_concurrent_deliveries,
        )

        if routing_provider is None:
            if config_path is not None:
                routing_provider = ConfigReloader(config_path, initial=config)
            else:
                table = config.routing_table()
                routing_provider = lambda: table  # noqa: E731
        self.routing_provider = routing_provider
        self.resolver = RoutingResolver()

        self.coordinator = RetryCoordinator(
            executor=self.executor,
            event_source=self.event_source,
            outcome_sink=self.outcome_sink,
            health_monitor=self.health_monitor,
            gate_on_health=config.delivery.gate_on_health,
            initial_backoff_seconds=config.delivery.initial_backoff_seconds,
            max_backoff_seconds=config.delivery.max_backoff_seconds,
            backoff_multiplier=config.delivery.backoff_multiplier,
        )

        self.intake = EventIntake(
            event_source=self.event_source,
            webhook_id=config.broker.webhook_id,
            on_event=self.handle_event,
            poll_interval_seconds=config.intake.poll_interval_seconds,
            on_seed=self.recover_interrupted,
        )

        self._tasks: Set[asyncio.Task] = set()
        self._probed_destinations: Tuple[Destination, ...] = ()

        self._events_handled = 0
        self._events_skipped = 0
        self._events_recovered = 0
        self._replays = 0

    @property
    def running(self) -> bool:
        """Check if dispatcher is running."""
        return self._running

    async def start(self) -> None:
        """Connect to the broker, start probing and start polling."""
        if self._running:
            return

        logger.info("Starting webhook dispatcher", webhook_id=self.config.broker.webhook_id)

        try:
            if self.broker_client is not None:
                await self.broker_client.connect()

            table = self.routing_provider()
            for rule in table.unresolved_rules():
                logger.warning(
                    "Delivery rule references unknown destination",
                    destination=rule.destination,
                    source=rule.source,
                )

            if self.health_monitor is not None:
                await self.health_monitor.start_probing(table.destinations)
                self._probed_destinations = table.destinations

            await self.intake.start()
            self._running = True
            self._shutdown_event.clear()

            logger.info(
                "Dispatcher started successfully",
                destinations=[d.name for d in table.destinations],
                rules=len(table.rules),
                health_monitoring=self.health_monitor is not None,
            )

        except Exception as e:
            logger.error("Failed to start dispatcher", error=str(e), exc_info=True)
            await self.close()
            raise

    async def stop(self) -> None:
        """Stop polling, cancel in-flight deliveries and release resources."""
        if not self._running:
            return

        logger.info("Stopping webhook dispatcher")
        self._running = False
        self._shutdown_event.set()
        await self.close()
        logger.info("Dispatcher stopped")

    async def close(self) -> None:
        """Release every component without waiting for a shutdown signal."""
        await self.intake.stop()

        # Cancelled lineages publish "processing" and are recovered on next start
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled in-flight deliveries", count=len(tasks))

        if self.health_monitor is not None:
            await self.health_monitor.stop()

        await self.executor.close()

        if self.broker_client is not None:
            await self.broker_client.disconnect()

    async def run(self) -> None:
        """
        Run until SIGINT or SIGTERM is received.

        This is the main entry point for the ``serve`` command.
        """
        try:
            await self.start()
            self._setup_signal_handlers()

            try:
                await self._shutdown_event.wait()
            except asyncio.CancelledError:
                logger.info("Dispatcher operation cancelled")

        except Exception as e:
            logger.error("Dispatcher error", error=str(e), exc_info=True)
            raise
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if sys.platform != "win32":
            # Unix-like systems
            loop = asyncio.get_running_loop()

            def signal_handler(signum: int) -> None:
                logger.info(f"Received signal {signum}, initiating shutdown")
                self._shutdown_event.set()

            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, signal_handler, signum)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _refresh_probes(self, table: RoutingTable) -> None:
        if self.health_monitor is None or not self._running:
            return
        if table.destinations == self._probed_destinations:
            return
        await self.health_monitor.update_destinations(table.destinations)
        self._probed_destinations = table.destinations

    async def _resolve(self, event: Event) -> List[Destination]:
        table = self.routing_provider()
        await self._refresh_probes(table)
        return self.resolver.resolve(event.source, table.rules, table.destinations)

    async def handle_event(self, event: Event) -> Optional[asyncio.Task]:
        """
        Route an event and start delivering it to every matching destination.

        Args:
            event: Newly discovered event

        Returns:
            Task running the deliveries, or None if nothing was started
        """
        if event.is_terminal:
            logger.info(
                "Skipping event in terminal status",
                event_id=event.id,
                status=event.status.value,
            )
            self._events_skipped += 1
            return None

        destinations = await self._resolve(event)
        if not destinations:
            logger.info(
                "webhook_event_skipped",
                event_id=event.id,
                source=event.source,
                reason="no matching delivery rule",
            )
            self._events_skipped += 1
            return None

        self._events_handled += 1
        logger.info(
            "webhook_event_routed",
            event_id=event.id,
            source=event.source,
            destinations=[d.name for d in destinations],
        )
        return self._spawn(self.coordinator.deliver_all(event, destinations))

    async def recover_interrupted(self, events: List[Event]) -> None:
        """
        Resume events that a previous run left in ``processing``.

        The interruption counts as a failed attempt: the event is
        retried while retries remain and marked failed otherwise.
        A ``pending`` event with a nonzero retry count was waiting out
        its backoff when the process died; it is resumed as is, since
        that retry was already charged.
        """
        for event in events:
            if event.status == EventStatus.PENDING and event.retry_count > 0:
                self._events_recovered += 1
                logger.info(
                    "Resuming delivery that was waiting to retry",
                    event_id=event.id,
                    retry_count=event.retry_count,
                    max_retries=event.max_retries,
                )
                await self.handle_event(event)
                continue
            if event.status != EventStatus.PROCESSING:
                continue

            self._events_recovered += 1
            if event.retry_count < event.max_retries:
                recovered = event.with_status(
                    EventStatus.PENDING, retry_count=event.retry_count + 1
                )
                logger.info(
                    "Recovering interrupted delivery",
                    event_id=event.id,
                    retry_count=recovered.retry_count,
                    max_retries=event.max_retries,
                )
                await self._update_status(recovered)
                await self.handle_event(recovered)
            else:
                failed = event.with_status(EventStatus.FAILED, failure_reason=INTERRUPTED_REASON)
                logger.warning(
                    "Interrupted delivery has no retries left",
                    event_id=event.id,
                    retry_count=event.retry_count,
                    max_retries=event.max_retries,
                )
                await self._update_status(failed)

    async def _update_status(self, event: Event) -> None:
        try:
            await self.event_source.update_event_status(
                event.id,
                event.status,
                retry_count=event.retry_count,
                failure_reason=event.failure_reason,
            )
        except Exception as e:
            logger.error(
                "Failed to update event status",
                event_id=event.id,
                status=event.status.value,
                error=str(e),
            )

    async def replay_event(self, event_id: str) -> Optional[asyncio.Task]:
        """
        Manually re-deliver an event, whatever its current status.

        Raises:
            LookupError: If the event does not exist
        """
        event = await self.event_source.get_event_by_id(event_id)
        if event is None:
            raise LookupError(f"Event not found: {event_id}")

        destinations = await self._resolve(event)
        if not destinations:
            logger.info(
                "webhook_event_skipped",
                event_id=event.id,
                source=event.source,
                reason="no matching delivery rule",
            )
            return None

        self._replays += 1
        return self._spawn(self.coordinator.replay(event, destinations))

    def get_delivery_state(self, event_id: str, destination_name: str) -> Optional[DeliveryState]:
        return self.coordinator.get_state(event_id, destination_name)

    def get_stats(self) -> Dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            "running": self._running,
            "events_handled": self._events_handled,
            "events_skipped": self._events_skipped,
            "events_recovered": self._events_recovered,
            "replays": self._replays,
            "in_flight_tasks": len(self._tasks),
            "intake": self.intake.get_stats(),
            "retry": self.coordinator.get_stats(),
            "delivery": self.executor.get_stats(),
            "health": self.health_monitor.get_stats() if self.health_monitor else None,
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Summarize dispatcher and destination health.

        Returns:
            Health status information
        """
        records = self.health_monitor.get_all_health() if self.health_monitor else {}
        return {
            "dispatcher_running": self._running,
            "broker_connected": (
                self.broker_client.is_connected if self.broker_client is not None else None
            ),
            "status": summarize_health(list(records.values())),
            "destinations": {name: record.to_dict() for name, record in records.items()},
            "active_lineages": self.coordinator.active_count,
        }
