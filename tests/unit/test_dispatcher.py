"""
Unit tests for the webhook dispatcher.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from webhook_forwarder.dispatcher import INTERRUPTED_REASON, WebhookDispatcher
from webhook_forwarder.webhooks.events import DeliveryOutcome, EventStatus


@pytest.fixture
def executor(executor_factory):
    return executor_factory()


@pytest.fixture
def dispatcher(test_config, broker, executor):
    return WebhookDispatcher(
        test_config,
        event_source=broker,
        outcome_sink=broker,
        executor=executor,
    )


def destinations_of(executor):
    return sorted(t.destination.name for t in executor.tasks)


class TestHandleEvent:
    """Test routing of new events."""

    @pytest.mark.asyncio
    async def test_fan_out(self, dispatcher, broker, executor, event_factory):
        event = event_factory(source="stripe")
        broker.add(event)

        task = await dispatcher.handle_event(event)
        states = await task

        assert len(states) == 2
        assert destinations_of(executor) == ["audit", "local"]
        assert broker.events[event.id].status == EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wildcard_only(self, dispatcher, broker, executor, event_factory):
        event = event_factory(source="github")

        await (await dispatcher.handle_event(event))

        assert destinations_of(executor) == ["audit"]

    @pytest.mark.asyncio
    async def test_no_matching_rule(self, test_config, broker, executor, event_factory):
        test_config.rules = test_config.rules[:1]
        dispatcher = WebhookDispatcher(
            test_config, event_source=broker, outcome_sink=broker, executor=executor
        )
        event = event_factory(source="github")
        broker.add(event)

        assert await dispatcher.handle_event(event) is None
        assert executor.tasks == []
        assert broker.status_updates == []
        assert broker.events[event.id].status == EventStatus.PENDING
        assert dispatcher.get_stats()["events_skipped"] == 1

    @pytest.mark.asyncio
    async def test_terminal_event_skipped(self, dispatcher, executor, event_factory):
        event = event_factory(status=EventStatus.COMPLETED)

        assert await dispatcher.handle_event(event) is None
        assert executor.tasks == []

    @pytest.mark.asyncio
    async def test_routing_provider_is_read_per_event(
        self, test_config, broker, executor, event_factory
    ):
        tables = [test_config.routing_table()]
        dispatcher = WebhookDispatcher(
            test_config,
            event_source=broker,
            outcome_sink=broker,
            executor=executor,
            routing_provider=lambda: tables[-1],
        )
        await (await dispatcher.handle_event(event_factory("e1", source="stripe")))

        test_config.rules = []
        tables.append(test_config.routing_table())

        assert await dispatcher.handle_event(event_factory("e2", source="stripe")) is None
        assert len(executor.tasks) == 2


class TestRecovery:
    """Test resumption of interrupted deliveries."""

    @pytest.mark.asyncio
    async def test_interrupted_event_is_retried(
        self, dispatcher, broker, executor, event_factory
    ):
        event = event_factory(source="github", status=EventStatus.PROCESSING, retry_count=1)
        broker.add(event)

        await dispatcher.recover_interrupted([event])
        await asyncio.gather(*dispatcher._tasks)

        assert broker.status_updates[0][1:3] == (EventStatus.PENDING, 2)
        assert len(executor.tasks) == 1
        stored = broker.events[event.id]
        assert stored.status == EventStatus.COMPLETED
        assert stored.retry_count == 2

    @pytest.mark.asyncio
    async def test_interrupted_event_without_retries_fails(
        self, dispatcher, broker, executor, event_factory
    ):
        event = event_factory(status=EventStatus.PROCESSING, retry_count=3, max_retries=3)
        broker.add(event)

        await dispatcher.recover_interrupted([event])

        assert executor.tasks == []
        stored = broker.events[event.id]
        assert stored.status == EventStatus.FAILED
        assert stored.failure_reason == INTERRUPTED_REASON

    @pytest.mark.asyncio
    async def test_other_statuses_untouched(self, dispatcher, broker, executor, event_factory):
        events = [
            event_factory("e1", status=EventStatus.PENDING),
            event_factory("e2", status=EventStatus.COMPLETED),
            event_factory("e3", status=EventStatus.FAILED),
        ]

        await dispatcher.recover_interrupted(events)

        assert executor.tasks == []
        assert broker.status_updates == []

    @pytest.mark.asyncio
    async def test_pending_retry_is_resumed(self, dispatcher, broker, executor, event_factory):
        event = event_factory(source="github", status=EventStatus.PENDING, retry_count=2)
        broker.add(event)

        await dispatcher.recover_interrupted([event])
        await asyncio.gather(*dispatcher._tasks)

        assert len(executor.tasks) == 1
        stored = broker.events[event.id]
        assert stored.status == EventStatus.COMPLETED
        assert stored.retry_count == 2
        assert dispatcher.get_stats()["events_recovered"] == 1


class TestReplay:
    """Test manual replay."""

    @pytest.mark.asyncio
    async def test_replay_completed_event(self, dispatcher, broker, executor, event_factory):
        event = event_factory(source="github", status=EventStatus.COMPLETED, retry_count=2)
        broker.add(event)

        states = await (await dispatcher.replay_event(event.id))

        assert len(states) == 1
        assert states[0].replay_of == event.id
        assert states[0].base_retry_count == 2
        assert len(executor.tasks) == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, dispatcher):
        with pytest.raises(LookupError):
            await dispatcher.replay_event("missing")


class TestLifecycle:
    """Test start and stop."""

    @pytest.mark.asyncio
    async def test_polling_delivers_only_new_events(
        self, dispatcher, broker, executor, event_factory
    ):
        broker.add(event_factory("e1", source="github"))
        broker.add(event_factory("e2", source="github"))

        await dispatcher.start()
        await asyncio.sleep(0.05)
        broker.add(event_factory("e3", source="github"))
        await asyncio.sleep(0.05)
        await dispatcher.stop()

        assert [t.event.id for t in executor.tasks] == ["e3"]
        assert executor.closed

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_deliveries(
        self, test_config, broker, event_factory
    ):
        started = asyncio.Event()

        class HangingExecutor:
            async def execute(self, task):
                started.set()
                await asyncio.sleep(60)
                return DeliveryOutcome.failure("unreachable")

            async def close(self):
                pass

            def get_stats(self):
                return {}

        dispatcher = WebhookDispatcher(
            test_config, event_source=broker, outcome_sink=broker, executor=HangingExecutor()
        )
        await dispatcher.start()
        event = event_factory(source="github")
        broker.add(event)
        task = await dispatcher.handle_event(event)
        await started.wait()

        await dispatcher.stop()

        assert task.cancelled()
        assert broker.events[event.id].status == EventStatus.PROCESSING
        assert dispatcher.coordinator.active_count == 0

    @pytest.mark.asyncio
    async def test_restart_retries_event_stopped_during_backoff(
        self, test_config, broker, executor_factory, event_factory
    ):
        test_config.delivery = test_config.delivery.model_copy(
            update={"initial_backoff_seconds": 10.0, "max_backoff_seconds": 10.0}
        )
        failing = executor_factory([DeliveryOutcome.failure("Cannot connect to host")] * 4)
        first = WebhookDispatcher(
            test_config, event_source=broker, outcome_sink=broker, executor=failing
        )
        await first.start()
        await asyncio.sleep(0.05)
        event = event_factory("e_backoff", source="github")
        broker.add(event)
        while not (failing.tasks and broker.events[event.id].status == EventStatus.PENDING):
            await asyncio.sleep(0.01)

        await first.stop()

        stored = broker.events[event.id]
        assert stored.status == EventStatus.PROCESSING
        assert stored.retry_count == 1

        healthy = executor_factory()
        second = WebhookDispatcher(
            test_config, event_source=broker, outcome_sink=broker, executor=healthy
        )
        await second.start()
        await asyncio.sleep(0.05)
        await second.stop()

        assert [t.event.id for t in healthy.tasks] == ["e_backoff"]
        stored = broker.events[event.id]
        assert stored.status == EventStatus.COMPLETED
        assert stored.retry_count == 2

    @pytest.mark.asyncio
    async def test_health_monitor_lifecycle(self, test_config, broker, executor):
        monitor = MagicMock()
        monitor.start_probing = AsyncMock()
        monitor.stop = AsyncMock()
        monitor.get_all_health.return_value = {}
        dispatcher = WebhookDispatcher(
            test_config,
            event_source=broker,
            outcome_sink=broker,
            executor=executor,
            health_monitor=monitor,
        )

        await dispatcher.start()
        health = await dispatcher.health_check()
        await dispatcher.stop()
        await dispatcher.stop()

        monitor.start_probing.assert_awaited_once()
        monitor.stop.assert_awaited_once()
        assert health["status"] == "healthy"
        assert health["dispatcher_running"] is True

    @pytest.mark.asyncio
    async def test_stats(self, dispatcher):
        stats = dispatcher.get_stats()

        assert stats["running"] is False
        assert stats["health"] is None
        assert "retry" in stats and "intake" in stats
