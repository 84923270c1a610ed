"""
Unit tests for event intake and deduplication.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from webhook_forwarder.webhooks.intake import EventIntake


@pytest.fixture
def handler():
    return AsyncMock()


@pytest.fixture
def intake(broker, handler):
    return EventIntake(
        event_source=broker,
        webhook_id="wh_test",
        on_event=handler,
        poll_interval_seconds=0.01,
    )


def delivered_ids(handler):
    return [call.args[0].id for call in handler.call_args_list]


class TestSeeding:
    """Test the first poll."""

    @pytest.mark.asyncio
    async def test_first_poll_only_seeds(self, intake, broker, handler, event_factory):
        broker.add(event_factory("e1"))
        broker.add(event_factory("e2"))

        fresh = await intake.poll_once()

        assert fresh == []
        assert intake.is_seeded
        assert intake.seen_count == 2
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_seed_callback_receives_existing_events(self, broker, handler, event_factory):
        on_seed = AsyncMock()
        intake = EventIntake(broker, "wh_test", on_event=handler, on_seed=on_seed)
        broker.add(event_factory("e1"))

        await intake.poll_once()
        await intake.poll_once()

        on_seed.assert_awaited_once()
        assert [e.id for e in on_seed.call_args.args[0]] == ["e1"]

    @pytest.mark.asyncio
    async def test_empty_first_poll_still_seeds(self, intake, broker, handler, event_factory):
        await intake.poll_once()
        broker.add(event_factory("e1"))

        await intake.poll_once()

        assert delivered_ids(handler) == ["e1"]


class TestDedup:
    """Test that every event is delivered exactly once."""

    @pytest.mark.asyncio
    async def test_only_new_event_is_delivered(self, intake, broker, handler, event_factory):
        broker.add(event_factory("e1"))
        await intake.poll_once()

        broker.add(event_factory("e2"))
        await intake.poll_once()
        broker.add(event_factory("e3"))
        await intake.poll_once()

        assert delivered_ids(handler) == ["e2", "e3"]

    @pytest.mark.asyncio
    async def test_overlapping_polls_never_repeat(self, intake, broker, handler, event_factory):
        await intake.poll_once()
        broker.add(event_factory("e1"))
        broker.add(event_factory("e2"))

        await asyncio.gather(intake.poll_once(), intake.poll_once(), intake.poll_once())
        await intake.poll_once()

        assert sorted(delivered_ids(handler)) == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_pushed_event_shares_seen_set(self, intake, broker, handler, event_factory):
        await intake.poll_once()
        event = event_factory("e1")

        assert await intake.submit(event) is True
        assert await intake.submit(event) is False

        broker.add(event)
        await intake.poll_once()

        assert delivered_ids(handler) == ["e1"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_redeliver(self, intake, broker, handler, event_factory):
        handler.side_effect = RuntimeError("handler broke")
        await intake.poll_once()
        broker.add(event_factory("e1"))

        await intake.poll_once()
        await intake.poll_once()

        assert handler.await_count == 1


class TestPolling:
    """Test the polling loop."""

    @pytest.mark.asyncio
    async def test_poll_error_leaves_state_untouched(self, intake, broker, event_factory):
        broker.add(event_factory("e1"))
        broker.list_error = ConnectionError("broker unreachable")

        with pytest.raises(ConnectionError):
            await intake.poll_once()

        assert not intake.is_seeded
        assert intake.seen_count == 0

    @pytest.mark.asyncio
    async def test_loop_survives_poll_errors(self, intake, broker, handler, event_factory):
        broker.list_error = ConnectionError("broker unreachable")
        await intake.start()
        await asyncio.sleep(0.05)

        assert intake.is_running
        assert intake.get_stats()["poll_errors"] >= 1

        broker.list_error = None
        await asyncio.sleep(0.05)
        broker.add(event_factory("e1"))
        await asyncio.sleep(0.05)
        await intake.stop()

        assert intake.is_seeded
        assert delivered_ids(handler) == ["e1"]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, intake):
        await intake.start()
        await intake.stop()
        await intake.stop()

        assert not intake.is_running
