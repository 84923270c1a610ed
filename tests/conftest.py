"""
Pytest configuration and fixtures for webhook forwarder tests.
"""

from typing import Dict, List, Optional, Tuple

import pytest

from webhook_forwarder.client.base import EventSource, OutcomeSink
from webhook_forwarder.config.settings import (
    BrokerConfig,
    Config,
    DeliveryConfig,
    DeliveryRuleConfig,
    DestinationConfig,
    HealthConfig,
    IntakeConfig,
    ServerConfig,
)
from webhook_forwarder.webhooks.events import (
    DeliveryOutcome,
    Destination,
    Event,
    EventStatus,
    OriginRequest,
    OutcomeStatus,
)


class InMemoryBroker(EventSource, OutcomeSink):
    """Event source and outcome sink backed by plain dictionaries."""

    def __init__(self, events: Optional[List[Event]] = None):
        self.events: Dict[str, Event] = {e.id: e for e in events or []}
        self.status_updates: List[Tuple[str, EventStatus, Optional[int], Optional[str]]] = []
        self.outcomes: List[Tuple[str, str, DeliveryOutcome, Optional[str], Optional[str]]] = []
        self.completed: List[Tuple[str, str]] = []
        self.failed: List[Tuple[str, str, str]] = []
        self.list_error: Optional[Exception] = None

    def add(self, event: Event) -> None:
        self.events[event.id] = event

    async def list_events(self, webhook_id: str) -> List[Event]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.events.values())

    async def get_event_by_id(self, event_id: str) -> Optional[Event]:
        return self.events.get(event_id)

    async def update_event_status(self, event_id, status, retry_count=None, failure_reason=None):
        self.status_updates.append((event_id, status, retry_count, failure_reason))
        event = self.events.get(event_id)
        if event is not None:
            self.events[event_id] = event.with_status(
                status, retry_count=retry_count, failure_reason=failure_reason
            )

    async def record_delivery_outcome(
        self, event_id, destination_name, outcome, lineage_id=None, replay_of=None
    ):
        self.outcomes.append((event_id, destination_name, outcome, lineage_id, replay_of))

    async def mark_completed(self, event_id, destination_name):
        self.completed.append((event_id, destination_name))

    async def mark_failed(self, event_id, destination_name, failure_reason):
        self.failed.append((event_id, destination_name, failure_reason))

    def statuses(self, event_id: str) -> List[Tuple[EventStatus, Optional[int]]]:
        return [(s, rc) for eid, s, rc, _ in self.status_updates if eid == event_id]


class ScriptedExecutor:
    """Executor returning queued outcomes, then successes."""

    def __init__(self, outcomes: Optional[List[DeliveryOutcome]] = None):
        self.outcomes = list(outcomes or [])
        self.tasks = []
        self.closed = False

    async def execute(self, task):
        self.tasks.append(task)
        if self.outcomes:
            return self.outcomes.pop(0)
        return success_outcome()

    async def close(self):
        self.closed = True

    def get_stats(self):
        return {"attempts": len(self.tasks)}


def success_outcome(http_status: int = 200) -> DeliveryOutcome:
    return DeliveryOutcome(status=OutcomeStatus.SUCCESS, latency_ms=1.0, http_status=http_status)


def make_event(
    event_id: str = "evt_1",
    source: str = "stripe",
    status: EventStatus = EventStatus.PENDING,
    retry_count: int = 0,
    max_retries: int = 3,
    body: Optional[str] = None,
) -> Event:
    return Event(
        id=event_id,
        source=source,
        webhook_id="wh_test",
        origin_request=OriginRequest(
            method="POST",
            headers={"content-type": "application/json", "host": "broker.example.com"},
            body=body,
        ),
        status=status,
        retry_count=retry_count,
        max_retries=max_retries,
    )


@pytest.fixture
def broker():
    """In-memory event source and outcome sink."""
    return InMemoryBroker()


@pytest.fixture
def local_destination():
    return Destination(name="local", url="http://localhost:3000/api/webhooks")


@pytest.fixture
def test_config():
    """Create a test configuration."""
    return Config(
        version="0.1.0-test",
        broker=BrokerConfig(
            api_url="http://localhost:8000",
            api_key="test-api-key",
            webhook_id="wh_test",
            timeout_seconds=5.0,
        ),
        server=ServerConfig(log_level="DEBUG"),
        delivery=DeliveryConfig(
            timeout_seconds=5.0,
            initial_backoff_seconds=0.0,
            max_backoff_seconds=0.0,
        ),
        intake=IntakeConfig(poll_interval_seconds=0.01),
        health=HealthConfig(enabled=False),
        destination=[
            DestinationConfig(name="local", url="http://localhost:3000/api/webhooks"),
            DestinationConfig(name="audit", url="https://audit.example.com/hooks", ping=False),
        ],
        delivery_rules=[
            DeliveryRuleConfig(source="stripe", destination="local"),
            DeliveryRuleConfig(source="*", destination="audit"),
        ],
    )


@pytest.fixture
def event_factory():
    """Build events with test defaults."""
    return make_event


@pytest.fixture
def executor_factory():
    """Build executors that replay a list of outcomes."""
    return ScriptedExecutor
