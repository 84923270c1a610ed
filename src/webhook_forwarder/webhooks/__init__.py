"""
Webhook delivery pipeline.

Provides event intake, rule-based routing, forwarding and retry
coordination for events received from the broker.
"""

from .delivery import DeliveryExecutor
from .events import (
    DeliveryOutcome,
    DeliveryRule,
    DeliveryTask,
    Destination,
    Event,
    EventStatus,
    OriginRequest,
    OutcomeStatus,
)
from .intake import EventIntake
from .retry import DeliveryState, RetryCoordinator
from .routing import RoutingResolver, resolve_destinations

__all__ = [
    "DeliveryExecutor",
    "DeliveryOutcome",
    "DeliveryRule",
    "DeliveryState",
    "DeliveryTask",
    "Destination",
    "Event",
    "EventIntake",
    "EventStatus",
    "OriginRequest",
    "OutcomeStatus",
    "RetryCoordinator",
    "RoutingResolver",
    "resolve_destinations",
]
