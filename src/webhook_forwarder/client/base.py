"""
Collaborator contracts of the delivery pipeline.

The pipeline reads events and writes status and outcomes only through
these interfaces, so the persistence backend can be swapped freely.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..webhooks.events import DeliveryOutcome, Event, EventStatus


class EventSource(ABC):
    """Where events come from and where their status is stored."""

    @abstractmethod
    async def list_events(self, webhook_id: str) -> List[Event]:
        """
        List the current events of a webhook.

        Args:
            webhook_id: Webhook whose events are listed

        Returns:
            Events known to the source, in any order
        """

    @abstractmethod
    async def get_event_by_id(self, event_id: str) -> Optional[Event]:
        """Fetch a single event, or None if it does not exist."""

    @abstractmethod
    async def update_event_status(
        self,
        event_id: str,
        status: EventStatus,
        retry_count: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        """Persist the event-level delivery status."""


class OutcomeSink(ABC):
    """Receives delivery attempt outcomes and per-destination results."""

    @abstractmethod
    async def record_delivery_outcome(
        self,
        event_id: str,
        destination_name: str,
        outcome: DeliveryOutcome,
        lineage_id: Optional[str] = None,
        replay_of: Optional[str] = None,
    ) -> None:
        """Store the outcome of one forwarding attempt."""

    @abstractmethod
    async def mark_completed(self, event_id: str, destination_name: str) -> None:
        """Mark a destination's delivery of an event as completed."""

    @abstractmethod
    async def mark_failed(
        self, event_id: str, destination_name: str, failure_reason: str
    ) -> None:
        """Mark a destination's delivery of an event as permanently failed."""
