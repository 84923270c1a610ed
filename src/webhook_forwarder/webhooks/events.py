"""
Event definitions for the delivery pipeline.

Defines the inbound webhook event, its origin request and the
ephemeral task/outcome records that flow between components.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventStatus(str, Enum):
    """Delivery status of an event or of a single destination lineage."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.FAILED)


class OutcomeStatus(str, Enum):
    """Result of one forwarding attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class OriginRequest:
    """The HTTP request the broker received from the webhook provider."""

    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    size: int = 0
    client_ip: Optional[str] = None
    timestamp: Optional[datetime] = None
    source_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OriginRequest":
        data = data or {}
        headers = _pick(data, "headers", default={}) or {}
        return cls(
            method=str(_pick(data, "method", default="POST")).upper(),
            headers={str(k): str(v) for k, v in headers.items()},
            body=_pick(data, "body"),
            size=int(_pick(data, "size", default=0)),
            client_ip=_pick(data, "clientIp", "client_ip"),
            timestamp=_parse_timestamp(_pick(data, "timestamp")),
            source_url=_pick(data, "sourceUrl", "source_url"),
        )


@dataclass(frozen=True)
class Event:
    """
    Immutable record of one inbound webhook occurrence.

    Status changes never mutate an instance; use ``with_status`` to
    derive an updated copy.
    """

    id: str
    source: str = "*"
    webhook_id: Optional[str] = None
    origin_request: OriginRequest = field(default_factory=OriginRequest)
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        """Whether no further automatic delivery may happen."""
        return self.status.is_terminal

    def with_status(
        self,
        status: EventStatus,
        retry_count: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> "Event":
        """Return a copy with an updated status."""
        return replace(
            self,
            status=status,
            retry_count=self.retry_count if retry_count is None else retry_count,
            failure_reason=failure_reason if failure_reason is not None else self.failure_reason,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Build an event from a broker API payload."""
        return cls(
            id=str(data["id"]),
            source=str(_pick(data, "source", default="*")),
            webhook_id=_pick(data, "webhookId", "webhook_id"),
            origin_request=OriginRequest.from_dict(
                _pick(data, "originRequest", "origin_request")
            ),
            status=EventStatus(_pick(data, "status", default=EventStatus.PENDING.value)),
            retry_count=int(_pick(data, "retryCount", "retry_count", default=0)),
            max_retries=int(_pick(data, "maxRetries", "max_retries", default=3)),
            failure_reason=_pick(data, "failedReason", "failure_reason"),
            timestamp=_parse_timestamp(_pick(data, "timestamp")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "id": self.id,
            "source": self.source,
            "webhook_id": self.webhook_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "failure_reason": self.failure_reason,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "origin_request": {
                "method": self.origin_request.method,
                "size": self.origin_request.size,
                "client_ip": self.origin_request.client_ip,
            },
        }


@dataclass(frozen=True)
class Destination:
    """A named forwarding target with a canonical absolute URL."""

    name: str
    url: str
    ping: Any = True

    @property
    def probe_enabled(self) -> bool:
        return self.ping is not False

    @property
    def probe_url(self) -> str:
        """URL the health monitor should probe."""
        if isinstance(self.ping, str):
            return self.ping
        return self.url


@dataclass(frozen=True)
class DeliveryRule:
    """Routes events whose source matches ``source`` to ``destination``."""

    destination: str
    source: str = "*"

    def matches(self, source: str) -> bool:
        return self.source == "*" or self.source == source


@dataclass
class DeliveryTask:
    """One forwarding attempt for an (event, destination) pair."""

    event: Event
    destination: Destination
    attempt_number: int = 1
    lineage_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    replay_of: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.event.id, self.destination.name)


@dataclass
class DeliveryOutcome:
    """Result of executing a single delivery task."""

    status: OutcomeStatus
    latency_ms: float = 0.0
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    attempted_at: float = field(default_factory=time.time)

    @property
    def is_success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def failure(cls, error: str, latency_ms: float = 0.0) -> "DeliveryOutcome":
        return cls(status=OutcomeStatus.FAILURE, latency_ms=latency_ms, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "response_body": self.response_body,
            "response_headers": self.response_headers,
            "error": self.error,
            "attempted_at": self.attempted_at,
        }
