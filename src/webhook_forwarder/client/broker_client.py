"""
Event broker client for the webhook forwarder.

Talks to the broker REST API to list events, update their delivery
status and store delivery attempts.
"""

import asyncio
import random
from functools import wraps
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import structlog

from ..config.settings import BrokerConfig
from ..webhooks.events import DeliveryOutcome, Event, EventStatus
from .base import EventSource, OutcomeSink

logger = structlog.get_logger(__name__)


def _segment(value: str) -> str:
    """Escape an identifier for use as a single URL path segment."""
    return quote(value, safe="")


class BrokerClientError(Exception):
    """Base exception for broker client errors."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.status = status


def retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=10.0):
    """
    Decorator for retry with exponential backoff.

    Args:
        max_retries: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except BrokerClientError as e:
                    last_exception = e

                    # Client errors will not succeed on retry
                    if e.status is not None and 400 <= e.status < 500:
                        raise

                    if attempt < max_retries - 1:
                        delay = min(base_delay * (2**attempt) + random.uniform(0, 1), max_delay)  # nosec B311
                        logger.warning(
                            f"Broker request failed (attempt {attempt + 1}/{max_retries}), "
                            f"retrying in {delay:.2f}s: {str(e)}"
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"All broker retry attempts failed: {str(e)}")

            raise last_exception

        return wrapper

    return decorator


class BrokerClient(EventSource, OutcomeSink):
    """
    aiohttp client for the event broker.

    Implements both the event source and the outcome sink contracts
    over one pooled session. Read calls are retried with backoff;
    writes are attempted once and their errors surface to the caller.
    """

    def __init__(self, config: BrokerConfig, session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize broker client.

        Args:
            config: Broker connection settings
            session: Optional pre-built session, mostly for tests
        """
        self.config = config
        self._base_url = config.api_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._connector: Optional[aiohttp.TCPConnector] = None
        self._connection_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        """Open the pooled HTTP session."""
        async with self._connection_lock:
            if self.is_connected:
                return

            # Connector must be created while an event loop is running
            self._connector = aiohttp.TCPConnector(
                limit=100,
                limit_per_host=30,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=self._connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            )
            self._owns_session = True
            logger.info("Connected to event broker", api_url=self._base_url)

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        async with self._connection_lock:
            if self._session is None:
                return
            try:
                if self._owns_session:
                    await self._session.close()
                logger.info("Disconnected from event broker")
            except Exception as e:
                logger.warning("Error during disconnect", error=str(e))
            finally:
                self._session = None
                self._connector = None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Any:
        if not self.is_connected:
            await self.connect()

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method, url, json=json, headers=self._get_headers()
            ) as resp:
                if allow_not_found and resp.status == 404:
                    return None
                if resp.status >= 400:
                    error_text = await resp.text()
                    raise BrokerClientError(
                        f"{method} {path} failed with status {resp.status}: {error_text}",
                        status=resp.status,
                    )
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)
        except BrokerClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise BrokerClientError(
                f"{method} {path} failed: {str(e) or e.__class__.__name__}",
                original_error=e,
            ) from e

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    async def list_events(self, webhook_id: str) -> List[Event]:
        """
        List events of a webhook.

        Raises:
            BrokerClientError: If the broker cannot be reached or rejects the call
        """
        payload = await self._request("GET", f"/api/webhooks/{_segment(webhook_id)}/events")
        items = payload.get("events", []) if isinstance(payload, dict) else payload or []

        events = []
        for item in items:
            try:
                events.append(Event.from_dict(item))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(
                    "Skipping malformed event payload",
                    webhook_id=webhook_id,
                    event_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )

        logger.debug("Events listed", webhook_id=webhook_id, count=len(events))
        return events

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    async def get_event_by_id(self, event_id: str) -> Optional[Event]:
        payload = await self._request(
            "GET", f"/api/events/{_segment(event_id)}", allow_not_found=True
        )
        if payload is None:
            return None
        return Event.from_dict(payload)

    async def update_event_status(
        self,
        event_id: str,
        status: EventStatus,
        retry_count: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {"status": status.value}
        if retry_count is not None:
            payload["retryCount"] = retry_count
        if failure_reason is not None:
            payload["failedReason"] = failure_reason

        await self._request("PATCH", f"/api/events/{_segment(event_id)}/status", json=payload)
        logger.debug(
            "Event status updated",
            event_id=event_id,
            status=status.value,
            retry_count=retry_count,
        )

    async def record_delivery_outcome(
        self,
        event_id: str,
        destination_name: str,
        outcome: DeliveryOutcome,
        lineage_id: Optional[str] = None,
        replay_of: Optional[str] = None,
    ) -> None:
        payload = {
            "destination": destination_name,
            "lineageId": lineage_id,
            "replayOf": replay_of,
            "status": outcome.status.value,
            "responseCode": outcome.http_status,
            "responseTimeMs": round(outcome.latency_ms, 2),
            "responseBody": outcome.response_body,
            "responseHeaders": outcome.response_headers,
            "error": outcome.error,
            "attemptedAt": outcome.attempted_at,
        }
        await self._request("POST", f"/api/events/{_segment(event_id)}/deliveries", json=payload)

    async def mark_completed(self, event_id: str, destination_name: str) -> None:
        await self._request(
            "PATCH",
            f"/api/events/{_segment(event_id)}/deliveries/{_segment(destination_name)}",
            json={"status": EventStatus.COMPLETED.value},
        )

    async def mark_failed(
        self, event_id: str, destination_name: str, failure_reason: str
    ) -> None:
        await self._request(
            "PATCH",
            f"/api/events/{_segment(event_id)}/deliveries/{_segment(destination_name)}",
            json={"status": EventStatus.FAILED.value, "failedReason": failure_reason},
        )
