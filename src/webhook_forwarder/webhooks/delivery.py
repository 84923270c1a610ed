"""
Webhook forwarding executor.

Performs a single HTTP forwarding attempt of an event's origin
request to one destination and captures timing and response.
"""

import asyncio
import base64
import binascii
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp
import structlog
from yarl import URL

from .events import DeliveryOutcome, DeliveryTask, OriginRequest, OutcomeStatus

logger = structlog.get_logger(__name__)

STRIPPED_HEADERS = frozenset({"host"})


def decode_body(body: Optional[str]) -> Optional[str]:
    """Decode a base64 transport-encoded body, falling back to the raw text."""
    if not body:
        return None
    try:
        return base64.b64decode(body, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return body


def encode_body(body: bytes) -> str:
    """Encode a response body the same way request bodies are transported."""
    return base64.b64encode(body).decode("ascii")


def forward_headers(origin: OriginRequest) -> Dict[str, str]:
    """Origin headers minus the ones the destination must resolve itself."""
    return {k: v for k, v in origin.headers.items() if k.lower() not in STRIPPED_HEADERS}


def _flatten_headers(headers: Any) -> Dict[str, str]:
    flattened: Dict[str, str] = {}
    for key in headers.keys():
        flattened[key] = ", ".join(headers.getall(key))
    return flattened


class DeliveryExecutor:
    """
    Forwards one delivery task per call.

    Every HTTP response counts as a successful delivery, including
    4xx and 5xx statuses, which are stored for visibility. Only
    transport failures (refused connections, timeouts, DNS or TLS
    errors) produce a failure outcome.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        max_concurrent_deliveries: int = 100,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the executor.

        Args:
            timeout_seconds: Total HTTP timeout per attempt
            max_concurrent_deliveries: Maximum concurrent forwarding calls
            session: Optional shared client session
        """
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(max_concurrent_deliveries)
        self._max_concurrent = max_concurrent_deliveries

        self._attempts = 0
        self._transport_failures = 0
        self._total_latency_ms = 0.0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def execute(self, task: DeliveryTask) -> DeliveryOutcome:
        """
        Perform exactly one forwarding attempt.

        Args:
            task: The (event, destination) attempt to execute

        Returns:
            Outcome with status, latency and captured response or error
        """
        url = task.destination.url
        if not _is_absolute(url):
            logger.error(
                "Destination URL is not absolute",
                destination=task.destination.name,
                url=url,
            )
            return DeliveryOutcome.failure(f"Destination URL must be absolute: {url!r}")

        origin = task.event.origin_request
        headers = forward_headers(origin)
        body = decode_body(origin.body)

        logger.debug(
            "Forwarding request",
            event_id=task.event.id,
            destination=task.destination.name,
            method=origin.method,
            url=url,
            attempt=task.attempt_number,
        )

        async with self._semaphore:
            self._attempts += 1
            start_time = time.monotonic()
            try:
                status, response_body, response_headers = await self._send(
                    origin.method, url, headers, body
                )
            except asyncio.TimeoutError:
                latency_ms = (time.monotonic() - start_time) * 1000
                self._transport_failures += 1
                error = f"Request timed out after {self.timeout_seconds}s"
                logger.warning(
                    "Forwarding timed out",
                    event_id=task.event.id,
                    destination=task.destination.name,
                    timeout_seconds=self.timeout_seconds,
                )
                return DeliveryOutcome.failure(error, latency_ms=latency_ms)
            except aiohttp.ClientError as e:
                latency_ms = (time.monotonic() - start_time) * 1000
                self._transport_failures += 1
                error = str(e) or e.__class__.__name__
                logger.warning(
                    "Forwarding failed",
                    event_id=task.event.id,
                    destination=task.destination.name,
                    error=error,
                )
                return DeliveryOutcome.failure(error, latency_ms=latency_ms)

            latency_ms = (time.monotonic() - start_time) * 1000
            self._total_latency_ms += latency_ms

        logger.info(
            "Forwarding completed",
            event_id=task.event.id,
            destination=task.destination.name,
            response_status=status,
            response_time_ms=round(latency_ms, 2),
        )

        return DeliveryOutcome(
            status=OutcomeStatus.SUCCESS,
            latency_ms=latency_ms,
            http_status=status,
            response_body=encode_body(response_body),
            response_headers=response_headers,
        )

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str],
    ) -> Tuple[int, bytes, Dict[str, str]]:
        session = self._get_session()
        async with session.request(
            method,
            url,
            headers=headers,
            data=body.encode("utf-8") if body is not None else None,
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            allow_redirects=False,
        ) as response:
            response_body = await response.read()
            return response.status, response_body, _flatten_headers(response.headers)

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def get_stats(self) -> Dict[str, Any]:
        """Get forwarding statistics."""
        completed = self._attempts - self._transport_failures
        return {
            "attempts": self._attempts,
            "transport_failures": self._transport_failures,
            "average_response_time_ms": (
                self._total_latency_ms / completed if completed > 0 else 0.0
            ),
            "configuration": {
                "timeout_seconds": self.timeout_seconds,
                "max_concurrent_deliveries": self._max_concurrent,
            },
        }


def _is_absolute(url: str) -> bool:
    try:
        parsed = URL(url)
    except (TypeError, ValueError):
        return False
    return parsed.is_absolute() and parsed.scheme in ("http", "https")
