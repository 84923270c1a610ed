"""
Destination health monitoring for the webhook forwarder.

Continuously probes each forwarding target and keeps the latest
liveness record per destination so deliveries can be gated on it.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp
import structlog
from yarl import URL

from ..webhooks.events import Destination

logger = structlog.get_logger(__name__)

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class ProbeKind(str, Enum):
    """How a destination is probed."""

    LOOPBACK = "loopback"
    REMOTE = "remote"


@dataclass(frozen=True)
class ProbeTarget:
    """Parsed probe address for a destination."""

    kind: ProbeKind
    url: str
    host: str
    port: int

    @classmethod
    def parse(cls, url: str) -> "ProbeTarget":
        """
        Parse a probe URL.

        Raises:
            ValueError: If the URL is not an absolute http(s) URL
        """
        try:
            parsed = URL(url)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Unparseable probe URL: {url!r}") from e

        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError(f"Probe URL must be an absolute http(s) URL: {url!r}")

        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        kind = ProbeKind.LOOPBACK if parsed.host in LOOPBACK_HOSTS else ProbeKind.REMOTE
        return cls(kind=kind, url=url, host=parsed.host, port=port)


@dataclass(frozen=True)
class HealthRecord:
    """
    Latest liveness assessment of one destination.

    ``process_id`` is reserved for identifying the process listening on a
    loopback destination. Probes do not look it up, so it is always None.
    """

    destination: str
    is_healthy: bool
    last_checked_at: float
    process_id: Optional[int] = None
    last_connected_at: Optional[float] = None
    last_disconnected_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "destination": self.destination,
            "is_healthy": self.is_healthy,
            "last_checked_at": self.last_checked_at,
            "process_id": self.process_id,
            "last_connected_at": self.last_connected_at,
            "last_disconnected_at": self.last_disconnected_at,
            "error": self.error,
        }


class HealthMonitor:
    """
    Liveness prober for forwarding destinations.

    Loopback destinations get a TCP connect check, remote ones a HEAD
    request. Each destination is probed on its own loop: slowly while
    healthy, quickly while unhealthy so recovery is noticed early.
    Probe failures only flip the health flag and never raise.
    """

    def __init__(
        self,
        probe_timeout_seconds: float = 1.0,
        healthy_interval_seconds: float = 5.0,
        unhealthy_interval_seconds: float = 2.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.probe_timeout_seconds = probe_timeout_seconds
        self.healthy_interval_seconds = healthy_interval_seconds
        self.unhealthy_interval_seconds = unhealthy_interval_seconds

        self._session = session
        self._owns_session = session is None

        self._records: Dict[str, HealthRecord] = {}
        self._records_lock = asyncio.Lock()

        self._destinations: Dict[str, Destination] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._reported_invalid: Set[Tuple[str, str]] = set()
        self._stopped = False

    async def start_probing(self, destinations: Iterable[Destination]) -> None:
        """Start a probe loop for every destination with probing enabled."""
        self._stopped = False
        await self.update_destinations(destinations)

        logger.info(
            "Health monitor started",
            probed_destinations=sorted(self._tasks.keys()),
        )

    async def update_destinations(self, destinations: Iterable[Destination]) -> None:
        """Reconcile probe loops with a new destination set."""
        if self._stopped:
            return

        wanted = {d.name: d for d in destinations if d.probe_enabled}

        for name in list(self._destinations.keys()):
            if name not in wanted or wanted[name] != self._destinations[name]:
                await self._cancel_probe(name)
                self._destinations.pop(name, None)
                if name not in wanted:
                    async with self._records_lock:
                        self._records.pop(name, None)

        for name, destination in wanted.items():
            if name in self._destinations:
                continue
            self._destinations[name] = destination

            try:
                target = ProbeTarget.parse(destination.probe_url)
            except ValueError as e:
                self._report_invalid(destination, str(e))
                await self._set_record(name, False, error=str(e))
                continue

            self._tasks[name] = asyncio.create_task(self._probe_loop(destination, target))

    def get_health(self, destination_name: str) -> Optional[HealthRecord]:
        """Return the last known record for a destination without doing I/O."""
        return self._records.get(destination_name)

    def get_all_health(self) -> Dict[str, HealthRecord]:
        return dict(self._records)

    @property
    def is_any_healthy(self) -> bool:
        return any(record.is_healthy for record in self._records.values())

    @property
    def is_all_healthy(self) -> bool:
        records = list(self._records.values())
        return len(records) > 0 and all(record.is_healthy for record in records)

    async def check_destination(self, destination: Destination) -> HealthRecord:
        """Probe a destination once and store the result."""
        try:
            target = ProbeTarget.parse(destination.probe_url)
        except ValueError as e:
            self._report_invalid(destination, str(e))
            return await self._set_record(destination.name, False, error=str(e))

        healthy, error = await self._probe(target)
        return await self._set_record(destination.name, healthy, error=error)

    async def stop(self) -> None:
        """Cancel every probe loop and release the HTTP session."""
        if self._stopped:
            return
        self._stopped = True

        for name in list(self._tasks.keys()):
            await self._cancel_probe(name)
        self._destinations.clear()

        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

        logger.info("Health monitor stopped")

    async def _cancel_probe(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _probe_loop(self, destination: Destination, target: ProbeTarget) -> None:
        logger.debug(
            "Starting probe loop",
            destination=destination.name,
            probe_kind=target.kind.value,
            probe_url=target.url,
        )
        while not self._stopped:
            healthy, error = await self._probe(target)
            await self._set_record(destination.name, healthy, error=error)

            interval = (
                self.healthy_interval_seconds if healthy else self.unhealthy_interval_seconds
            )
            await asyncio.sleep(interval)

    async def _probe(self, target: ProbeTarget) -> Tuple[bool, Optional[str]]:
        try:
            if target.kind == ProbeKind.LOOPBACK:
                return await self._probe_loopback(target)
            return await self._probe_remote(target)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Probe failed unexpectedly", url=target.url, error=str(e), exc_info=True)
            return False, f"Probe error: {e}"

    async def _probe_loopback(self, target: ProbeTarget) -> Tuple[bool, Optional[str]]:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port),
                timeout=self.probe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.debug("Socket connection timed out", host=target.host, port=target.port)
            return False, "Connection timeout"
        except OSError as e:
            logger.debug(
                "Socket connection error", host=target.host, port=target.port, error=str(e)
            )
            return False, str(e) or e.__class__.__name__

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True, None

    async def _probe_remote(self, target: ProbeTarget) -> Tuple[bool, Optional[str]]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            async with self._session.head(
                target.url,
                timeout=aiohttp.ClientTimeout(total=self.probe_timeout_seconds),
                allow_redirects=False,
            ) as response:
                if response.status < 400:
                    return True, None
                logger.debug(
                    "Ping URL check failed",
                    url=target.url,
                    status=response.status,
                    reason=response.reason,
                )
                return False, f"HTTP {response.status}"
        except asyncio.TimeoutError:
            return False, "Probe timed out"
        except aiohttp.ClientError as e:
            logger.debug("Error checking ping URL", url=target.url, error=str(e))
            return False, str(e) or e.__class__.__name__

    async def _set_record(
        self, name: str, healthy: bool, error: Optional[str] = None
    ) -> HealthRecord:
        now = time.time()
        async with self._records_lock:
            previous = self._records.get(name)
            if previous is None:
                record = HealthRecord(destination=name, is_healthy=healthy, last_checked_at=now)
            else:
                record = replace(previous, is_healthy=healthy, last_checked_at=now)

            changed = previous is None or previous.is_healthy != healthy
            if changed:
                if healthy:
                    record = replace(record, last_connected_at=now)
                else:
                    record = replace(record, last_disconnected_at=now)

            record = replace(record, error=error)
            self._records[name] = record

        if changed:
            logger.info(
                "destination_connection_established"
                if healthy
                else "destination_connection_lost",
                destination=name,
                error=error,
            )
        return record

    def _report_invalid(self, destination: Destination, error: str) -> None:
        key = (destination.name, destination.probe_url)
        if key in self._reported_invalid:
            return
        self._reported_invalid.add(key)
        logger.error(
            "Invalid probe target, destination marked unhealthy",
            destination=destination.name,
            probe_url=destination.probe_url,
            error=error,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get health monitor summary."""
        return {
            "probed_destinations": len(self._tasks),
            "healthy": [n for n, r in self._records.items() if r.is_healthy],
            "unhealthy": [n for n, r in self._records.items() if not r.is_healthy],
            "configuration": {
                "probe_timeout_seconds": self.probe_timeout_seconds,
                "healthy_interval_seconds": self.healthy_interval_seconds,
                "unhealthy_interval_seconds": self.unhealthy_interval_seconds,
            },
        }


def summarize_health(records: List[HealthRecord]) -> str:
    """Collapse records into ``healthy``, ``degraded`` or ``unhealthy``."""
    if not records or all(r.is_healthy for r in records):
        return "healthy"
    if any(r.is_healthy for r in records):
        return "degraded"
    return "unhealthy"
