"""Audit log synchronization against a peer.

Each cycle asks the peer which event IDs it already holds for every local
log, then streams exactly the missing events to it in one request. Delivery
is at-least-once: an interrupted cycle is simply repeated on the next
interval, and the receiving store absorbs the duplicates.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator

import httpx

from ..config import LogSyncConfig
from ..discovery import Discovery, Identification, is_network_url
from ..ranges import RangeSet
from ..wire import Descriptor, Event, MalformedRecordError
from .store import LogStore

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """Direction of log synchronization."""

    NONE = "none"
    PUSH = "push"  # Send local events the peer lacks
    PULL = "pull"  # Fetch events of any owner the peer has and we lack
    PUSHPULL = "pushpull"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some logs failed, the rest synced
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable
    SKIPPED = "skipped"  # Nothing to do, or a cycle was already running


class ProtocolError(Exception):
    """The peer answered with a missing or unparsable record."""


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    events_pushed: int = 0
    events_pulled: int = 0
    logs_failed: int = 0
    error: str | None = None
    timestamp: datetime | None = field(default_factory=datetime.now)


class LogSyncTask:
    """Reconciles the local log store with the discovered peer.

    At most one cycle runs at a time per instance; an overlapping call
    returns a ``SKIPPED`` result instead of waiting.
    """

    def __init__(
        self,
        log_store: LogStore,
        discovery: Discovery,
        identification: Identification,
        endpoint: str = "auditlog",
        mode: SyncMode = SyncMode.PUSH,
        isolate_failures: bool = True,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync task.

        Args:
            log_store: Local log store to reconcile.
            discovery: Resolves the peer URL at the start of every cycle.
            identification: Resolves this node's owner ID.
            endpoint: Path prefix of the log endpoints on the peer.
            mode: Which direction(s) ``execute`` synchronizes.
            isolate_failures: On a protocol error skip only the affected
                log instead of aborting the rest of the cycle.
            timeout: Request timeout in seconds.
            max_retries: Attempts per descriptor query before giving up.
            retry_backoff: Initial delay between attempts, doubled each time.
            transport: Optional httpx transport, used to talk to in-process peers.
        """
        self.log_store = log_store
        self.discovery = discovery
        self.identification = identification
        self.endpoint = endpoint.strip("/")
        self.mode = mode
        self.isolate_failures = isolate_failures
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.interval_seconds = 60
        self._transport = transport
        self._lock = asyncio.Lock()
        self._last_sync: datetime | None = None
        self._last_result: SyncResult | None = None
        self._consecutive_failures = 0

    @classmethod
    def from_config(
        cls,
        config: LogSyncConfig,
        log_store: LogStore,
        discovery: Discovery,
        identification: Identification,
        **kwargs: Any,
    ) -> "LogSyncTask":
        task = cls(log_store, discovery, identification, **kwargs)
        task.reconfigure(config)
        return task

    def reconfigure(self, config: LogSyncConfig) -> None:
        """Apply a new log sync configuration.

        Takes effect from the next cycle; a running cycle keeps its settings.
        """
        self.endpoint = config.endpoint.strip("/")
        self.mode = SyncMode(config.mode)
        self.isolate_failures = config.isolate_failures
        self.timeout = config.timeout
        self.max_retries = max(1, config.max_retries)
        self.interval_seconds = config.interval_seconds
        logger.info(
            f"Log sync reconfigured: mode={self.mode.value}, "
            f"endpoint={self.endpoint}, interval={self.interval_seconds}s"
        )

    # ==================== Entry points ====================

    async def execute(self) -> SyncResult:
        """Run one cycle in the configured mode."""
        if self.mode == SyncMode.PUSH:
            return await self.push()
        if self.mode == SyncMode.PULL:
            return await self.pull()
        if self.mode == SyncMode.PUSHPULL:
            return await self.push_pull()
        logger.debug("Log sync mode is none, nothing to do")
        return SyncResult(status=SyncStatus.SKIPPED)

    async def push(self) -> SyncResult:
        """Send the peer every local event it does not hold yet."""
        return await self._guarded(self._push)

    async def pull(self) -> SyncResult:
        """Fetch every event the peer holds and the local store lacks."""
        return await self._guarded(self._pull)

    async def push_pull(self) -> SyncResult:
        """Push, then pull.

        Returns:
            Combined SyncResult; an offline peer stops after the push.
        """

        async def both(base_url: str) -> SyncResult:
            push_result = await self._push(base_url)
            if push_result.status == SyncStatus.OFFLINE:
                return push_result

            pull_result = await self._pull(base_url)
            statuses = {push_result.status, pull_result.status} - {SyncStatus.SKIPPED}
            if not statuses:
                status = SyncStatus.SKIPPED
            elif statuses == {SyncStatus.SUCCESS}:
                status = SyncStatus.SUCCESS
            elif SyncStatus.OFFLINE in statuses:
                status = SyncStatus.OFFLINE
            elif statuses == {SyncStatus.FAILED}:
                status = SyncStatus.FAILED
            else:
                status = SyncStatus.PARTIAL

            return SyncResult(
                status=status,
                events_pushed=push_result.events_pushed,
                events_pulled=pull_result.events_pulled,
                logs_failed=push_result.logs_failed + pull_result.logs_failed,
                error=pull_result.error or push_result.error,
            )

        return await self._guarded(both)

    async def _guarded(self, cycle) -> SyncResult:
        if self._lock.locked():
            logger.warning("Log sync already running, skipping this invocation")
            return SyncResult(status=SyncStatus.SKIPPED, error="Sync already running")

        async with self._lock:
            url = self.discovery.discover()
            if not url:
                result = SyncResult(
                    status=SyncStatus.FAILED, error="No server URL discovered"
                )
            elif not is_network_url(url):
                logger.debug(f"Peer {url} is local, skipping log sync")
                return SyncResult(status=SyncStatus.SKIPPED)
            else:
                try:
                    result = await cycle(f"{url.rstrip('/')}/{self.endpoint}")
                except httpx.TransportError as e:
                    logger.warning(f"Unable to reach {url} for log sync: {e!r}")
                    result = SyncResult(status=SyncStatus.OFFLINE, error=str(e) or repr(e))

            self._record(result)
            return result

    def _record(self, result: SyncResult) -> None:
        self._last_result = result
        if result.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL):
            self._consecutive_failures = 0
            self._last_sync = result.timestamp
        elif result.status in (SyncStatus.FAILED, SyncStatus.OFFLINE):
            self._consecutive_failures += 1

    @staticmethod
    def _cycle_status(logs_attempted: int, logs_failed: int) -> SyncStatus:
        if logs_failed and logs_failed == logs_attempted:
            return SyncStatus.FAILED
        if logs_failed:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """GET with exponential backoff on server errors and timeouts.

        Raises:
            httpx.TransportError: When the peer stays unreachable.
        """
        backoff = self.retry_backoff
        for attempt in range(1, self.max_retries):
            try:
                response = await client.get(url, params=params)
                if response.status_code < 500:
                    return response
                logger.warning(
                    f"Server error {response.status_code}, "
                    f"attempt {attempt}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                logger.warning(
                    f"Request timeout, attempt {attempt}/{self.max_retries}"
                )

            await asyncio.sleep(backoff)
            backoff *= 2

        return await client.get(url, params=params)

    # ==================== Push ====================

    async def _query_descriptor(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        owner_id: str,
        log_id: int,
    ) -> Descriptor:
        response = await self._get_with_retry(
            client, f"{base_url}/query", params={"tid": owner_id, "logid": log_id}
        )
        if response.status_code != 200:
            raise ProtocolError(
                f"Query for log {log_id} answered HTTP {response.status_code}"
            )

        lines = response.text.splitlines()
        if not lines or not lines[0].strip():
            raise ProtocolError(f"Empty descriptor for log {log_id}")

        try:
            return Descriptor.parse(lines[0])
        except MalformedRecordError as e:
            raise ProtocolError(f"Invalid descriptor for log {log_id}: {e}") from e

    async def _push(self, base_url: str) -> SyncResult:
        owner_id = self.identification.get_id()
        deltas: list[tuple[int, RangeSet]] = []
        logs_attempted = 0
        logs_failed = 0
        error: str | None = None

        async with self._client() as client:
            for log_id in self.log_store.log_ids():
                highest = self.log_store.highest_id(log_id)
                if highest == 0:
                    continue

                logs_attempted += 1
                try:
                    remote = await self._query_descriptor(
                        client, base_url, owner_id, log_id
                    )
                except ProtocolError as e:
                    logger.error(f"Log sync protocol error: {e}")
                    logs_failed += 1
                    error = str(e)
                    if not self.isolate_failures:
                        return SyncResult(
                            status=SyncStatus.FAILED,
                            logs_failed=logs_failed,
                            error=error,
                        )
                    continue

                delta = remote.ranges.diff_dest(RangeSet.span(1, highest))
                if delta:
                    logger.debug(f"Log {log_id}: peer lacks {delta}")
                    deltas.append((log_id, delta))

            if not deltas:
                return SyncResult(
                    status=self._cycle_status(logs_attempted, logs_failed),
                    logs_failed=logs_failed,
                    error=error,
                )

            sent = 0

            async def body() -> AsyncIterator[bytes]:
                nonlocal sent
                for log_id, delta in deltas:
                    for r in delta.range_iterator():
                        for event in self.log_store.get(log_id, r.low, r.high):
                            line = event.for_owner(owner_id).to_representation()
                            yield (line + "\n").encode("utf-8")
                            sent += 1

            response = await client.post(
                f"{base_url}/send",
                content=body(),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )

        if response.status_code != 200:
            logger.error(
                f"Peer rejected {sent} events with HTTP {response.status_code}"
            )
            return SyncResult(
                status=SyncStatus.FAILED,
                logs_failed=logs_failed,
                error=f"HTTP {response.status_code}: {response.text}",
            )

        logger.info(f"Pushed {sent} events for {len(deltas)} logs of {owner_id}")
        return SyncResult(
            status=self._cycle_status(logs_attempted, logs_failed),
            events_pushed=sent,
            logs_failed=logs_failed,
            error=error,
        )

    # ==================== Pull ====================

    async def _pull(self, base_url: str) -> SyncResult:
        local_descriptor = getattr(self.log_store, "descriptor", None)
        if local_descriptor is None:
            raise TypeError(
                f"{type(self.log_store).__name__} cannot describe foreign logs, "
                "pull needs a multi-owner store"
            )

        pulled = 0
        logs_attempted = 0
        logs_failed = 0
        error: str | None = None

        async with self._client() as client:
            response = await self._get_with_retry(client, f"{base_url}/query")
            if response.status_code != 200:
                logger.error(f"Descriptor query answered HTTP {response.status_code}")
                return SyncResult(
                    status=SyncStatus.FAILED,
                    error=f"HTTP {response.status_code}: {response.text}",
                )

            try:
                remotes = [
                    Descriptor.parse(line)
                    for line in response.text.splitlines()
                    if line.strip()
                ]
            except MalformedRecordError as e:
                logger.error(f"Log sync protocol error: {e}")
                return SyncResult(status=SyncStatus.FAILED, logs_failed=1, error=str(e))

            for remote in remotes:
                local = local_descriptor(remote.owner_id, remote.log_id)
                delta = local.ranges.diff_dest(remote.ranges)
                if not delta:
                    continue

                logs_attempted += 1
                try:
                    events = await self._receive(client, base_url, remote, delta)
                except ProtocolError as e:
                    logger.error(f"Log sync protocol error: {e}")
                    logs_failed += 1
                    error = str(e)
                    if not self.isolate_failures:
                        return SyncResult(
                            status=SyncStatus.FAILED,
                            events_pulled=pulled,
                            logs_failed=logs_failed,
                            error=error,
                        )
                    continue

                pulled += self.log_store.append(events)

        if pulled:
            logger.info(f"Pulled {pulled} events from {base_url}")
        return SyncResult(
            status=self._cycle_status(logs_attempted, logs_failed),
            events_pulled=pulled,
            logs_failed=logs_failed,
            error=error,
        )

    async def _receive(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        remote: Descriptor,
        delta: RangeSet,
    ) -> list[Event]:
        response = await self._get_with_retry(
            client,
            f"{base_url}/receive",
            params={
                "tid": remote.owner_id,
                "logid": remote.log_id,
                "range": delta.to_representation(),
            },
        )
        if response.status_code != 200:
            raise ProtocolError(
                f"Receive for {remote.owner_id}/{remote.log_id} answered "
                f"HTTP {response.status_code}"
            )

        try:
            return [
                Event.parse(line) for line in response.text.splitlines() if line.strip()
            ]
        except MalformedRecordError as e:
            raise ProtocolError(
                f"Invalid event for {remote.owner_id}/{remote.log_id}: {e}"
            ) from e

    # ==================== Scheduling ====================

    async def run_forever(
        self,
        interval_seconds: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between cycles, defaults to the
                configured interval.
            stop_event: Event to signal loop should stop.
        """
        logger.info(
            f"Starting log sync loop with "
            f"{interval_seconds or self.interval_seconds}s interval"
        )

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.execute()
                logger.info(
                    f"Log sync: {result.status.value}, "
                    f"pushed={result.events_pushed}, "
                    f"pulled={result.events_pulled}, "
                    f"failed_logs={result.logs_failed}"
                )
            except Exception as e:
                logger.error(f"Log sync loop error: {e}")
                self._consecutive_failures += 1

            interval = interval_seconds or self.interval_seconds
            wait_time = interval
            if self._consecutive_failures > 0:
                wait_time = min(interval * (2 ** self._consecutive_failures), 3600)
                logger.debug(f"Backing off log sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Log sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "server_url": self.discovery.discover(),
            "mode": self.mode.value,
            "endpoint": self.endpoint,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "last_status": self._last_result.status.value if self._last_result else None,
            "consecutive_failures": self._consecutive_failures,
            "local_logs": len(self.log_store.log_ids()),
        }
