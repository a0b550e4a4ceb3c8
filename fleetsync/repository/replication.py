"""Mirrors repositories from a master server onto local replicas."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from ..discovery import Discovery, is_network_url
from ..log.sync_task import SyncStatus
from ..ranges import InvalidRangeError, RangeSet
from .base import ReplicationRepository

logger = logging.getLogger(__name__)


@dataclass
class ReplicationResult:
    """Result of a replication cycle."""

    status: SyncStatus
    versions_fetched: int = 0
    repositories_failed: int = 0
    error: str | None = None
    timestamp: datetime | None = field(default_factory=datetime.now)


class RepositoryReplicationTask:
    """Pulls the versions a replica is missing from the master.

    Without a limit every missing version is fetched. With a limit only the
    newest ``limit`` versions of the combined range are considered, so a
    fresh replica does not download the entire history.
    """

    def __init__(
        self,
        repositories: dict[str, ReplicationRepository],
        discovery: Discovery,
        limit: int | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the replication task.

        Args:
            repositories: Local replicas by repository name.
            discovery: Resolves the master's base URL.
            limit: Newest versions to keep in sync; falls back to each
                repository's own ``limit`` attribute when None.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used to talk to in-process peers.
        """
        self.repositories = dict(repositories)
        self.discovery = discovery
        self.limit = limit
        self.timeout = timeout
        self.interval_seconds = 300
        self._transport = transport
        self._lock = asyncio.Lock()
        self._last_result: ReplicationResult | None = None
        self._consecutive_failures = 0

    def add(self, name: str, repository: ReplicationRepository) -> None:
        self.repositories[name] = repository

    def remove(self, name: str) -> None:
        self.repositories.pop(name, None)

    async def execute(self) -> ReplicationResult:
        """Run one replication cycle over all repositories."""
        if self._lock.locked():
            logger.warning("Replication already running, skipping this invocation")
            return ReplicationResult(
                status=SyncStatus.SKIPPED, error="Replication already running"
            )

        async with self._lock:
            url = self.discovery.discover()
            if not url:
                result = ReplicationResult(
                    status=SyncStatus.FAILED, error="No master URL discovered"
                )
            elif not is_network_url(url):
                logger.debug(f"Master {url} is local, skipping replication")
                return ReplicationResult(status=SyncStatus.SKIPPED)
            else:
                try:
                    result = await self._replicate_all(url.rstrip("/"))
                except httpx.TransportError as e:
                    logger.warning(f"Unable to reach {url} for replication: {e!r}")
                    result = ReplicationResult(
                        status=SyncStatus.OFFLINE, error=str(e) or repr(e)
                    )

            self._last_result = result
            if result.status in (SyncStatus.FAILED, SyncStatus.OFFLINE):
                self._consecutive_failures += 1
            else:
                self._consecutive_failures = 0
            return result

    async def _replicate_all(self, base_url: str) -> ReplicationResult:
        fetched = 0
        failed = 0
        error: str | None = None

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for name, repository in list(self.repositories.items()):
                try:
                    fetched += await self._replicate(client, base_url, name, repository)
                except (IOError, InvalidRangeError) as e:
                    logger.warning(f"Could not replicate repository {name}: {e}")
                    failed += 1
                    error = str(e)

        if failed and failed == len(self.repositories):
            status = SyncStatus.FAILED
        elif failed:
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.SUCCESS

        if fetched:
            logger.info(f"Replicated {fetched} versions from {base_url}")
        return ReplicationResult(
            status=status,
            versions_fetched=fetched,
            repositories_failed=failed,
            error=error,
        )

    async def _replicate(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        name: str,
        repository: ReplicationRepository,
    ) -> int:
        prefix = f"{base_url}/replication/{name}"
        response = await client.get(f"{prefix}/range")
        if response.status_code != 200:
            raise IOError(f"range query answered HTTP {response.status_code}")

        lines = response.text.splitlines()
        remote_range = RangeSet.parse(lines[0].strip() if lines else "")
        local_range = repository.range()

        limit = self.limit if self.limit is not None else getattr(repository, "limit", None)
        if limit is None:
            wanted = list(local_range.diff_dest(remote_range))
        else:
            wanted = []
            for version in local_range.union(remote_range).reverse_iterator():
                if limit <= 0:
                    break
                if version not in local_range:
                    wanted.append(version)
                limit -= 1

        fetched = 0
        for version in wanted:
            response = await client.get(f"{prefix}/get", params={"version": version})
            if response.status_code != 200:
                raise IOError(
                    f"fetching version {version} answered HTTP {response.status_code}"
                )
            if repository.put(response.content, version):
                fetched += 1
                logger.debug(f"Replicated {name} version {version}")
        return fetched

    async def run_forever(
        self,
        interval_seconds: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous replication loop.

        Args:
            interval_seconds: Seconds between cycles.
            stop_event: Event to signal loop should stop.
        """
        logger.info(
            f"Starting replication loop with "
            f"{interval_seconds or self.interval_seconds}s interval"
        )

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.execute()
                logger.info(
                    f"Replication: {result.status.value}, "
                    f"fetched={result.versions_fetched}, "
                    f"failed={result.repositories_failed}"
                )
            except Exception as e:
                logger.error(f"Replication loop error: {e}")
                self._consecutive_failures += 1

            interval = interval_seconds or self.interval_seconds
            wait_time = interval
            if self._consecutive_failures > 0:
                wait_time = min(interval * (2 ** self._consecutive_failures), 3600)
                logger.debug(f"Backing off replication for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Replication loop stopped")

    def get_status(self) -> dict[str, Any]:
        """Get current replication status."""
        return {
            "master_url": self.discovery.discover(),
            "repositories": sorted(self.repositories),
            "last_status": self._last_result.status.value if self._last_result else None,
            "last_run": (
                self._last_result.timestamp.isoformat()
                if self._last_result and self._last_result.timestamp
                else None
            ),
            "consecutive_failures": self._consecutive_failures,
        }
