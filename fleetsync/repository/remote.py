"""Repository living on another server, reached over HTTP."""

import logging

import httpx

from ..ranges import RangeSet
from .base import NotMasterError, ReplicationRepository, Repository, check_version

logger = logging.getLogger(__name__)


class RemoteRepository(Repository, ReplicationRepository):
    """HTTP client for the repository endpoints of a peer.

    Response codes map back onto the local contract: 200 is success, 304 a
    commit conflict or an existing version, 400 a bad version number, 404 an
    unknown version, 406 a commit on a replica; anything else is an IOError.
    """

    def __init__(
        self,
        base_url: str,
        name: str,
        prefix: str = "repository",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        """Initialize the remote repository.

        Args:
            base_url: Base URL of the peer (e.g., "http://server:8080").
            name: Name of the repository on the peer.
            prefix: Path prefix of the endpoints, "replication" for mirroring.
            timeout: Request timeout in seconds.
            client: Optional shared client; one is created when omitted.
        """
        if not base_url or not name:
            raise ValueError("base_url and name are required")
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.prefix = prefix.strip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def __repr__(self) -> str:
        return f"RemoteRepository({self.base_url!r}, {self.name!r})"

    def __enter__(self) -> "RemoteRepository":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _url(self, command: str) -> str:
        return f"{self.base_url}/{self.prefix}/{self.name}/{command}"

    def _request(self, method: str, command: str, **kwargs) -> httpx.Response:
        url = self._url(command)
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise IOError(f"Unable to reach {url}: {e!r}") from e

    def range(self) -> RangeSet:
        response = self._request("GET", "range")
        if response.status_code != 200:
            raise IOError(
                f"Range query for {self.name} failed: HTTP {response.status_code}"
            )
        lines = response.text.splitlines()
        return RangeSet.parse(lines[0].strip() if lines else "")

    def checkout(self, version: int) -> bytes:
        """Fetch a version from the peer.

        Raises:
            ValueError: If ``version <= 0`` or the peer does not have it.
            IOError: On any other failure.
        """
        check_version(version)
        response = self._request("GET", "checkout", params={"version": version})
        if response.status_code == 404:
            raise ValueError(f"Version {version} not found in remote repository {self.name}")
        if response.status_code != 200:
            raise IOError(
                f"Checkout of {self.name} version {version} failed: "
                f"HTTP {response.status_code}"
            )
        return response.content

    def get(self, version: int) -> bytes:
        check_version(version)
        response = self._request("GET", "get", params={"version": version})
        if response.status_code == 404:
            raise ValueError(f"Version {version} not found in remote repository {self.name}")
        if response.status_code != 200:
            raise IOError(
                f"Get of {self.name} version {version} failed: HTTP {response.status_code}"
            )
        return response.content

    def commit(self, data: bytes, from_version: int) -> bool:
        response = self._request(
            "POST",
            "commit",
            params={"from": from_version},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        return self._map_write_status(response)

    def put(self, data: bytes, version: int) -> bool:
        check_version(version)
        response = self._request(
            "POST",
            "put",
            params={"version": version},
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        return self._map_write_status(response)

    def _map_write_status(self, response: httpx.Response) -> bool:
        if response.status_code == 200:
            return True
        if response.status_code == 304:
            return False
        if response.status_code == 400:
            raise ValueError(response.text or "Invalid version")
        if response.status_code == 406:
            raise NotMasterError(response.text or "Repository is not a master")
        raise IOError(
            f"Write to {self.name} failed: HTTP {response.status_code} {response.text}"
        )
