"""Lookups for the current server address and this node's identity.

The sync tasks only need two answers: where is the peer right now, and who
am I. Both are abstract so deployments can plug in a registry; the static
implementations read their answer from configuration.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Discovery(ABC):
    """Resolves the base URL of the peer to reconcile against."""

    @abstractmethod
    def discover(self) -> str | None:
        """Current peer URL, or None when no peer is known."""
        pass


class Identification(ABC):
    """Resolves the identity string of this node."""

    @abstractmethod
    def get_id(self) -> str:
        pass


class StaticDiscovery(Discovery):
    """Discovery that always answers the configured URL."""

    def __init__(self, url: str | None):
        self.url = url or None

    def discover(self) -> str | None:
        return self.url

    def set_url(self, url: str | None) -> None:
        """Point discovery at a different peer."""
        self.url = url or None
        logger.info(f"Discovery URL set to {self.url}")


class StaticIdentification(Identification):
    """Identification that always answers the configured node ID."""

    def __init__(self, node_id: str):
        if not node_id:
            raise ValueError("node_id must not be empty")
        self.node_id = node_id

    def get_id(self) -> str:
        return self.node_id


def is_network_url(url: str | None) -> bool:
    """Whether a discovered URL names a reachable network peer.

    ``file:`` URLs stand for a local, peer-less setup.
    """
    return bool(url) and not url.lower().startswith("file:")
