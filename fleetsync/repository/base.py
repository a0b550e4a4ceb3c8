"""Interfaces of versioned repositories."""

from abc import ABC, abstractmethod

from ..ranges import RangeSet


class NotMasterError(RuntimeError):
    """A commit was attempted on a replica repository."""


def check_version(version: int) -> None:
    """Reject version numbers that can never address a stored blob.

    Raises:
        ValueError: If ``version`` is not strictly positive.
    """
    if version <= 0:
        raise ValueError(f"Version must be greater than 0, got {version}")


class Repository(ABC):
    """Client view of a versioned blob store with optimistic commits."""

    @abstractmethod
    def checkout(self, version: int) -> bytes | None:
        """Get the blob stored as ``version``.

        Returns:
            The blob, or None when that version does not exist.

        Raises:
            ValueError: If ``version <= 0``.
        """
        pass

    @abstractmethod
    def commit(self, data: bytes, from_version: int) -> bool:
        """Store ``data`` as ``from_version + 1``.

        Returns:
            False when ``from_version`` is not the highest stored version,
            meaning the caller should check out again and retry.

        Raises:
            NotMasterError: If the repository is a replica.
            ValueError: If ``from_version`` is negative.
        """
        pass

    @abstractmethod
    def range(self) -> RangeSet:
        """Versions currently stored."""
        pass


class ReplicationRepository(ABC):
    """View of a repository used to mirror versions between servers."""

    @abstractmethod
    def get(self, version: int) -> bytes | None:
        pass

    @abstractmethod
    def put(self, data: bytes, version: int) -> bool:
        """Store ``data`` under an explicit version number.

        Returns:
            False if that version already exists.
        """
        pass

    @abstractmethod
    def range(self) -> RangeSet:
        pass
