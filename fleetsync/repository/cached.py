"""Write-through cache in front of a (usually remote) repository.

Clients edit a local working copy, commit it against the version they last
saw, and on a conflict check out again and redo their change.
"""

import logging

from ..ranges import RangeSet
from .backup import FileBackupRepository
from .base import Repository

logger = logging.getLogger(__name__)

UNCOMMITTED_VERSION = -1


class CachedRepository:
    """Repository wrapper that buffers edits locally until ``commit``."""

    def __init__(
        self,
        remote: Repository,
        backup: FileBackupRepository,
        most_recent_version: int = UNCOMMITTED_VERSION,
    ):
        """Initialize the cache.

        Args:
            remote: Repository commits go to and checkouts come from.
            backup: Local working copy and last committed copy.
            most_recent_version: Version the working copy is based on, when
                resuming from an earlier session.
        """
        self.remote = remote
        self.local = backup
        self._most_recent_version = most_recent_version

    @property
    def most_recent_version(self) -> int:
        """Version the working copy is based on, ``UNCOMMITTED_VERSION`` before any checkout."""
        return self._most_recent_version

    def write_local(self, data: bytes) -> None:
        """Replace the working copy without touching the remote."""
        self.local.write(data)

    def get_local(self, fail_if_absent: bool = False) -> bytes:
        """Working copy, falling back to empty content.

        Raises:
            IOError: If ``fail_if_absent`` and nothing was ever checked out
                or committed.
        """
        if self._most_recent_version <= 0 and fail_if_absent:
            raise IOError(f"No local version available of {self.local}, remote {self.remote}")
        data = self.local.read()
        return data if data is not None else b""

    def checkout(self, fail_if_absent: bool = False) -> bytes:
        """Fetch the newest remote version and make it the working copy.

        Raises:
            IOError: If ``fail_if_absent`` and the remote holds no versions.
        """
        self._most_recent_version = self._highest_remote_version()
        if self._most_recent_version <= 0:
            if fail_if_absent:
                raise IOError("No version has yet been checked in to the repository")
            return b""
        return self.checkout_version(self._most_recent_version)

    def checkout_version(self, version: int) -> bytes:
        """Make a specific remote version the working copy.

        Raises:
            ValueError: If ``version <= 0`` or the remote does not have it.
        """
        data = self.remote.checkout(version)
        if data is None:
            raise ValueError(f"Version {version} not found in {self.remote}")

        self.local.write(data)
        self.local.backup()
        self._most_recent_version = version
        logger.debug(f"Checked out version {version}")
        return data

    def commit(self) -> bool:
        """Commit the working copy on top of the version it is based on.

        Returns:
            False on a conflict; the working copy stays so the caller can
            check out and reapply the change.

        Raises:
            RuntimeError: If nothing was checked out yet.
        """
        if self._most_recent_version < 0:
            raise RuntimeError("A commit should be preceded by a checkout")

        data = self.local.read()
        success = self.remote.commit(
            data if data is not None else b"", self._most_recent_version
        )
        if success:
            self.local.backup()
            self._most_recent_version += 1
            logger.info(f"Committed version {self._most_recent_version}")
        else:
            logger.info(
                f"Commit on top of version {self._most_recent_version} was rejected, "
                "repository has moved on"
            )
        return success

    def revert(self) -> bool:
        """Throw away local edits.

        Returns:
            False if there was no committed or checked out copy to go back to.
        """
        return self.local.restore()

    def is_current(self) -> bool:
        """Whether no newer version was committed remotely since our last checkout."""
        return self._highest_remote_version() == self._most_recent_version

    def delete_local(self) -> None:
        self.local.delete()

    def range(self) -> RangeSet:
        return self.remote.range()

    def _highest_remote_version(self) -> int:
        return self.remote.range().high
