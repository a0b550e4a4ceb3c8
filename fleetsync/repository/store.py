"""File-backed versioned repository.

Every version is one file named after its number inside the repository
directory. New versions are written to a temp file first and then hard
linked into place; the link fails when the name already exists, so two
writers can never both create the same version.
"""

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any

from ..ranges import RangeSet
from .base import NotMasterError, ReplicationRepository, Repository, check_version

logger = logging.getLogger(__name__)

_VERSION_NAME = re.compile(r"\d+", re.ASCII)


class FileRepository(Repository, ReplicationRepository):
    """Repository storing each version as a file.

    A master accepts commits; a replica only takes explicit ``put`` calls so
    it can mirror a master's version numbers exactly.
    """

    def __init__(
        self,
        directory: str | Path,
        temp_dir: str | Path | None = None,
        master: bool = True,
        file_extension: str = "",
        limit: int | None = None,
    ):
        """Initialize the repository, creating its directories if needed.

        Args:
            directory: Where versions are stored.
            temp_dir: Scratch directory for incoming data. Must be on the
                same filesystem as ``directory``; defaults to a hidden
                subdirectory of it.
            master: Whether commits are permitted.
            file_extension: Suffix appended to every version file name.
            limit: Maximum number of versions kept; older ones are purged.

        Raises:
            ValueError: If a directory cannot be created or ``limit < 1``.
        """
        self.directory = Path(directory).expanduser()
        self.temp_dir = (
            Path(temp_dir).expanduser() if temp_dir else self.directory / ".tmp"
        )
        for path in (self.directory, self.temp_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ValueError(f"Repository location {path} is not usable: {e}") from e

        self.master = master
        self.file_extension = file_extension
        self.limit = self._check_limit(limit)
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return (
            f"FileRepository({str(self.directory)!r}, master={self.master}, "
            f"limit={self.limit})"
        )

    @staticmethod
    def _check_limit(limit: int | None) -> int | None:
        if limit is not None and limit < 1:
            raise ValueError(f"Limit must be at least 1, got {limit}")
        return limit

    def reconfigure(self, master: bool, limit: int | None = None) -> None:
        """Switch between master and replica mode and change the limit."""
        with self._lock:
            self.master = master
            self.limit = self._check_limit(limit)
            self._purge()
        logger.info(f"Repository {self.directory} reconfigured: master={master}, limit={limit}")

    def _path(self, version: int) -> Path:
        return self.directory / f"{version}{self.file_extension}"

    def _versions(self) -> list[int]:
        versions = []
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            name = entry.name
            if self.file_extension:
                if not name.endswith(self.file_extension):
                    continue
                name = name[: -len(self.file_extension)]
            if _VERSION_NAME.fullmatch(name):
                versions.append(int(name))
            else:
                logger.warning(f"Unable to determine version number of {entry}, skipping it")
        return sorted(versions)

    def range(self) -> RangeSet:
        return RangeSet.from_values(self._versions())

    @property
    def highest_version(self) -> int:
        return self.range().high

    def checkout(self, version: int) -> bytes | None:
        check_version(version)
        path = self._path(version)
        if not path.is_file():
            return None
        return path.read_bytes()

    def get(self, version: int) -> bytes | None:
        return self.checkout(version)

    def put(self, data: bytes, version: int) -> bool:
        check_version(version)
        with self._lock:
            stored = self._store(data, version)
            if stored:
                self._purge()
        return stored

    def commit(self, data: bytes, from_version: int) -> bool:
        if not self.master:
            raise NotMasterError("Commit is only permitted on master repositories")
        if from_version < 0:
            raise ValueError(
                f"Version must be greater than or equal to 0, got {from_version}"
            )

        with self._lock:
            highest = self.highest_version
            if from_version != highest:
                logger.debug(
                    f"Rejecting commit from version {from_version}, "
                    f"repository is at {highest}"
                )
                return False
            stored = self._store(data, from_version + 1)
            if stored:
                self._purge()

        if stored:
            logger.info(f"Committed version {from_version + 1} to {self.directory}")
        return stored

    def _store(self, data: bytes, version: int) -> bool:
        target = self._path(version)
        if target.exists():
            return False

        fd, temp_name = tempfile.mkstemp(prefix="repository", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(temp_name, target)
            except FileExistsError:
                return False
        except OSError:
            logger.warning(f"Error occurred while storing version {version} in {self.directory}")
            raise
        finally:
            os.unlink(temp_name)

        logger.debug(f"Stored version {version} ({len(data)} bytes) in {self.directory}")
        return True

    def _purge(self) -> None:
        if self.limit is None:
            return
        versions = self._versions()
        for version in versions[: max(0, len(versions) - self.limit)]:
            self._path(version).unlink(missing_ok=True)
            logger.debug(f"Purged version {version} from {self.directory}")

    def stats(self) -> dict[str, Any]:
        """Get repository statistics."""
        versions = self._versions()
        return {
            "directory": str(self.directory),
            "master": self.master,
            "limit": self.limit,
            "versions": len(versions),
            "range": RangeSet.from_values(versions).to_representation(),
            "highest_version": versions[-1] if versions else 0,
        }
