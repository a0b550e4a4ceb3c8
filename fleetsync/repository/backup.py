"""Local files behind a cached repository."""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class FileBackupRepository:
    """Working copy plus the last committed copy, each in its own file.

    ``current`` holds whatever the client is editing; ``backup`` holds the
    version last checked out or committed so edits can be thrown away.
    """

    def __init__(self, current: str | Path, backup: str | Path):
        self.current = Path(current).expanduser()
        self.backup_path = Path(backup).expanduser()

    def __repr__(self) -> str:
        return f"FileBackupRepository({str(self.current)!r}, {str(self.backup_path)!r})"

    def read(self) -> bytes | None:
        """Contents of the working copy, or None if there is none."""
        if not self.current.is_file():
            return None
        return self.current.read_bytes()

    def write(self, data: bytes) -> None:
        self.current.parent.mkdir(parents=True, exist_ok=True)
        self.current.write_bytes(data)

    def backup(self) -> bool:
        """Copy the working copy over the backup.

        Returns:
            False if there is no working copy.
        """
        if not self.current.is_file():
            return False
        self.backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.current, self.backup_path)
        return True

    def restore(self) -> bool:
        """Copy the backup over the working copy.

        Returns:
            False if there is no backup.
        """
        if not self.backup_path.is_file():
            return False
        shutil.copyfile(self.backup_path, self.current)
        return True

    def delete(self) -> None:
        """Remove both files."""
        for path in (self.current, self.backup_path):
            path.unlink(missing_ok=True)
        logger.debug(f"Deleted local copies {self.current} and {self.backup_path}")
