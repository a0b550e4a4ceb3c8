"""Versioned repositories: master/replica stores, remote access and caching."""

from .backup import FileBackupRepository
from .base import NotMasterError, ReplicationRepository, Repository
from .cached import UNCOMMITTED_VERSION, CachedRepository
from .remote import RemoteRepository
from .replication import ReplicationResult, RepositoryReplicationTask
from .store import FileRepository

__all__ = [
    "CachedRepository",
    "FileBackupRepository",
    "FileRepository",
    "NotMasterError",
    "RemoteRepository",
    "ReplicationRepository",
    "ReplicationResult",
    "Repository",
    "RepositoryReplicationTask",
    "UNCOMMITTED_VERSION",
]
