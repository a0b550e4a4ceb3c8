"""Audit log storage and synchronization.

Nodes append events to dense, per-log sequences and periodically hand the
server exactly the events it has not seen, described with range sets.
"""

from .store import LogStore, SQLiteLogStore
from .sync_task import LogSyncTask, ProtocolError, SyncMode, SyncResult, SyncStatus

__all__ = [
    "LogStore",
    "LogSyncTask",
    "ProtocolError",
    "SQLiteLogStore",
    "SyncMode",
    "SyncResult",
    "SyncStatus",
]
