"""Database models for the shipment export pipeline"""

from shipsync.models.sync_state import (
    SyncProperty,
    SystemLogEntry,
    SyncRunLog,
)

__all__ = [
    "SyncProperty",
    "SystemLogEntry",
    "SyncRunLog",
]
