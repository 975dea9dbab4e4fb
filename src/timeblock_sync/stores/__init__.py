"""Persistence for connections, sync state, and event mappings."""

from timeblock_sync.stores.connections import ConnectionRepository, PostgresConnectionStore
from timeblock_sync.stores.mappings import EventMappingRepository, PostgresEventMappingStore
from timeblock_sync.stores.sync_state import PostgresSyncStateStore, SyncStateRepository

__all__ = [
    "ConnectionRepository",
    "EventMappingRepository",
    "PostgresConnectionStore",
    "PostgresEventMappingStore",
    "PostgresSyncStateStore",
    "SyncStateRepository",
]
