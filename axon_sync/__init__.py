"""axon-sync: realtime connection and event synchronization for an agent backend."""

from axon_sync.service import SyncService

__all__ = ["SyncService"]
