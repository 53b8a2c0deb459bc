"""Sync services: remote contract, engine, outbound queue, connectivity, receipts."""

from .connectivity import ConnectivityMonitor, ManualReachability, NetworkState, ReachabilitySource
from .delivery import DeliveryTracker, compute_status
from .outbound_queue import DrainReport, OutboundQueue
from .remote import RemoteStore
from .sync_engine import EntitySyncEngine, RealtimeSync, SyncReport, SyncStatus

__all__ = [
    "ConnectivityMonitor",
    "DeliveryTracker",
    "DrainReport",
    "EntitySyncEngine",
    "ManualReachability",
    "NetworkState",
    "OutboundQueue",
    "ReachabilitySource",
    "RealtimeSync",
    "RemoteStore",
    "SyncReport",
    "SyncStatus",
    "compute_status",
]
