"""
Service layer - the synchronization machinery shared by every collection.

Provides:
- RequestPipeline: authenticated requests with refresh-and-retry-once
- RefreshCoordinator: single-flight token refresh
- ReachabilityMonitor: online state and debounced reconnect handling
- TieredCache: RAM + persistent store cache with TTL freshness
- PendingOperationQueue: durable log of offline mutations
- Reconciler: merge of fetched collections and temp id resolution
- SyncedCollection: cache, queue and reconciler wired per collection
"""

from tripsync.services.errors import (
    ServiceError,
    NetworkUnavailableError,
    TransportError,
    HTTPError,
    DecodeError,
    SessionExpiredError,
    RefreshInProgressError,
    ValidationError,
    StoreError,
)
from tripsync.services.events import Signal, Signals
from tripsync.services.session import Session, SessionStore
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.refresh import RefreshCoordinator, RefreshPolicy
from tripsync.services.client import NoContent, RequestDescriptor, RequestPipeline
from tripsync.services.cache import CacheEntry, CacheStats, TieredCache
from tripsync.services.deduplicator import RequestDeduplicator
from tripsync.services.temp_ids import TempIdAllocator
from tripsync.services.pending import OperationKind, PendingOperation, PendingOperationQueue
from tripsync.services.reconciler import Reconciler
from tripsync.services.collection import CollectionConfig, ReplayReport, SyncedCollection

__all__ = [
    # Errors
    "ServiceError",
    "NetworkUnavailableError",
    "TransportError",
    "HTTPError",
    "DecodeError",
    "SessionExpiredError",
    "RefreshInProgressError",
    "ValidationError",
    "StoreError",
    # Events / session
    "Signal",
    "Signals",
    "Session",
    "SessionStore",
    # Network
    "ReachabilityMonitor",
    "RefreshCoordinator",
    "RefreshPolicy",
    "NoContent",
    "RequestDescriptor",
    "RequestPipeline",
    # Cache
    "CacheEntry",
    "CacheStats",
    "TieredCache",
    "RequestDeduplicator",
    # Offline writes
    "TempIdAllocator",
    "OperationKind",
    "PendingOperation",
    "PendingOperationQueue",
    "Reconciler",
    # Collections
    "CollectionConfig",
    "ReplayReport",
    "SyncedCollection",
]
