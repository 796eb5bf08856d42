"""
ordersync - keeps a local mirror of WooCommerce orders consistent with the store.

Components:
- woocommerce: transport client with retry and failure classification
- pagination: full-collection crawler
- normalizer / importer / reconciler: per-order pipeline
- orchestrator / scheduler: adaptive sync loop
- store: local order store contract and DuckDB implementation
"""
from ordersync.events import EventBus, SyncEvent
from ordersync.exceptions import (
    ConfigurationError,
    DuplicateOrderError,
    ErrorKind,
    OrderSyncError,
    PersistenceConflictError,
    UpstreamError,
    ValidationError,
)
from ordersync.models import ImportResult, LocalOrder, LocalStatus, RemoteOrder
from ordersync.orchestrator import SyncOrchestrator, build_orchestrator
from ordersync.scheduler import SyncScheduler, start_sync_engine, stop_sync_engine
from ordersync.store import DuckDBOrderStore, OrderStore

__version__ = "0.3.0"

__all__ = [
    "ConfigurationError",
    "DuckDBOrderStore",
    "DuplicateOrderError",
    "ErrorKind",
    "EventBus",
    "ImportResult",
    "LocalOrder",
    "LocalStatus",
    "OrderStore",
    "OrderSyncError",
    "PersistenceConflictError",
    "RemoteOrder",
    "SyncEvent",
    "SyncOrchestrator",
    "SyncScheduler",
    "UpstreamError",
    "ValidationError",
    "build_orchestrator",
    "start_sync_engine",
    "stop_sync_engine",
]
