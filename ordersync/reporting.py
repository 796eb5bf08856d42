"""
Error reporting collaborator.

One ErrorReporter is created per engine and passed into every component
that needs to record a non-fatal problem. Tests substitute a subclass
that captures calls instead of logging them.
"""
from collections import Counter
from typing import Any, Dict, Optional

from ordersync.exceptions import PersistenceConflictError, UpstreamError
from ordersync.models import SyncWarning
from ordersync.observability import get_logger

logger = get_logger(__name__)


class ErrorReporter:
    """Logs and counts sync problems by category."""

    def __init__(self):
        self.counts: Counter = Counter()

    def warn(self, warning: SyncWarning) -> None:
        self.counts["warnings"] += 1
        logger.warning(
            f"Order {warning.external_id}: {warning.message}",
            extra={
                "field": warning.field,
                "external_id": warning.external_id,
                "original_length": warning.original_length,
                "limit": warning.limit,
            }
        )

    def page_failed(self, label: str, page: int, error: BaseException) -> None:
        self.counts["failed_pages"] += 1
        kind = error.kind.value if isinstance(error, UpstreamError) else type(error).__name__
        logger.error(
            f"Page {page} of {label} failed: {error}",
            extra={"page": page, "query": label, "kind": kind}
        )

    def order_failed(self, external_id: Optional[int], error: BaseException) -> None:
        self.counts["failed_orders"] += 1
        logger.error(
            f"Order {external_id} failed: {error}",
            extra={"external_id": external_id, "error_type": type(error).__name__}
        )

    def persistence_conflict(self, error: PersistenceConflictError) -> None:
        self.counts["persistence_conflicts"] += 1
        logger.error(
            f"Persistence conflict: {error}",
            extra={
                "external_id": error.external_id,
                "field": error.field,
                "limit": error.limit,
            }
        )

    def cycle_failed(self, reason: str, consecutive_failures: int, kind: Optional[str] = None) -> None:
        self.counts["failed_cycles"] += 1
        logger.error(
            f"Sync cycle failed: {reason}",
            extra={"kind": kind, "consecutive_failures": consecutive_failures}
        )

    def snapshot(self) -> Dict[str, Any]:
        """Current counters."""
        return dict(self.counts)
