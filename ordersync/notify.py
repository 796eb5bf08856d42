"""
Highlight/notify dispatcher.

Freshly imported orders are flagged for visual emphasis and announced once
per sync burst. Operators are alerted only on sustained failure.
"""
from typing import Any, Dict, List, Optional

from ordersync.events import EventBus, SyncEvent
from ordersync.models import LocalOrder
from ordersync.observability import get_logger

logger = get_logger(__name__)

SAMPLE_SIZE = 3


def order_summary(order: LocalOrder) -> Dict[str, Any]:
    return {
        "external_id": order.external_id,
        "order_number": order.order_number,
        "customer": order.customer_name,
        "total": str(order.total),
    }


class HighlightDispatcher:
    """Marks new orders and emits one notification per burst."""

    def __init__(self, store, events: EventBus, sample_size: int = SAMPLE_SIZE):
        self.store = store
        self.events = events
        self.sample_size = sample_size

    async def dispatch(self, new_orders: List[LocalOrder]) -> int:
        """
        Highlight non-terminal new orders and emit `orders.imported`.

        Orders already in a terminal status are announced but never
        highlighted. Returns the number of orders highlighted.
        """
        if not new_orders:
            return 0

        candidates = [order for order in new_orders if not order.is_terminal]
        flagged = await self.store.set_highlighted([order.external_id for order in candidates])
        for order in candidates:
            order.highlighted = True

        sample = [order_summary(order) for order in new_orders[:self.sample_size]]
        await self.events.emit(
            SyncEvent.ORDERS_IMPORTED,
            {
                "count": len(new_orders),
                "highlighted": flagged,
                "sample": sample,
                "more": max(0, len(new_orders) - self.sample_size),
            },
            source="dispatcher",
        )
        logger.info(
            f"Announced {len(new_orders)} new orders",
            extra={"highlighted": flagged}
        )
        return flagged

    async def clear_final_highlights(self) -> int:
        """Clear highlights left on orders that reached a terminal status."""
        cleared = await self.store.clear_highlights_for_final_statuses()
        if cleared:
            await self.events.emit(
                SyncEvent.HIGHLIGHTS_CLEARED, {"count": cleared}, source="dispatcher"
            )
            logger.info(f"Cleared {cleared} highlights on final orders")
        return cleared

    async def alert_sync_issue(
        self,
        error: str,
        consecutive_failures: int,
        kind: Optional[str] = None,
    ) -> None:
        """Tell operators the sync has been failing for a while."""
        logger.warning(
            f"Sync failing for {consecutive_failures} consecutive cycles: {error}",
            extra={"kind": kind}
        )
        await self.events.emit(
            SyncEvent.SYNC_ALERT,
            {
                "error": error,
                "kind": kind,
                "consecutive_failures": consecutive_failures,
            },
            source="dispatcher",
        )
