"""
Import/dedup engine.

Decides per remote order whether it is new (insert), changed (update) or
unchanged (skip), keyed by the WooCommerce order id. Reads and writes are
not locked across the network round trip; a duplicate insert from a
concurrent writer is detected by the store and turned into an update.
"""
from decimal import Decimal
from typing import List, Tuple

from ordersync.exceptions import DuplicateOrderError, PersistenceConflictError
from ordersync.models import (
    ImportOutcome,
    ImportResult,
    LocalOrder,
    NormalizedOrder,
    SyncWarning,
)
from ordersync.observability import get_logger
from ordersync.reporting import ErrorReporter

logger = get_logger(__name__)


class ImportEngine:
    """
    Usage:
        engine = ImportEngine(store, normalizer, reconciler, reporter)
        outcome = await engine.import_or_update(normalizer.normalize(remote))
        if outcome.result is ImportResult.NEW:
            ...
    """

    def __init__(
        self,
        store,
        normalizer,
        reconciler,
        reporter: ErrorReporter = None,
        tolerance: float = 0.01,
    ):
        self.store = store
        self.normalizer = normalizer
        self.reconciler = reconciler
        self.reporter = reporter or ErrorReporter()
        self.tolerance = Decimal(str(tolerance))

    async def import_or_update(self, normalized: NormalizedOrder) -> ImportOutcome:
        """
        Insert or update one order.

        Persistence conflicts are reported and returned as an `error`
        outcome; they never propagate.
        """
        external_id = normalized.external_id
        warnings: List[SyncWarning] = list(normalized.warnings)

        if external_id is None:
            return ImportOutcome(
                result=ImportResult.ERROR,
                external_id=None,
                warnings=warnings,
                error="Order has no external id",
            )

        try:
            existing = await self.store.get_by_external_id(external_id)
            if existing is None:
                try:
                    return await self._insert(normalized, warnings)
                except DuplicateOrderError:
                    logger.info(
                        f"Order {external_id} inserted concurrently, updating instead",
                        extra={"external_id": external_id}
                    )
                    existing = await self.store.get_by_external_id(external_id)
                    if existing is None:
                        raise
            return await self._update(existing, normalized, warnings)

        except PersistenceConflictError as e:
            if e.external_id is None:
                e.external_id = external_id
            self.reporter.persistence_conflict(e)
            return ImportOutcome(
                result=ImportResult.ERROR,
                external_id=external_id,
                warnings=warnings,
                error=str(e),
            )

    async def reconcile_known(
        self,
        pairs: List[Tuple[LocalOrder, NormalizedOrder]],
    ) -> List[ImportOutcome]:
        """
        Update many already-stored orders with one bulk status write.

        Totals are compared per order. If the bulk write is rejected the
        batch falls back to per-order imports so one bad row cannot hold
        back the rest.
        """
        if not pairs:
            return []

        try:
            changed = set(await self.reconciler.reconcile_many(
                [(local, normalized.source) for local, normalized in pairs]
            ))
        except PersistenceConflictError as e:
            logger.warning(f"Bulk status update rejected, retrying per order: {e}")
            return [await self.import_or_update(normalized) for _, normalized in pairs]

        outcomes: List[ImportOutcome] = []
        for local, normalized in pairs:
            warnings = list(normalized.warnings)
            try:
                totals_changed = await self._sync_totals(local, normalized.order)
            except PersistenceConflictError as e:
                if e.external_id is None:
                    e.external_id = local.external_id
                self.reporter.persistence_conflict(e)
                outcomes.append(ImportOutcome(
                    result=ImportResult.ERROR,
                    external_id=local.external_id,
                    warnings=warnings,
                    error=str(e),
                ))
                continue

            status_changed = local.external_id in changed
            outcomes.append(ImportOutcome(
                result=ImportResult.UPDATED if status_changed or totals_changed else ImportResult.SKIPPED,
                external_id=local.external_id,
                warnings=warnings,
                status_changed=status_changed,
                order=local,
            ))
        return outcomes

    async def backfill_stored_images(self, limit: int = 200) -> int:
        """
        Retry image lookups for stored line items that still have none.

        Lookups that fail again are reported as warnings and left for the
        next pass. Returns the number of line items that got an image.
        """
        orders = await self.store.list_missing_images(limit)
        filled = 0
        for order in orders:
            for warning in await self.normalizer.backfill_images(order):
                self.reporter.warn(warning)
            try:
                filled += await self.store.update_line_item_images(order)
            except PersistenceConflictError as e:
                if e.external_id is None:
                    e.external_id = order.external_id
                self.reporter.persistence_conflict(e)

        if orders:
            logger.info(
                f"Image backfill: {filled} line items updated across {len(orders)} orders",
                extra={"filled": filled, "orders": len(orders)}
            )
        return filled

    async def _sync_totals(self, existing: LocalOrder, incoming: LocalOrder) -> bool:
        if abs(existing.total - incoming.total) <= self.tolerance:
            return False
        await self.store.update_totals(
            existing.external_id,
            incoming.total,
            incoming.subtotal,
            incoming.shipping_total,
            incoming.tax_total,
        )
        existing.total = incoming.total
        existing.subtotal = incoming.subtotal
        existing.shipping_total = incoming.shipping_total
        existing.tax_total = incoming.tax_total
        return True

    async def _insert(self, normalized: NormalizedOrder, warnings: List[SyncWarning]) -> ImportOutcome:
        order = normalized.order
        warnings.extend(await self.normalizer.backfill_images(order))
        warnings.extend(await self.store.insert_order(order))

        logger.info(
            f"Imported new order {order.order_number}",
            extra={"external_id": order.external_id, "status": order.status}
        )
        return ImportOutcome(
            result=ImportResult.NEW,
            external_id=order.external_id,
            warnings=warnings,
            order=order,
        )

    async def _update(
        self,
        existing: LocalOrder,
        normalized: NormalizedOrder,
        warnings: List[SyncWarning],
    ) -> ImportOutcome:
        incoming = normalized.order

        # Also refreshes the shadow status and last_sync_attempt when unchanged
        status_changed = await self.reconciler.reconcile(existing, normalized.source)

        totals_changed = await self._sync_totals(existing, incoming)

        result = ImportResult.UPDATED if status_changed or totals_changed else ImportResult.SKIPPED
        return ImportOutcome(
            result=result,
            external_id=existing.external_id,
            warnings=warnings,
            status_changed=status_changed,
            order=existing,
        )
