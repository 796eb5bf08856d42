"""
Integration tests for ordersync/importer.py

Normalizer, reconciler and import engine wired to an in-memory DuckDB store.
"""
import pytest
from decimal import Decimal

from ordersync.exceptions import DuplicateOrderError, PersistenceConflictError, UpstreamTimeoutError
from ordersync.importer import ImportEngine
from ordersync.limits import ORDER_FIELD_LIMITS
from ordersync.models import ImportResult, RemoteOrder
from ordersync.normalizer import OrderNormalizer
from ordersync.reconciler import StatusReconciler


@pytest.fixture
def normalizer(fake_client, reporter):
    return OrderNormalizer(client=fake_client(), reporter=reporter)


@pytest.fixture
def engine(store, normalizer, reporter):
    return ImportEngine(store, normalizer, StatusReconciler(store, reporter), reporter=reporter)


class TestImportOrUpdate:
    """Tests for ImportEngine.import_or_update."""

    @pytest.mark.asyncio
    async def test_order_501_lifecycle(self, engine, normalizer, store, woo_order):
        """new -> skipped on identical snapshot -> changed on refund."""
        snapshot = woo_order(501, status="completed", total="120.00")

        first = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
        stored = await store.get_by_external_id(501)
        assert first.result is ImportResult.NEW
        assert stored.status == "delivered"
        assert stored.remote_status == "completed"

        second = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
        assert second.result is ImportResult.SKIPPED
        assert second.status_changed is False

        refunded = dict(snapshot, status="refunded")
        third = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(refunded)))
        stored = await store.get_by_external_id(501)
        assert third.result is ImportResult.UPDATED
        assert third.status_changed is True
        assert stored.status == "refunded"
        assert stored.remote_status == "refunded"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, normalizer, store, woo_order):
        snapshot = woo_order(7)
        results = []
        for _ in range(3):
            outcome = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
            results.append(outcome.result)

        assert results == [ImportResult.NEW, ImportResult.SKIPPED, ImportResult.SKIPPED]
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_skipped_refreshes_sync_attempt(self, engine, normalizer, store, woo_order):
        snapshot = woo_order(7)
        await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
        before = (await store.get_by_external_id(7)).last_sync_attempt

        await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
        after = (await store.get_by_external_id(7)).last_sync_attempt

        assert after >= before

    @pytest.mark.asyncio
    async def test_total_change_beyond_tolerance(self, engine, normalizer, store, woo_order):
        await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(8, total="100.00"))))

        penny = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(8, total="100.01"))))
        assert penny.result is ImportResult.SKIPPED

        changed = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(8, total="130.00"))))
        assert changed.result is ImportResult.UPDATED
        assert changed.status_changed is False
        assert (await store.get_by_external_id(8)).total == Decimal("130.00")

    @pytest.mark.asyncio
    async def test_oversized_fields_truncated_and_reported(self, engine, normalizer, store, woo_order, reporter):
        payload = woo_order(9, billing={"first_name": "F" * 180, "city": "C" * 140})

        outcome = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(payload)))
        stored = await store.get_by_external_id(9)

        assert outcome.result is ImportResult.NEW
        assert len(stored.customer_first_name) == ORDER_FIELD_LIMITS["customer_first_name"]
        assert len(stored.city) == ORDER_FIELD_LIMITS["city"]
        assert {w.field for w in outcome.warnings} == {"customer_first_name", "city"}
        assert len(reporter.warnings) == 2

    @pytest.mark.asyncio
    async def test_missing_id_is_error(self, engine, normalizer):
        outcome = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api({"number": "X"})))
        assert outcome.result is ImportResult.ERROR
        assert outcome.external_id is None

    @pytest.mark.asyncio
    async def test_duplicate_insert_becomes_update(self, engine, normalizer, store, woo_order, monkeypatch):
        """A row written by a concurrent writer between lookup and insert."""
        await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(10))))

        original_get = store.get_by_external_id
        calls = []

        async def stale_then_fresh(external_id):
            calls.append(external_id)
            if len(calls) == 1:
                return None
            return await original_get(external_id)
        monkeypatch.setattr(store, "get_by_external_id", stale_then_fresh)

        outcome = await engine.import_or_update(
            normalizer.normalize(RemoteOrder.from_api(woo_order(10, status="cancelled")))
        )

        assert outcome.result is ImportResult.UPDATED
        assert outcome.status_changed is True
        assert (await original_get(10)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_conflict_returns_error_outcome(self, engine, normalizer, store, woo_order, reporter, monkeypatch):
        async def reject(order):
            raise PersistenceConflictError("Order rejected by store", field="total", value=order.total)
        monkeypatch.setattr(store, "_insert", reject)

        outcome = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(12))))

        assert outcome.result is ImportResult.ERROR
        assert "field=total" in outcome.error
        assert reporter.conflicts[0].external_id == 12

    @pytest.mark.asyncio
    async def test_duplicate_without_row_propagates(self, engine, normalizer, store, woo_order, monkeypatch):
        async def duplicate(order):
            raise DuplicateOrderError(order.external_id)
        monkeypatch.setattr(store, "_insert", duplicate)

        with pytest.raises(DuplicateOrderError):
            await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(13))))


class TestReconcileKnown:
    """Bulk path used by the full reconcile pass."""

    @pytest.mark.asyncio
    async def test_bulk_reconcile(self, engine, normalizer, store, woo_order):
        for external_id in (1, 2, 3):
            await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(external_id))))
        await store.set_highlighted([1, 2, 3])

        snapshots = [
            woo_order(1),
            woo_order(2, status="shipped", meta_data=[{"key": "_tracking_number", "value": "TRK-2"}]),
            woo_order(3, total="150.00"),
        ]
        known = await store.get_many([1, 2, 3])
        pairs = [(known[s["id"]], normalizer.normalize(RemoteOrder.from_api(s))) for s in snapshots]

        outcomes = await engine.reconcile_known(pairs)

        assert [o.result for o in outcomes] == [ImportResult.SKIPPED, ImportResult.UPDATED, ImportResult.UPDATED]
        assert [o.status_changed for o in outcomes] == [False, True, False]
        shipped = await store.get_by_external_id(2)
        assert shipped.status == "shipped"
        assert shipped.tracking_number == "TRK-2"
        assert shipped.shipping_method == "Courier"
        assert await store.list_highlighted() == [1, 3]
        assert (await store.get_by_external_id(3)).total == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_empty(self, engine):
        assert await engine.reconcile_known([]) == []

    @pytest.mark.asyncio
    async def test_bulk_conflict_falls_back_per_order(self, engine, normalizer, store, woo_order, monkeypatch):
        await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(woo_order(1))))
        known = await store.get_many([1])

        async def reject(updates):
            raise PersistenceConflictError("Status update rejected", field="status")
        original = store.bulk_update_status
        monkeypatch.setattr(store, "bulk_update_status", reject)

        # The per-order path goes through update_status, which also uses the bulk write
        async def single(update):
            await original([update])
        monkeypatch.setattr(store, "update_status", single)

        outcomes = await engine.reconcile_known([
            (known[1], normalizer.normalize(RemoteOrder.from_api(woo_order(1, status="cancelled")))),
        ])

        assert outcomes[0].result is ImportResult.UPDATED
        assert (await store.get_by_external_id(1)).status == "cancelled"


class TestBackfillStoredImages:
    """Stored line items whose image lookup failed get another chance."""

    @pytest.mark.asyncio
    async def test_fills_images_left_empty_by_failed_lookup(self, store, fake_client, reporter, woo_order):
        client = fake_client(product_images={77: UpstreamTimeoutError("timeout")})
        normalizer = OrderNormalizer(client=client, reporter=reporter)
        engine = ImportEngine(store, normalizer, StatusReconciler(store, reporter), reporter=reporter)

        snapshot = woo_order(601)
        snapshot["line_items"][0]["image"] = None
        outcome = await engine.import_or_update(normalizer.normalize(RemoteOrder.from_api(snapshot)))
        assert outcome.result is ImportResult.NEW
        assert (await store.get_by_external_id(601)).line_items[0].image_url is None
        assert outcome.warnings[-1].field == "line_item.image_url"

        client.product_images[77] = "https://shop.example.com/img/77.jpg"
        normalizer.reset_cache()
        filled = await engine.backfill_stored_images()

        assert filled == 1
        assert (await store.get_by_external_id(601)).line_items[0].image_url == "https://shop.example.com/img/77.jpg"
        assert await store.list_missing_images() == []

    @pytest.mark.asyncio
    async def test_failed_again_stays_pending(self, store, fake_client, reporter, local_order):
        client = fake_client(product_images={77: UpstreamTimeoutError("timeout")})
        normalizer = OrderNormalizer(client=client, reporter=reporter)
        engine = ImportEngine(store, normalizer, StatusReconciler(store, reporter), reporter=reporter)
        await store.insert_order(local_order(7))

        assert await engine.backfill_stored_images() == 0
        assert [order.external_id for order in await store.list_missing_images()] == [7]
        assert reporter.warnings[-1].external_id == 7

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, engine, store, local_order):
        assert await engine.backfill_stored_images() == 0
