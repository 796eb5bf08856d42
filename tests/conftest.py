"""
Pytest configuration and shared fixtures.
"""
import pytest
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ordersync.config import APIConfig, CrawlConfig, SyncConfig
from ordersync.events import EventBus
from ordersync.exceptions import UpstreamUnreachableError
from ordersync.models import LineItem, LocalOrder
from ordersync.pagination import is_retryable_page_error
from ordersync.reporting import ErrorReporter
from ordersync.resilience import RetryPolicy
from ordersync.store import DuckDBOrderStore
from ordersync.woocommerce import APIResponse


def make_woo_order(
    order_id: int,
    status: str = "processing",
    total: str = "100.00",
    date_modified: str = "2026-10-10T12:00:00",
    **overrides: Any,
) -> Dict[str, Any]:
    """Order payload shaped like GET /wp-json/wc/v3/orders."""
    order = {
        "id": order_id,
        "number": str(order_id),
        "status": status,
        "currency": "EUR",
        "date_created": "2026-10-10T10:00:00",
        "date_modified": date_modified,
        "total": total,
        "shipping_total": "10.00",
        "total_tax": "5.00",
        "payment_method_title": "Credit card",
        "billing": {
            "first_name": "Anna",
            "last_name": "Kowalska",
            "email": "anna@example.com",
            "phone": "+48 600 000 000",
            "address_1": "Main St 1",
            "address_2": "Apt 4",
            "city": "Warsaw",
            "state": "MZ",
            "postcode": "00-001",
            "country": "PL",
        },
        "line_items": [
            {
                "id": 1,
                "product_id": 77,
                "name": "Linen shirt",
                "quantity": 2,
                "price": "42.50",
                "sku": "LS-01",
                "image": {"id": 5, "src": "https://shop.example.com/img/ls-01.jpg"},
            },
        ],
        "shipping_lines": [
            {"method_id": "flat_rate:3", "method_title": "Courier"},
        ],
        "meta_data": [],
    }
    order.update(overrides)
    return order


def make_local_order(external_id: int, status: str = "processing", **overrides: Any) -> LocalOrder:
    values = dict(
        external_id=external_id,
        order_number=f"#{external_id}",
        status=status,
        remote_status=status,
        customer_first_name="Anna",
        customer_last_name="Kowalska",
        total=Decimal("100.00"),
        subtotal=Decimal("85.00"),
        shipping_total=Decimal("10.00"),
        tax_total=Decimal("5.00"),
        line_items=[LineItem(product_id=77, product_name="Linen shirt", quantity=2, price="42.50")],
    )
    values.update(overrides)
    return LocalOrder(**values)


class CapturingReporter(ErrorReporter):
    """ErrorReporter that records calls instead of logging them."""

    def __init__(self):
        super().__init__()
        self.warnings: List[Any] = []
        self.failed_pages: List[Tuple[str, int, BaseException]] = []
        self.failed_orders: List[Tuple[Optional[int], BaseException]] = []
        self.conflicts: List[Any] = []
        self.cycle_failures: List[Tuple[str, int, Optional[str]]] = []

    def warn(self, warning) -> None:
        self.counts["warnings"] += 1
        self.warnings.append(warning)

    def page_failed(self, label, page, error) -> None:
        self.counts["failed_pages"] += 1
        self.failed_pages.append((label, page, error))

    def order_failed(self, external_id, error) -> None:
        self.counts["failed_orders"] += 1
        self.failed_orders.append((external_id, error))

    def persistence_conflict(self, error) -> None:
        self.counts["persistence_conflicts"] += 1
        self.conflicts.append(error)

    def cycle_failed(self, reason, consecutive_failures, kind=None) -> None:
        self.counts["failed_cycles"] += 1
        self.cycle_failures.append((reason, consecutive_failures, kind))


class FakeWooClient:
    """
    In-memory stand-in for WooCommerceClient.

    Serves `orders` page by page, filtered by status. `page_failures` maps
    (status, page) to a list of exceptions raised on successive requests
    for that page before it starts succeeding.
    """

    def __init__(
        self,
        orders: Optional[List[Dict[str, Any]]] = None,
        page_failures: Optional[Dict[Tuple[str, int], List[BaseException]]] = None,
        product_images: Optional[Dict[int, Any]] = None,
        empty_broad_query: bool = False,
        unreachable: bool = False,
    ):
        self.orders = list(orders or [])
        self.page_failures = {key: list(value) for key, value in (page_failures or {}).items()}
        self.product_images = dict(product_images or {})
        self.empty_broad_query = empty_broad_query
        self.unreachable = unreachable
        self.requests: List[Tuple[str, str, Dict[str, Any]]] = []
        self.probes: List[Dict[str, Any]] = []
        self.image_lookups: List[int] = []
        self.updated: List[Tuple[int, Dict[str, Any]]] = []
        self.notes: List[Tuple[int, str]] = []
        self.closed = False

    def _matching(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        status = params.get("status", "any")
        if status == "any":
            return [] if self.empty_broad_query else self.orders
        return [order for order in self.orders if order.get("status") == status]

    async def probe_total(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[int]:
        params = dict(params or {})
        self.probes.append(params)
        return len(self._matching(params))

    async def request(self, method, endpoint, params=None, json=None, policy=None) -> APIResponse:
        params = dict(params or {})
        self.requests.append((method, endpoint, params))

        key = (params.get("status", "any"), params.get("page", 1))
        failures = self.page_failures.get(key)
        if failures:
            raise failures.pop(0)

        matching = self._matching(params)
        page = params.get("page", 1)
        per_page = params.get("per_page", 10)
        start = (page - 1) * per_page
        return APIResponse(
            data=matching[start:start + per_page],
            status_code=200,
            headers={"x-wp-total": str(len(matching))},
        )

    async def test_connection(self) -> bool:
        if self.unreachable:
            raise UpstreamUnreachableError("WooCommerce API unreachable", details="connection refused")
        return True

    async def get_product_image(self, product_id: int) -> Optional[str]:
        self.image_lookups.append(product_id)
        image = self.product_images.get(product_id)
        if isinstance(image, BaseException):
            raise image
        return image

    async def update_order(self, order_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        self.updated.append((order_id, data))
        return {"id": order_id, **data}

    async def add_order_note(self, order_id: int, note: str) -> Dict[str, Any]:
        self.notes.append((order_id, note))
        return {"id": 1, "note": note}

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def api_config() -> APIConfig:
    return APIConfig(
        store_url="https://shop.example.com",
        consumer_key="ck_test",
        consumer_secret="cs_test",
        request_timeout=5.0,
        retry_timeout=12.0,
    )


@pytest.fixture
def crawl_config() -> CrawlConfig:
    return CrawlConfig(page_size=10, batch_width=3, batch_delay=0, max_items=2000)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(timezone="UTC", order_concurrency=3)


@pytest.fixture
def fast_page_policy() -> RetryPolicy:
    """First-page probe policy without sleeping."""
    return RetryPolicy(max_attempts=2, base_delay=0, jitter=0, retryable=is_retryable_page_error)


@pytest.fixture
def reporter() -> CapturingReporter:
    return CapturingReporter()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def store(reporter) -> DuckDBOrderStore:
    """Fresh in-memory DuckDB store; connects on first use."""
    return DuckDBOrderStore(":memory:", reporter=reporter)


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    return make_woo_order(501, status="completed", total="120.00")


@pytest.fixture
def woo_order():
    """Factory for WooCommerce order payloads."""
    return make_woo_order


@pytest.fixture
def local_order():
    """Factory for LocalOrder records."""
    return make_local_order


@pytest.fixture
def fake_client():
    """FakeWooClient class, so tests can build one with their own orders."""
    return FakeWooClient
