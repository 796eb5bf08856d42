"""
Maps raw WooCommerce order snapshots into local order records.

Normalization is synchronous and never raises for bad field data:
unparseable money becomes zero and a warning, quantities default to 1.
Field-length truncation is owned by the OrderStore write path and
happens there, right before the backend write.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ordersync.exceptions import UpstreamError
from ordersync.models import (
    LineItem,
    LocalOrder,
    LocalStatus,
    NormalizedOrder,
    RemoteLineItem,
    RemoteOrder,
    SyncWarning,
    utcnow,
)
from ordersync.observability import get_logger
from ordersync.reconciler import map_remote_status

logger = get_logger(__name__)

CENTS = Decimal("0.01")


def parse_money(
    value: Any,
    field: str,
    external_id: Optional[int],
    warnings: List[SyncWarning],
) -> Decimal:
    """Parse a decimal string, falling back to zero with a warning."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        amount = Decimal(str(value).strip()).quantize(CENTS)
    except (InvalidOperation, ValueError):
        amount = None
    if amount is None or not amount.is_finite():
        warnings.append(SyncWarning(
            field=field,
            message=f"{field} {value!r} is not a number, using 0",
            external_id=external_id,
        ))
        return Decimal("0.00")
    return amount


def parse_quantity(value: Any) -> int:
    """Positive integer quantity; anything else becomes 1."""
    try:
        quantity = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return quantity if quantity >= 1 else 1


class OrderNormalizer:
    """
    Builds LocalOrder records from RemoteOrder snapshots.

    `backfill_images` needs a client exposing `get_product_image`; the
    rest of the normalizer is pure.
    """

    def __init__(self, client=None, reporter=None):
        self.client = client
        self.reporter = reporter
        self._image_cache: Dict[int, Optional[str]] = {}

    def reset_cache(self) -> None:
        """Forget product images looked up during the previous run."""
        self._image_cache.clear()

    def normalize(self, remote: RemoteOrder, now: datetime = None) -> NormalizedOrder:
        warnings: List[SyncWarning] = []
        external_id = remote.id

        total = parse_money(remote.total, "total", external_id, warnings)
        shipping_total = parse_money(remote.shipping_total, "shipping_total", external_id, warnings)
        tax_total = parse_money(remote.total_tax, "total_tax", external_id, warnings)

        status = map_remote_status(remote.status)
        shipped = status == LocalStatus.SHIPPED.value
        billing = remote.billing

        order = LocalOrder(
            external_id=external_id,
            order_number=f"#{remote.number or external_id}",
            status=status,
            remote_status=remote.status,
            customer_first_name=billing.first_name,
            customer_last_name=billing.last_name,
            customer_email=billing.email,
            customer_phone=billing.phone,
            address=billing.address,
            city=billing.city,
            state=billing.state,
            postcode=billing.postcode,
            country=billing.country,
            total=total,
            subtotal=total - shipping_total - tax_total,
            shipping_total=shipping_total,
            tax_total=tax_total,
            payment_method=remote.payment_method_title,
            shipping_method=remote.shipping_method if shipped else None,
            tracking_number=remote.tracking_number if shipped else None,
            carrier_policy_id=remote.carrier_policy_id if shipped else None,
            line_items=[
                self._line_item(item, external_id, warnings) for item in remote.line_items
            ],
            highlighted=False,
            last_sync_attempt=now or utcnow(),
            created_at=remote.date_created,
            updated_at=remote.date_modified,
        )

        for warning in warnings:
            if self.reporter is not None:
                self.reporter.warn(warning)

        return NormalizedOrder(order=order, source=remote, warnings=warnings)

    def _line_item(
        self,
        item: RemoteLineItem,
        external_id: Optional[int],
        warnings: List[SyncWarning],
    ) -> LineItem:
        price = parse_money(item.price, "line_item.price", external_id, warnings)
        return LineItem(
            product_id=item.product_id,
            product_name=item.name,
            quantity=parse_quantity(item.quantity),
            price=str(price),
            sku=item.sku or None,
            image_url=item.image_url,
        )

    async def backfill_images(self, order: LocalOrder) -> List[SyncWarning]:
        """
        Look up the first product image for line items that have none.

        A failed lookup leaves image_url as None and yields a warning;
        it never aborts the order.
        """
        warnings: List[SyncWarning] = []
        if self.client is None:
            return warnings

        for item in order.line_items:
            if item.image_url or item.product_id is None:
                continue

            if item.product_id in self._image_cache:
                item.image_url = self._image_cache[item.product_id]
                continue

            try:
                image_url = await self.client.get_product_image(item.product_id)
            except UpstreamError as e:
                logger.warning(
                    f"Image lookup failed for product {item.product_id}: {e}",
                    extra={"external_id": order.external_id, "product_id": item.product_id}
                )
                warnings.append(SyncWarning(
                    field="line_item.image_url",
                    message=f"image lookup failed for product {item.product_id}",
                    external_id=order.external_id,
                ))
                continue

            self._image_cache[item.product_id] = image_url
            item.image_url = image_url

        return warnings
