"""
Destination column limits and the truncation step.

The same tables drive the DuckDB DDL (CHECK constraints) and
enforce_field_limits, so a value that passes truncation always fits.
"""
from typing import Any, Dict, List, Optional, Tuple

from ordersync.models import LocalOrder, SyncWarning
from ordersync.observability import get_logger

logger = get_logger(__name__)


ORDER_FIELD_LIMITS: Dict[str, int] = {
    "order_number": 50,
    "customer_first_name": 100,
    "customer_last_name": 100,
    "customer_phone": 50,
    "customer_email": 255,
    "address": 255,
    "city": 100,
    "state": 100,
    "postcode": 20,
    "country": 100,
    "payment_method": 100,
    "status": 20,
    "remote_status": 50,
    "shipping_method": 100,
    "tracking_number": 100,
    "carrier_policy_id": 100,
}

LINE_ITEM_FIELD_LIMITS: Dict[str, int] = {
    "product_name": 255,
    "sku": 100,
    "image_url": 500,
    "price": 20,
}


def limit_value(
    value: Optional[str],
    limit: int,
    field: str,
    external_id: Optional[int] = None,
) -> Tuple[Optional[str], Optional[SyncWarning]]:
    """
    Truncate a single value to its limit.

    Returns the (possibly shortened) value and a warning when the value
    actually changed.
    """
    if value is None or len(value) <= limit:
        return value, None

    warning = SyncWarning(
        field=field,
        message=f"{field} truncated from {len(value)} to {limit} characters",
        external_id=external_id,
        original_length=len(value),
        limit=limit,
    )
    return value[:limit], warning


def enforce_limits(
    target: Any,
    limits: Dict[str, int],
    external_id: Optional[int] = None,
    reporter=None,
    prefix: str = "",
) -> List[SyncWarning]:
    """
    Truncate the attributes of `target` named in `limits`, in place.

    Attributes the target does not have are ignored. Each change produces
    one SyncWarning, handed to the reporter when one is given and logged
    otherwise.
    """
    warnings: List[SyncWarning] = []

    for field, limit in limits.items():
        if not hasattr(target, field):
            continue
        value, warning = limit_value(getattr(target, field), limit, f"{prefix}{field}", external_id)
        if warning:
            setattr(target, field, value)
            warnings.append(warning)

    for warning in warnings:
        if reporter is not None:
            reporter.warn(warning)
        else:
            logger.warning(
                f"Order {warning.external_id}: {warning.message}",
                extra={"field": warning.field, "limit": warning.limit}
            )

    return warnings


def enforce_field_limits(order: LocalOrder, reporter=None) -> List[SyncWarning]:
    """Truncate every bounded field of an order and its line items in place."""
    warnings = enforce_limits(order, ORDER_FIELD_LIMITS, order.external_id, reporter)

    for index, item in enumerate(order.line_items):
        warnings.extend(enforce_limits(
            item,
            LINE_ITEM_FIELD_LIMITS,
            order.external_id,
            reporter,
            prefix=f"line_items[{index}].",
        ))

    return warnings
