"""
Domain models for order synchronization.

Remote* dataclasses are transient snapshots of WooCommerce records built
tolerantly from API payloads. Local* dataclasses are the mirrored records
handed to the OrderStore.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class LocalStatus(str, Enum):
    """Local order taxonomy."""
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Highlight is cleared once an order reaches any of these
TERMINAL_STATUSES = frozenset({
    LocalStatus.CANCELLED.value,
    LocalStatus.SHIPPED.value,
    LocalStatus.DELIVERED.value,
})


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in last_sync_attempt."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImportResult(str, Enum):
    """Outcome of importing a single remote order."""
    NEW = "new"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════════════════

def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


@dataclass
class BillingContact:
    """Billing block of a WooCommerce order."""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "BillingContact":
        if not isinstance(data, dict):
            data = {}
        return cls(**{
            name: str(data.get(name) or "")
            for name in cls.__dataclass_fields__
        })

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "Unknown"

    @property
    def address(self) -> str:
        return " ".join(p for p in (self.address_1, self.address_2) if p)


@dataclass
class RemoteLineItem:
    """Line item as returned by the API. Quantity and price stay raw."""
    product_id: Optional[int]
    name: str = ""
    quantity: Any = None
    price: Any = None
    sku: str = ""
    image_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteLineItem":
        image = data.get("image") or {}
        return cls(
            product_id=_parse_int(data.get("product_id")),
            name=str(data.get("name") or ""),
            quantity=data.get("quantity"),
            price=data.get("price"),
            sku=str(data.get("sku") or ""),
            image_url=(image.get("src") or None) if isinstance(image, dict) else None,
        )


@dataclass
class RemoteOrder:
    """
    Source-of-truth snapshot of a WooCommerce order.

    Monetary fields are kept as the decimal strings the API sends;
    parsing happens in the normalizer.
    """
    id: Optional[int]
    number: str = ""
    status: str = ""
    currency: str = ""
    total: Any = None
    shipping_total: Any = None
    total_tax: Any = None
    payment_method_title: str = ""
    billing: BillingContact = field(default_factory=BillingContact)
    line_items: List[RemoteLineItem] = field(default_factory=list)
    date_created: Optional[str] = None
    date_modified: Optional[str] = None
    shipping_method: Optional[str] = None
    carrier_policy_id: Optional[str] = None
    tracking_number: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteOrder":
        """Create RemoteOrder from a WooCommerce API payload."""
        shipping_lines = _as_list(data.get("shipping_lines"))
        first_shipping = shipping_lines[0] if shipping_lines else {}
        if not isinstance(first_shipping, dict):
            first_shipping = {}

        tracking = None
        for meta in _as_list(data.get("meta_data")):
            if isinstance(meta, dict) and meta.get("key") == "_tracking_number":
                tracking = str(meta.get("value")) if meta.get("value") else None
                break

        return cls(
            id=_parse_int(data.get("id")),
            number=str(data.get("number") or data.get("id") or ""),
            status=str(data.get("status") or ""),
            currency=str(data.get("currency") or ""),
            total=data.get("total"),
            shipping_total=data.get("shipping_total"),
            total_tax=data.get("total_tax"),
            payment_method_title=str(data.get("payment_method_title") or ""),
            billing=BillingContact.from_api(data.get("billing")),
            line_items=[
                RemoteLineItem.from_api(item)
                for item in _as_list(data.get("line_items"))
                if isinstance(item, dict)
            ],
            date_created=data.get("date_created"),
            date_modified=data.get("date_modified") or data.get("date_created"),
            shipping_method=first_shipping.get("method_title") or None,
            carrier_policy_id=first_shipping.get("method_id") or None,
            tracking_number=tracking,
        )

    @property
    def modified_at(self) -> datetime:
        """Parsed modification time, datetime.min when unknown."""
        if self.date_modified:
            try:
                return datetime.fromisoformat(
                    str(self.date_modified).replace("Z", "+00:00")
                ).replace(tzinfo=None)
            except ValueError:
                pass
        return datetime.min


# ═══════════════════════════════════════════════════════════════════════════════
# LOCAL RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LineItem:
    """Mirrored line item. Price stays a decimal string."""
    product_id: Optional[int]
    product_name: str
    quantity: int = 1
    price: str = "0"
    sku: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class LocalOrder:
    """The mirrored order record."""
    external_id: Optional[int]
    order_number: str
    status: str
    remote_status: Optional[str] = None
    customer_first_name: str = ""
    customer_last_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""
    total: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    shipping_total: Decimal = Decimal("0")
    tax_total: Decimal = Decimal("0")
    payment_method: str = ""
    shipping_method: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier_policy_id: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)
    highlighted: bool = False
    last_sync_attempt: Optional[datetime] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def customer_name(self) -> str:
        return " ".join(
            p for p in (self.customer_first_name, self.customer_last_name) if p
        ) or "Unknown"

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC BOOKKEEPING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class StatusUpdate:
    """One row of a status write. Fields of None other than status are left untouched."""
    external_id: int
    status: str
    remote_status: Optional[str]
    shipping_method: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier_policy_id: Optional[str] = None


@dataclass
class SyncWarning:
    """Non-fatal data issue found while syncing an order."""
    field: str
    message: str
    external_id: Optional[int] = None
    original_length: Optional[int] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "message": self.message,
            "external_id": self.external_id,
            "original_length": self.original_length,
            "limit": self.limit,
        }


@dataclass
class NormalizedOrder:
    """Normalizer output: local record, the snapshot it came from, warnings."""
    order: LocalOrder
    source: RemoteOrder
    warnings: List[SyncWarning] = field(default_factory=list)

    @property
    def external_id(self) -> Optional[int]:
        return self.order.external_id


@dataclass
class ImportOutcome:
    """Result of ImportEngine.import_or_update for one order."""
    result: ImportResult
    external_id: Optional[int]
    warnings: List[SyncWarning] = field(default_factory=list)
    error: Optional[str] = None
    status_changed: bool = False
    order: Optional[LocalOrder] = None


@dataclass
class SyncCursor:
    """Orchestrator state, kept for the lifetime of the process only."""
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_new_count: int = 0
    fast_checks_since_full: int = 0
    last_full_at: Optional[datetime] = None
    alerted: bool = False

    def record_success(self, now: datetime, new_count: int) -> None:
        self.consecutive_failures = 0
        self.alerted = False
        self.last_success_at = now
        self.last_new_count = new_count

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_new_count": self.last_new_count,
            "fast_checks_since_full": self.fast_checks_since_full,
            "last_full_at": self.last_full_at.isoformat() if self.last_full_at else None,
        }
