"""
Local order store: the read/write contract and its DuckDB implementation.

Every public write method of OrderStore truncates bounded string fields
to the destination limits immediately before handing the record to the
backend, so no caller can reach the database with an oversized value.

Usage:
    store = DuckDBOrderStore("data/orders.duckdb")
    await store.connect()
    order = await store.get_by_external_id(501)
"""
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import duckdb

from ordersync.exceptions import DuplicateOrderError, PersistenceConflictError
from ordersync.limits import (
    LINE_ITEM_FIELD_LIMITS,
    ORDER_FIELD_LIMITS,
    enforce_field_limits,
    enforce_limits,
    limit_value,
)
from ordersync.models import (
    LineItem,
    LocalOrder,
    StatusUpdate,
    SyncWarning,
    TERMINAL_STATUSES,
    is_terminal,
    utcnow,
)
from ordersync.observability import get_logger

logger = get_logger(__name__)

# DECIMAL(12, 2)
MAX_AMOUNT = Decimal("9999999999.99")


class OrderStore(ABC):
    """
    Contract the sync engine needs from the persistent store.

    Subclasses implement the underscore-prefixed backend hooks; the public
    methods own truncation and highlight rules.
    """

    def __init__(self, reporter=None):
        self.reporter = reporter

    # ═══════════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════════

    @abstractmethod
    async def get_by_external_id(self, external_id: int) -> Optional[LocalOrder]:
        ...

    @abstractmethod
    async def get_many(self, external_ids: Iterable[int]) -> Dict[int, LocalOrder]:
        ...

    @abstractmethod
    async def list_missing_images(self, limit: int = 200) -> List[LocalOrder]:
        """Stored orders with a line item that has a product but no image, newest first."""
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def list_highlighted(self) -> List[int]:
        ...

    # ═══════════════════════════════════════════════════════════════════════════
    # WRITES
    # ═══════════════════════════════════════════════════════════════════════════

    async def insert_order(self, order: LocalOrder) -> List[SyncWarning]:
        """
        Insert a new order with its line items.

        Returns the truncation warnings produced for this write.

        Raises:
            DuplicateOrderError: the external id is already stored
            PersistenceConflictError: the backend rejected the row
        """
        warnings = enforce_field_limits(order, self.reporter)
        await self._insert(order)
        return warnings

    async def update_status(self, update: StatusUpdate) -> None:
        """Write status and shadow; clears the highlight on terminal statuses."""
        await self.bulk_update_status([update])

    async def bulk_update_status(self, updates: List[StatusUpdate]) -> int:
        """Apply many status writes in one transaction. Returns rows written."""
        if not updates:
            return 0
        for update in updates:
            enforce_limits(update, ORDER_FIELD_LIMITS, update.external_id, self.reporter)
        await self._update_status(updates)
        return len(updates)

    async def update_totals(
        self,
        external_id: int,
        total: Decimal,
        subtotal: Decimal,
        shipping_total: Decimal,
        tax_total: Decimal,
    ) -> None:
        await self._update_totals(external_id, total, subtotal, shipping_total, tax_total)

    async def touch(self, external_id: int, remote_status: Optional[str] = None) -> None:
        """Refresh the shadow status and last_sync_attempt without other changes."""
        if remote_status is not None:
            remote_status, warning = limit_value(
                remote_status, ORDER_FIELD_LIMITS["remote_status"], "remote_status", external_id
            )
            if warning and self.reporter is not None:
                self.reporter.warn(warning)
        await self._touch(external_id, remote_status)

    async def set_highlighted(self, external_ids: List[int]) -> int:
        """Highlight the given non-terminal orders. Returns how many were flagged."""
        if not external_ids:
            return 0
        return await self._set_highlighted(list(external_ids))

    async def clear_highlight(self, external_id: int) -> bool:
        return await self._clear_highlight(external_id)

    async def clear_highlights_for_final_statuses(self) -> int:
        return await self._clear_terminal_highlights()

    async def update_line_item_images(self, order: LocalOrder) -> int:
        """
        Store image_url for the order's line items that have one.

        Existing images are never overwritten. Returns rows written.
        """
        if order.id is None:
            return 0

        images: Dict[int, str] = {}
        image_limit = {"image_url": LINE_ITEM_FIELD_LIMITS["image_url"]}
        for position, item in enumerate(order.line_items):
            if not item.image_url:
                continue
            enforce_limits(item, image_limit, order.external_id, self.reporter, prefix=f"line_items[{position}].")
            images[position] = item.image_url

        if not images:
            return 0
        return await self._update_line_item_images(order.id, images)

    # ═══════════════════════════════════════════════════════════════════════════
    # BACKEND HOOKS
    # ═══════════════════════════════════════════════════════════════════════════

    @abstractmethod
    async def _insert(self, order: LocalOrder) -> None:
        ...

    @abstractmethod
    async def _update_status(self, updates: List[StatusUpdate]) -> None:
        ...

    @abstractmethod
    async def _update_totals(
        self,
        external_id: int,
        total: Decimal,
        subtotal: Decimal,
        shipping_total: Decimal,
        tax_total: Decimal,
    ) -> None:
        ...

    @abstractmethod
    async def _touch(self, external_id: int, remote_status: Optional[str]) -> None:
        ...

    @abstractmethod
    async def _set_highlighted(self, external_ids: List[int]) -> int:
        ...

    @abstractmethod
    async def _clear_highlight(self, external_id: int) -> bool:
        ...

    @abstractmethod
    async def _clear_terminal_highlights(self) -> int:
        ...

    @abstractmethod
    async def _update_line_item_images(self, order_id: int, images: Dict[int, str]) -> int:
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# DUCKDB IMPLEMENTATION
# ═══════════════════════════════════════════════════════════════════════════════

ORDER_COLUMNS = [
    "id", "external_id", "order_number", "status", "remote_status",
    "customer_first_name", "customer_last_name", "customer_email", "customer_phone",
    "address", "city", "state", "postcode", "country",
    "total", "subtotal", "shipping_total", "tax_total", "payment_method",
    "shipping_method", "tracking_number", "carrier_policy_id",
    "highlighted", "last_sync_attempt", "created_at", "updated_at",
]

LINE_ITEM_COLUMNS = [
    "order_id", "position", "product_id", "product_name", "quantity", "price", "sku", "image_url",
]

_TERMINAL_SQL = ", ".join(f"'{status}'" for status in sorted(TERMINAL_STATUSES))


def _bounded(column: str, limits: Dict[str, int], not_null: bool = False) -> str:
    null = " NOT NULL" if not_null else ""
    return f"{column} VARCHAR{null} CHECK (length({column}) <= {limits[column]})"


def _schema_sql() -> str:
    order_limits = ORDER_FIELD_LIMITS
    item_limits = LINE_ITEM_FIELD_LIMITS
    return f"""
    CREATE SEQUENCE IF NOT EXISTS seq_orders_id START 1;

    CREATE TABLE IF NOT EXISTS orders (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_orders_id'),
        external_id BIGINT UNIQUE,
        {_bounded("order_number", order_limits, not_null=True)},
        {_bounded("status", order_limits, not_null=True)},
        {_bounded("remote_status", order_limits)},
        {_bounded("customer_first_name", order_limits)},
        {_bounded("customer_last_name", order_limits)},
        {_bounded("customer_email", order_limits)},
        {_bounded("customer_phone", order_limits)},
        {_bounded("address", order_limits)},
        {_bounded("city", order_limits)},
        {_bounded("state", order_limits)},
        {_bounded("postcode", order_limits)},
        {_bounded("country", order_limits)},
        total DECIMAL(12, 2) NOT NULL DEFAULT 0,
        subtotal DECIMAL(12, 2) NOT NULL DEFAULT 0,
        shipping_total DECIMAL(12, 2) NOT NULL DEFAULT 0,
        tax_total DECIMAL(12, 2) NOT NULL DEFAULT 0,
        {_bounded("payment_method", order_limits)},
        {_bounded("shipping_method", order_limits)},
        {_bounded("tracking_number", order_limits)},
        {_bounded("carrier_policy_id", order_limits)},
        highlighted BOOLEAN NOT NULL DEFAULT FALSE,
        last_sync_attempt TIMESTAMP,
        created_at VARCHAR,
        updated_at VARCHAR
    );

    CREATE SEQUENCE IF NOT EXISTS seq_order_line_items_id START 1;

    CREATE TABLE IF NOT EXISTS order_line_items (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_order_line_items_id'),
        order_id BIGINT NOT NULL,
        position INTEGER NOT NULL,
        product_id BIGINT,
        {_bounded("product_name", item_limits)},
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        {_bounded("price", item_limits)},
        {_bounded("sku", item_limits)},
        {_bounded("image_url", item_limits)}
    );

    CREATE INDEX IF NOT EXISTS idx_line_items_order ON order_line_items(order_id);
    """


class DuckDBOrderStore(OrderStore):
    """
    OrderStore backed by DuckDB.

    One connection guarded by an asyncio.Lock; multi-statement writes run
    inside an explicit transaction.
    """

    def __init__(self, db_path: Optional[str] = None, reporter=None):
        super().__init__(reporter)
        self.db_path = str(db_path) if db_path else ":memory:"
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        async with self._lock:
            if self._connection is None:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._connection = duckdb.connect(self.db_path)
                self._connection.execute(_schema_sql())
                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self):
        """Get the database connection, connecting on first use."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    @asynccontextmanager
    async def transaction(self):
        async with self.connection() as conn:
            conn.begin()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    # ─── Reads ────────────────────────────────────────────────────────────────

    async def get_by_external_id(self, external_id: int) -> Optional[LocalOrder]:
        orders = await self.get_many([external_id])
        return orders.get(external_id)

    async def get_many(self, external_ids: Iterable[int]) -> Dict[int, LocalOrder]:
        ids = [external_id for external_id in external_ids if external_id is not None]
        if not ids:
            return {}

        placeholders = ", ".join("?" for _ in ids)
        async with self.connection() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(ORDER_COLUMNS)} FROM orders WHERE external_id IN ({placeholders})",
                ids,
            ).fetchall()
            if not rows:
                return {}

            order_ids = [row[0] for row in rows]
            item_placeholders = ", ".join("?" for _ in order_ids)
            item_rows = conn.execute(
                f"SELECT {', '.join(LINE_ITEM_COLUMNS)} FROM order_line_items "
                f"WHERE order_id IN ({item_placeholders}) ORDER BY order_id, position",
                order_ids,
            ).fetchall()

        items_by_order: Dict[int, List[LineItem]] = {}
        for item in item_rows:
            items_by_order.setdefault(item[0], []).append(LineItem(
                product_id=item[2],
                product_name=item[3] or "",
                quantity=item[4],
                price=item[5] or "0",
                sku=item[6],
                image_url=item[7],
            ))

        result: Dict[int, LocalOrder] = {}
        for row in rows:
            values = dict(zip(ORDER_COLUMNS, row))
            values["line_items"] = items_by_order.get(values["id"], [])
            order = LocalOrder(**values)
            result[order.external_id] = order
        return result

    async def list_missing_images(self, limit: int = 200) -> List[LocalOrder]:
        async with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT o.external_id
                FROM orders o
                JOIN order_line_items li ON li.order_id = o.id
                WHERE li.image_url IS NULL
                  AND li.product_id IS NOT NULL
                  AND o.external_id IS NOT NULL
                ORDER BY o.external_id DESC
                LIMIT ?
                """,
                [limit],
            ).fetchall()
        orders = await self.get_many(row[0] for row in rows)
        return [orders[row[0]] for row in rows if row[0] in orders]

    async def count(self) -> int:
        async with self.connection() as conn:
            row = conn.execute("SELECT count(*) FROM orders").fetchone()
        return row[0]

    async def list_highlighted(self) -> List[int]:
        async with self.connection() as conn:
            rows = conn.execute(
                "SELECT external_id FROM orders WHERE highlighted ORDER BY external_id"
            ).fetchall()
        return [row[0] for row in rows]

    # ─── Writes ───────────────────────────────────────────────────────────────

    async def _insert(self, order: LocalOrder) -> None:
        columns = [column for column in ORDER_COLUMNS if column != "id"]
        values = [getattr(order, column) for column in columns]
        placeholders = ", ".join("?" for _ in columns)

        try:
            async with self.transaction() as conn:
                if order.external_id is not None:
                    exists = conn.execute(
                        "SELECT 1 FROM orders WHERE external_id = ?", [order.external_id]
                    ).fetchone()
                    if exists:
                        raise DuplicateOrderError(order.external_id)

                row = conn.execute(
                    f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
                    values,
                ).fetchone()
                order.id = row[0]

                if order.line_items:
                    conn.executemany(
                        f"INSERT INTO order_line_items ({', '.join(LINE_ITEM_COLUMNS)}) "
                        f"VALUES ({', '.join('?' for _ in LINE_ITEM_COLUMNS)})",
                        [
                            [
                                order.id, position, item.product_id, item.product_name,
                                item.quantity, item.price, item.sku, item.image_url,
                            ]
                            for position, item in enumerate(order.line_items)
                        ],
                    )
        except duckdb.ConstraintException as e:
            if "duplicate key" in str(e).lower() and order.external_id is not None:
                raise DuplicateOrderError(order.external_id) from e
            raise _diagnose_conflict(e, order) from e
        except (duckdb.ConversionException, duckdb.OutOfRangeException) as e:
            raise _diagnose_conflict(e, order) from e

    async def _update_status(self, updates: List[StatusUpdate]) -> None:
        now = utcnow()
        try:
            async with self.transaction() as conn:
                conn.executemany(
                    """
                    UPDATE orders SET
                        status = ?,
                        remote_status = COALESCE(?, remote_status),
                        shipping_method = COALESCE(?, shipping_method),
                        tracking_number = COALESCE(?, tracking_number),
                        carrier_policy_id = COALESCE(?, carrier_policy_id),
                        highlighted = CASE WHEN ? THEN FALSE ELSE highlighted END,
                        last_sync_attempt = ?
                    WHERE external_id = ?
                    """,
                    [
                        [
                            update.status, update.remote_status,
                            update.shipping_method, update.tracking_number, update.carrier_policy_id,
                            is_terminal(update.status), now, update.external_id,
                        ]
                        for update in updates
                    ],
                )
        except duckdb.ConstraintException as e:
            raise PersistenceConflictError(
                "Status update rejected",
                details=str(e),
                field="status",
                external_id=updates[0].external_id if len(updates) == 1 else None,
            ) from e

    async def _update_totals(
        self,
        external_id: int,
        total: Decimal,
        subtotal: Decimal,
        shipping_total: Decimal,
        tax_total: Decimal,
    ) -> None:
        try:
            async with self.connection() as conn:
                conn.execute(
                    """
                    UPDATE orders SET
                        total = ?, subtotal = ?, shipping_total = ?, tax_total = ?,
                        last_sync_attempt = ?
                    WHERE external_id = ?
                    """,
                    [total, subtotal, shipping_total, tax_total, utcnow(), external_id],
                )
        except (duckdb.ConversionException, duckdb.OutOfRangeException) as e:
            raise PersistenceConflictError(
                "Totals update rejected",
                details=str(e),
                field="total",
                value=total,
                external_id=external_id,
            ) from e

    async def _touch(self, external_id: int, remote_status: Optional[str]) -> None:
        async with self.connection() as conn:
            conn.execute(
                """
                UPDATE orders SET
                    remote_status = COALESCE(?, remote_status),
                    last_sync_attempt = ?
                WHERE external_id = ?
                """,
                [remote_status, utcnow(), external_id],
            )

    async def _set_highlighted(self, external_ids: List[int]) -> int:
        placeholders = ", ".join("?" for _ in external_ids)
        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE orders SET highlighted = TRUE
                WHERE external_id IN ({placeholders})
                  AND NOT highlighted
                  AND status NOT IN ({_TERMINAL_SQL})
                RETURNING external_id
                """,
                external_ids,
            ).fetchall()
        return len(rows)

    async def _clear_highlight(self, external_id: int) -> bool:
        async with self.connection() as conn:
            rows = conn.execute(
                "UPDATE orders SET highlighted = FALSE WHERE external_id = ? AND highlighted RETURNING external_id",
                [external_id],
            ).fetchall()
        return bool(rows)

    async def _clear_terminal_highlights(self) -> int:
        async with self.connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE orders SET highlighted = FALSE
                WHERE highlighted AND status IN ({_TERMINAL_SQL})
                RETURNING external_id
                """
            ).fetchall()
        return len(rows)

    async def _update_line_item_images(self, order_id: int, images: Dict[int, str]) -> int:
        written = 0
        async with self.transaction() as conn:
            for position, image_url in images.items():
                rows = conn.execute(
                    """
                    UPDATE order_line_items SET image_url = ?
                    WHERE order_id = ? AND position = ? AND image_url IS NULL
                    RETURNING id
                    """,
                    [image_url, order_id, position],
                ).fetchall()
                written += len(rows)
        return written


def _diagnose_conflict(error: Exception, order: LocalOrder) -> PersistenceConflictError:
    """Find the field that most likely violated a constraint."""
    for field, limit in ORDER_FIELD_LIMITS.items():
        value = getattr(order, field)
        if value is not None and len(value) > limit:
            return PersistenceConflictError(
                "Order rejected by store", details=str(error),
                field=field, value=value, limit=limit, external_id=order.external_id,
            )

    for index, item in enumerate(order.line_items):
        for field, limit in LINE_ITEM_FIELD_LIMITS.items():
            value = getattr(item, field)
            if value is not None and len(value) > limit:
                return PersistenceConflictError(
                    "Order rejected by store", details=str(error),
                    field=f"line_items[{index}].{field}", value=value, limit=limit,
                    external_id=order.external_id,
                )
        if item.quantity < 1:
            return PersistenceConflictError(
                "Order rejected by store", details=str(error),
                field=f"line_items[{index}].quantity", value=item.quantity,
                external_id=order.external_id,
            )

    for field in ("total", "subtotal", "shipping_total", "tax_total"):
        value = getattr(order, field)
        if abs(value) > MAX_AMOUNT:
            return PersistenceConflictError(
                "Order rejected by store", details=str(error),
                field=field, value=value, external_id=order.external_id,
            )

    return PersistenceConflictError(
        "Order rejected by store", details=str(error), external_id=order.external_id,
    )
