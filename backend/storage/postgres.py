"""
PostgreSQL storage backend (asyncpg).

Atomicity comes from the database itself:
- ``orders.pidx`` is UNIQUE; the insert uses ON CONFLICT DO NOTHING so a
  lost race is reported, not raised as an integrity error.
- The stock decrement is one conditional UPDATE (``WHERE stock_quantity
  >= $2``) that also delists at zero.
- Both run inside one transaction on one connection.
"""

import json
from typing import Any, Optional

import asyncpg
import structlog

from database import Database, log_event
from schemas.base import utcnow
from schemas.carts import Cart, CartItem
from schemas.orders import (
    CustomerInfo,
    Order,
    OrderFilter,
    OrderStatus,
    OrderTimeline,
    ShippingAddress,
    ShippingInfo,
)
from schemas.products import Product, StockUpdate
from storage.base import (
    DuplicateKeyError,
    ICartRepository,
    IEventLog,
    IOrderRepository,
    IProductRepository,
    IUnitOfWork,
    Storage,
    StoredEvent,
)

logger = structlog.get_logger().bind(component="postgres_storage")


def _json(value: Any) -> str:
    return json.dumps(value, default=str)


def _load(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


# =============================================================================
# ROW MAPPING
# =============================================================================

PRODUCT_COLUMNS = (
    "id, name, description, price, stock_quantity, status, images, "
    "primary_image, vendor_id, created_at, updated_at"
)

ORDER_COLUMNS = (
    "id, pidx, transaction_id, product_id, user_id, quantity, total_amount, "
    "customer_info, shipping_address, status, payment_status, shipping, timeline, "
    "cancellation_reason, refund_reason, notes, created_at, updated_at"
)


def _row_to_product(row: asyncpg.Record) -> Product:
    data = dict(row)
    data["images"] = _load(data["images"]) or []
    return Product(**data)


def _row_to_order(row: asyncpg.Record) -> Order:
    data = dict(row)
    address = _load(data["shipping_address"])
    data["customer_info"] = CustomerInfo(**_load(data["customer_info"]))
    data["shipping_address"] = ShippingAddress(**address) if address else None
    data["shipping"] = ShippingInfo(**(_load(data["shipping"]) or {}))
    data["timeline"] = OrderTimeline(**(_load(data["timeline"]) or {}))
    return Order(**data)


def _order_params(order: Order) -> tuple:
    dumped = order.model_dump(mode="json")
    return (
        order.id,
        order.pidx,
        order.transaction_id,
        order.product_id,
        order.user_id,
        order.quantity,
        order.total_amount,
        _json(dumped["customer_info"]),
        _json(dumped["shipping_address"]) if order.shipping_address else None,
        order.status.value,
        order.payment_status.value,
        _json(dumped["shipping"]),
        _json(dumped["timeline"]),
        order.cancellation_reason,
        order.refund_reason,
        order.notes,
        order.created_at,
        order.updated_at,
    )


# =============================================================================
# REPOSITORIES
# =============================================================================

class PostgresProductRepository(IProductRepository):

    def __init__(self, db: Database):
        self.db = db

    async def get(self, product_id: str) -> Optional[Product]:
        row = await self.db.fetch_one(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = $1", product_id
        )
        return _row_to_product(row) if row else None

    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        if not product_ids:
            return {}
        rows = await self.db.fetch_all(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = ANY($1)", product_ids
        )
        return {row["id"]: _row_to_product(row) for row in rows}

    async def save(self, product: Product) -> Product:
        await self.db.execute(
            """
            INSERT INTO products
            (id, name, description, price, stock_quantity, status, images,
             primary_image, vendor_id, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                price = EXCLUDED.price,
                stock_quantity = EXCLUDED.stock_quantity,
                status = EXCLUDED.status,
                images = EXCLUDED.images,
                primary_image = EXCLUDED.primary_image,
                vendor_id = EXCLUDED.vendor_id,
                updated_at = EXCLUDED.updated_at
            """,
            product.id,
            product.name,
            product.description,
            product.price,
            product.stock_quantity,
            product.status.value,
            _json(product.images),
            product.primary_image,
            product.vendor_id,
            product.created_at,
            product.updated_at,
        )
        return product


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self.db.fetch_one(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def get_by_pidx(self, pidx: str) -> Optional[Order]:
        row = await self.db.fetch_one(f"SELECT {ORDER_COLUMNS} FROM orders WHERE pidx = $1", pidx)
        return _row_to_order(row) if row else None

    async def search(self, criteria: OrderFilter) -> tuple[list[Order], int]:
        clauses: list[str] = []
        args: list[Any] = []

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if criteria.user_id:
            clauses.append(f"user_id = {bind(criteria.user_id)}")
        if criteria.product_id:
            clauses.append(f"product_id = {bind(criteria.product_id)}")
        if criteria.vendor_id:
            clauses.append(
                f"product_id IN (SELECT id FROM products WHERE vendor_id = {bind(criteria.vendor_id)})"
            )
        if criteria.created_from:
            clauses.append(f"created_at >= {bind(criteria.created_from)}")
        if criteria.created_to:
            clauses.append(f"created_at <= {bind(criteria.created_to)}")
        if criteria.status:
            clauses.append(f"status = {bind(criteria.status.value)}")
        if criteria.payment_status:
            clauses.append(f"payment_status = {bind(criteria.payment_status.value)}")
        if criteria.search:
            needle = bind(f"%{criteria.search}%")
            clauses.append(
                f"(pidx ILIKE {needle} OR transaction_id ILIKE {needle}"
                f" OR customer_info->>'name' ILIKE {needle}"
                f" OR customer_info->>'email' ILIKE {needle}"
                f" OR shipping_address->>'full_name' ILIKE {needle})"
            )

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total = await self.db.fetch_value(f"SELECT COUNT(*) FROM orders {where}", *args)

        limit = bind(criteria.limit)
        offset = bind((criteria.page - 1) * criteria.limit)
        rows = await self.db.fetch_all(
            f"SELECT {ORDER_COLUMNS} FROM orders {where} "
            f"ORDER BY created_at DESC LIMIT {limit} OFFSET {offset}",
            *args,
        )
        return [_row_to_order(row) for row in rows], int(total or 0)

    async def compare_and_set(self, order: Order, expected_status: OrderStatus) -> bool:
        dumped = order.model_dump(mode="json")
        result = await self.db.execute(
            """
            UPDATE orders SET
                status = $3,
                payment_status = $4,
                shipping = $5,
                timeline = $6,
                cancellation_reason = $7,
                refund_reason = $8,
                notes = $9,
                updated_at = $10
            WHERE id = $1 AND status = $2
            """,
            order.id,
            expected_status.value,
            order.status.value,
            order.payment_status.value,
            _json(dumped["shipping"]),
            _json(dumped["timeline"]),
            order.cancellation_reason,
            order.refund_reason,
            order.notes,
            order.updated_at,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.endswith(" 1")


class PostgresCartRepository(ICartRepository):

    def __init__(self, db: Database):
        self.db = db

    async def get(self, user_id: str) -> Optional[Cart]:
        row = await self.db.fetch_one(
            "SELECT user_id, items, created_at, updated_at FROM carts WHERE user_id = $1",
            user_id,
        )
        if not row:
            return None
        items = [CartItem(**item) for item in _load(row["items"]) or []]
        return Cart(
            user_id=row["user_id"],
            items=items,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def save(self, cart: Cart) -> Cart:
        items = [item.model_dump(mode="json", exclude={"subtotal"}) for item in cart.items]
        await self.db.execute(
            """
            INSERT INTO carts (user_id, items, created_at, updated_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id) DO UPDATE SET
                items = EXCLUDED.items,
                updated_at = EXCLUDED.updated_at
            """,
            cart.user_id,
            _json(items),
            cart.created_at,
            cart.updated_at,
        )
        return cart


class PostgresEventLog(IEventLog):
    """Black box backed by the system_events table"""

    def __init__(self, db: Database):
        self.db = db

    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        return await log_event(self.db, order_id, event_type, payload, component, severity)

    async def for_order(self, order_id: str) -> list[StoredEvent]:
        rows = await self.db.fetch_all(
            """
            SELECT id, order_id, event_type, component, payload, severity, timestamp
            FROM system_events WHERE order_id = $1 ORDER BY timestamp
            """,
            order_id,
        )
        return [
            StoredEvent(
                id=str(row["id"]),
                order_id=row["order_id"],
                event_type=row["event_type"],
                component=row["component"],
                payload=_load(row["payload"]) or {},
                severity=row["severity"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]


# =============================================================================
# UNIT OF WORK
# =============================================================================

class PostgresUnitOfWork(IUnitOfWork):
    """One connection, one transaction"""

    def __init__(self, db: Database):
        self.db = db
        self._conn_cm = None
        self._conn: Optional[asyncpg.Connection] = None
        self._tx = None

    async def __aenter__(self) -> "PostgresUnitOfWork":
        self._conn_cm = self.db.acquire()
        self._conn = await self._conn_cm.__aenter__()
        self._tx = self._conn.transaction()
        await self._tx.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                await self._tx.commit()
            else:
                await self._tx.rollback()
                logger.info("unit_of_work_rolled_back", reason=type(exc).__name__)
        finally:
            await self._conn_cm.__aexit__(exc_type, exc, tb)
            self._conn = None
            self._tx = None
        return False

    async def insert_order(self, order: Order) -> Order:
        inserted = await self._conn.fetchval(
            f"""
            INSERT INTO orders ({ORDER_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
            ON CONFLICT (pidx) DO NOTHING
            RETURNING id
            """,
            *_order_params(order),
        )
        if inserted is None:
            raise DuplicateKeyError(order.pidx)
        return order

    async def decrement_stock(self, product_id: str, quantity: int) -> Optional[StockUpdate]:
        row = await self._conn.fetchrow(
            """
            UPDATE products SET
                stock_quantity = stock_quantity - $2,
                status = CASE WHEN stock_quantity - $2 = 0 THEN 'unlisted' ELSE status END,
                updated_at = $3
            WHERE id = $1 AND stock_quantity >= $2
            RETURNING name, stock_quantity + $2 AS old_stock, stock_quantity AS new_stock,
                      (stock_quantity = 0) AS delisted
            """,
            product_id,
            quantity,
            utcnow(),
        )
        if row is None:
            return None
        return StockUpdate(
            product_id=product_id,
            product_name=row["name"],
            old_stock=row["old_stock"],
            new_stock=row["new_stock"],
            delisted=row["delisted"],
        )


# =============================================================================
# STORAGE
# =============================================================================

class PostgresStorage(Storage):
    """Storage backed by one asyncpg pool"""

    def __init__(self, db: Database):
        self.db = db
        self.products = PostgresProductRepository(db)
        self.orders = PostgresOrderRepository(db)
        self.carts = PostgresCartRepository(db)
        self.events = PostgresEventLog(db)

    def unit_of_work(self) -> PostgresUnitOfWork:
        return PostgresUnitOfWork(self.db)

    async def initialize(self) -> None:
        await self.db.initialize()

    async def close(self) -> None:
        await self.db.close()
