"""
Storefront Database - Pool, Schema and Black Box
=================================================
Only used when DATABASE_URL is set; otherwise the in-memory store runs.

    products        the stock ledger (stock_quantity, listing status)
    orders          one row per payment session, UNIQUE(pidx)
    carts           one JSONB document per user
    system_events   append-only audit trail of order events
"""

import json
from uuid import uuid4
from typing import Any, Dict, List, Literal, Optional
from contextlib import asynccontextmanager

import structlog
import asyncpg

from schemas.base import utcnow

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# EVENT TYPES (The Black Box)
# =============================================================================

EventType = Literal[
    # Order creation
    "ORDER_CREATED",
    "ORDER_REPLAYED",
    "ORDER_REJECTED",
    "ORDER_CREATION_FAILED",

    # Stock ledger
    "STOCK_DECREMENTED",
    "PRODUCT_DELISTED",

    # Fulfillment
    "ORDER_STATUS_CHANGED",
    "ORDER_SHIPPING_UPDATED",
    "ORDER_NOTES_UPDATED",
    "PAYMENT_REFUNDED",

    # System
    "TRANSITION_CONFLICT",
]

Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """asyncpg pool plus the schema it expects"""

    def __init__(self, dsn: str, min_size: int = 5, max_size: int = 20):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Create the pool and apply migrations (idempotent)."""
        if self._initialized:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
            )
            self._initialized = True
            logger.info("database_pool_initialized", max_size=self.max_size)

            await self._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def _run_migrations(self):
        migrations = [
            # Products: the stock ledger lives here
            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                price DOUBLE PRECISION NOT NULL CHECK (price >= 0),
                stock_quantity INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
                status VARCHAR(20) NOT NULL DEFAULT 'active',
                images JSONB NOT NULL DEFAULT '[]',
                primary_image TEXT,
                vendor_id TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Orders: one row per payment session
            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                pidx TEXT NOT NULL UNIQUE,
                transaction_id TEXT,
                product_id TEXT NOT NULL REFERENCES products(id),
                user_id TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity >= 1),
                total_amount DOUBLE PRECISION NOT NULL CHECK (total_amount >= 0),
                customer_info JSONB NOT NULL,
                shipping_address JSONB,
                status VARCHAR(20) NOT NULL DEFAULT 'confirmed',
                payment_status VARCHAR(20) NOT NULL DEFAULT 'completed',
                shipping JSONB NOT NULL DEFAULT '{}',
                timeline JSONB NOT NULL DEFAULT '{}',
                cancellation_reason TEXT,
                refund_reason TEXT,
                notes TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Carts: one row per authenticated user
            """
            CREATE TABLE IF NOT EXISTS carts (
                user_id TEXT PRIMARY KEY,
                items JSONB NOT NULL DEFAULT '[]',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # THE BLACK BOX: Unified event log
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                order_id TEXT,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                component VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_events_order ON system_events(order_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
            "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_orders_product ON orders(product_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
        ]

        async with self.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    db: Database,
    order_id: Optional[str],
    event_type: EventType,
    payload: Dict[str, Any],
    component: Optional[str] = None,
    severity: Severity = "INFO",
) -> str:
    """
    Append one event to the black box and echo it to the console.

    Every significant order event (creation, replay, rejection, stock
    movement, status change) lands here. A failed insert is logged and
    swallowed so the audit trail never fails the order it describes.

    Returns the event id.
    """
    event_id = str(uuid4())
    timestamp = utcnow()

    log_method = getattr(logger, severity.lower(), logger.info)
    log_method(
        event_type,
        event_id=event_id[:8],
        order_id=order_id,
        source=component,
        payload=payload,
    )

    try:
        await db.execute(
            """
            INSERT INTO system_events
            (id, order_id, timestamp, event_type, component, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            event_id,
            order_id,
            timestamp,
            event_type,
            component,
            json.dumps(payload, default=str),
            severity,
        )
    except Exception as e:
        logger.error("event_log_write_failed", event_type=event_type, error=str(e))

    return event_id


