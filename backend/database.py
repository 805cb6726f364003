"""
Database Module
===============
AsyncPG connection pool and schema migrations for the order engine.

Tables:
- orders            full order document (JSONB) plus the columns the
                    conditional writes and lookups key on
- reservations      checkout stock reservation journal
- payment_attempts  append-only payment attempt ledger
- audit_events      before/after snapshots of operator actions
- product_variants  stock and prices (when the catalog lives in this database)
- product_sales     per-product sales counters

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from settings import Settings, settings as default_settings

logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    # Orders
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        order_number VARCHAR(32) NOT NULL UNIQUE,
        user_id VARCHAR(64) NOT NULL,
        status VARCHAR(32) NOT NULL,
        payment_status VARCHAR(32) NOT NULL,
        payment_method VARCHAR(16) NOT NULL,
        intent_id VARCHAR(255),
        payment_id VARCHAR(255),
        stock_reserved BOOLEAN NOT NULL DEFAULT TRUE,
        document JSONB NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Checkout reservation journal
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id VARCHAR(64) PRIMARY KEY,
        lines JSONB NOT NULL,
        applied JSONB NOT NULL DEFAULT '[]'::jsonb,
        state VARCHAR(16) NOT NULL DEFAULT 'PENDING',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Payment attempt ledger
    """
    CREATE TABLE IF NOT EXISTS payment_attempts (
        id UUID PRIMARY KEY,
        order_id UUID NOT NULL,
        gateway_event_id VARCHAR(255) UNIQUE,
        status VARCHAR(16) NOT NULL,
        document JSONB NOT NULL,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Audit trail
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id UUID PRIMARY KEY,
        actor JSONB NOT NULL,
        action VARCHAR(64) NOT NULL,
        entity_type VARCHAR(32) NOT NULL,
        entity_id VARCHAR(64) NOT NULL,
        before JSONB,
        after JSONB,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Catalog
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        product_id VARCHAR(64) NOT NULL,
        variant_id VARCHAR(64) NOT NULL,
        product_name TEXT NOT NULL,
        variant_label TEXT NOT NULL,
        price INTEGER NOT NULL,
        selling_price INTEGER NOT NULL,
        stock INTEGER NOT NULL CHECK (stock >= 0),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        PRIMARY KEY (product_id, variant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_sales (
        product_id VARCHAR(64) PRIMARY KEY,
        sales_count INTEGER NOT NULL DEFAULT 0
    )
    """,

    # Journals created before applied lines were tracked
    "ALTER TABLE reservations ADD COLUMN IF NOT EXISTS applied JSONB NOT NULL DEFAULT '[]'::jsonb",

    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_orders_intent ON orders(intent_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_payment ON orders(payment_id)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_state ON reservations(state, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_attempts_order ON payment_attempts(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_events(entity_id)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, config: Settings = default_settings):
        self.config = config
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize the connection pool and run migrations"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.config.DATABASE_URL,
                min_size=self.config.DB_MIN_POOL_SIZE,
                max_size=self.config.DB_MAX_POOL_SIZE,
            )
            logger.info("database_pool_initialized")
            await self._run_migrations()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
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

    async def fetch_value(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")
