"""
Bootstrap
=========
Wires the production stack: asyncpg storage, Redis counter cache, Stripe.

Carts and saved addresses belong to the host application; pass its adapters
in. The in-memory defaults are only good for processes that never check out
(the reconciliation worker).
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from database import Database
from lifecycle.checkout import OrderService
from payments.stripe_gateway import StripeGateway
from services.cache import RedisCache
from services.customers import IAddressBook, ICartStore, InMemoryAddressBook, InMemoryCartStore
from services.notifications import INotifier, LoggingNotifier
from settings import Settings, configure_logging, settings as default_settings
from storage.postgres import (
    PostgresAuditLog,
    PostgresCatalog,
    PostgresOrderRepository,
    PostgresPaymentAttemptLedger,
    PostgresReservationJournal,
)

logger = structlog.get_logger().bind(component="bootstrap")


@dataclass
class OrderEngine:
    service: OrderService
    database: Database
    cache: RedisCache

    async def close(self):
        await self.cache.close()
        await self.database.close()
        logger.info("order_engine_stopped")


async def create_engine(
    config: Settings = default_settings,
    carts: Optional[ICartStore] = None,
    addresses: Optional[IAddressBook] = None,
    notifier: Optional[INotifier] = None,
) -> OrderEngine:
    configure_logging(config)

    db = Database(config)
    await db.initialize()

    cache = RedisCache(config)
    await cache.initialize()

    service = OrderService(
        orders=PostgresOrderRepository(db),
        journal=PostgresReservationJournal(db),
        ledger=PostgresPaymentAttemptLedger(db),
        catalog=PostgresCatalog(db),
        carts=carts or InMemoryCartStore(),
        addresses=addresses or InMemoryAddressBook(),
        gateway=StripeGateway(config),
        notifier=notifier or LoggingNotifier(),
        audit=PostgresAuditLog(db),
        cache=cache,
        config=config,
    )
    logger.info("order_engine_started", currency=config.CURRENCY, cod_enabled=config.COD_ENABLED)
    return OrderEngine(service=service, database=db, cache=cache)
