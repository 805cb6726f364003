"""
Reconciliation Loop - The Safety Net
====================================
Background task that settles state a crash or a lost callback left behind.

Each cycle:
- PENDING stock reservations older than the stale threshold are committed
  (their order exists) or rolled back (it never got written)
- PLACED online orders older than the threshold have their intent checked
  with the gateway, picking up captures whose confirmations never arrived

Errors on one item are logged and the cycle moves on.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict

import structlog

from bootstrap import create_engine
from lifecycle.checkout import OrderService
from schemas.orders import utcnow
from settings import Settings, settings as default_settings

logger = structlog.get_logger().bind(component="reconciliation")


async def reconcile_once(
    service: OrderService,
    config: Settings = default_settings,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[str, int]:
    """Run one reconciliation cycle and return what it did."""
    cutoff = clock() - timedelta(minutes=config.RECONCILE_STALE_MINUTES)
    stats = await service.stock.reconcile_pending(cutoff, config.RECONCILE_BATCH_SIZE)
    stats.update(payments_checked=0, payments_recovered=0)

    awaiting = await service.orders.list_awaiting_payment(cutoff, config.RECONCILE_BATCH_SIZE)
    for order in awaiting:
        stats["payments_checked"] += 1
        try:
            synced = await service.sync_payment_status(order.order_id)
        except Exception as e:
            stats["errors"] += 1
            logger.error(
                "payment_sync_failed",
                order_id=order.order_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue
        if synced.is_paid:
            stats["payments_recovered"] += 1
            logger.warning("payment_recovered", order_id=order.order_id, order_number=order.order_number)

    logger.info("reconciliation_cycle_complete", **stats)
    return stats


async def reconciliation_loop(service: OrderService, config: Settings = default_settings):
    """Run ``reconcile_once`` every RECONCILE_INTERVAL_SECONDS until cancelled."""
    logger.info(
        "reconciliation_loop_started",
        interval=config.RECONCILE_INTERVAL_SECONDS,
        stale_minutes=config.RECONCILE_STALE_MINUTES,
        enabled=config.RECONCILE_ENABLED,
    )

    if not config.RECONCILE_ENABLED:
        logger.info("reconciliation_loop_disabled")
        return

    while True:
        try:
            await reconcile_once(service, config)
        except Exception as e:
            logger.error("reconciliation_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(config.RECONCILE_INTERVAL_SECONDS)


def main():
    """Console entry point: run the loop against the production stack."""
    async def run():
        engine = await create_engine(default_settings)
        try:
            await reconciliation_loop(engine.service, default_settings)
        finally:
            await engine.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
