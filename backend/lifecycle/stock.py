"""
Stock Reservation Manager
=========================
All-or-nothing stock reservation across the variants of one checkout, as an
explicit saga:

1. ``begin`` a PENDING reservation in the journal
2. conditionally decrement each variant (stock >= quantity), journalling
   every decrement that lands
3. on any failure or cancellation, mark ROLLED_BACK and credit back the
   journalled lines
4. the checkout marks the reservation COMMITTED once the order is persisted

A crash between 2 and 4 leaves a PENDING journal entry behind; the
reconciliation task settles it (``reconcile_pending``). The reservation id is
the order id, so the journal can tell whether the order made it to storage.

Release is guarded by the order's persisted ``stock_reserved`` flag, so a
retried cancellation never double-credits.
"""

from datetime import datetime
from typing import Callable, Dict, List

import structlog

from errors import ValidationError
from schemas.orders import Order, Reservation, ReservationState, StockLine, utcnow
from services.catalog import ICatalog
from storage.repositories import IOrderRepository, IReservationJournal

logger = structlog.get_logger().bind(component="stock")


class StockReservationManager:

    def __init__(
        self,
        catalog: ICatalog,
        journal: IReservationJournal,
        orders: IOrderRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.journal = journal
        self.orders = orders
        self._clock = clock

    async def reserve(self, reservation_id: str, lines: List[StockLine]) -> Reservation:
        """
        Decrement every line or none.

        Each decrement is journalled as applied before the next one starts, so
        compensation (here, or by the reconciler after a crash) credits back
        exactly what was taken. Cancellation of the calling task compensates too.

        Raises:
            ValidationError: a variant no longer has enough stock; names the item
        """
        now = self._clock()
        reservation = Reservation(
            reservation_id=reservation_id,
            lines=lines,
            created_at=now,
            updated_at=now,
        )
        await self.journal.begin(reservation)

        applied: List[StockLine] = []
        try:
            for line in lines:
                if not await self.catalog.decrement_stock(line.product_id, line.variant_id, line.quantity):
                    raise await self._insufficient(line)
                applied.append(line)
                await self.catalog.increment_sales_counter(line.product_id, line.quantity)
                await self.journal.record_applied(reservation_id, line)
        except BaseException:
            if await self.journal.mark(reservation_id, ReservationState.ROLLED_BACK):
                await self._credit(applied)
            logger.warning(
                "reservation_rolled_back",
                reservation_id=reservation_id,
                restored_lines=len(applied),
            )
            raise

        logger.info("stock_reserved", reservation_id=reservation_id, lines=len(lines))
        return reservation.model_copy(update={"applied": applied})

    async def _insufficient(self, line: StockLine) -> ValidationError:
        variant = await self.catalog.get_variant(line.product_id, line.variant_id)
        name = variant.product_name if variant else f"{line.product_id}/{line.variant_id}"
        available = variant.stock if variant else 0
        return ValidationError(
            f"Insufficient stock for {name}: {available} available, {line.quantity} requested",
            details={
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "product_name": name,
                "requested": line.quantity,
                "available": available,
            },
        )

    async def commit(self, reservation_id: str) -> bool:
        return await self.journal.mark(reservation_id, ReservationState.COMMITTED)

    async def rollback(self, reservation: Reservation) -> bool:
        """Undo the applied lines of a reservation. Only the caller that wins the journal mark restores stock."""
        if not await self.journal.mark(reservation.reservation_id, ReservationState.ROLLED_BACK):
            return False
        await self._credit(reservation.applied)
        logger.warning("reservation_compensated", reservation_id=reservation.reservation_id)
        return True

    async def release(self, order: Order) -> bool:
        """Return an order's stock. False when it was already released."""
        if not await self.orders.claim_stock_release(order.order_id):
            logger.info("stock_release_skipped", order_id=order.order_id)
            return False
        await self._credit(order.stock_lines())
        logger.info("stock_released", order_id=order.order_id, order_number=order.order_number)
        return True

    async def _credit(self, lines: List[StockLine]) -> None:
        for line in lines:
            restored = await self.catalog.increment_stock(line.product_id, line.variant_id, line.quantity)
            if not restored:
                logger.warning(
                    "stock_release_variant_missing",
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                )
                continue
            await self.catalog.increment_sales_counter(line.product_id, -line.quantity)

    async def reconcile_pending(self, older_than: datetime, limit: int) -> Dict[str, int]:
        """Settle reservations left PENDING by a crash between reserve and persist."""
        stats = {"committed": 0, "rolled_back": 0, "errors": 0}
        for reservation in await self.journal.list_pending(older_than, limit):
            try:
                if await self.orders.get(reservation.reservation_id):
                    if await self.commit(reservation.reservation_id):
                        stats["committed"] += 1
                elif await self.rollback(reservation):
                    stats["rolled_back"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    "reservation_reconcile_failed",
                    reservation_id=reservation.reservation_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        if any(stats.values()):
            logger.info("reservations_reconciled", **stats)
        return stats
