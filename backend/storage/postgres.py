"""
PostgreSQL Storage
==================
asyncpg implementations of the repository, catalog and audit contracts.

Conditional writes are single UPDATE statements whose WHERE clause carries the
precondition, so the database row lock is the only serialization point:

    UPDATE orders SET ... WHERE id = $1 AND status = $n AND payment_status = $m
    UPDATE product_variants SET stock = stock - $3 WHERE ... AND stock >= $3
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from database import Database
from errors import DuplicateOrderNumberError
from schemas.orders import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Reservation,
    ReservationState,
    StockLine,
    VariantSnapshot,
    utcnow,
)
from schemas.payments import AttemptStatus, PaymentAttempt
from services.audit import IAuditLog
from services.catalog import ICatalog
from storage.repositories import (
    IOrderRepository,
    IPaymentAttemptLedger,
    IReservationJournal,
)

logger = structlog.get_logger().bind(component="postgres_storage")


def _json(value: Any) -> Any:
    """asyncpg hands JSONB back as text unless a codec is registered."""
    return json.loads(value) if isinstance(value, str) else value


def _order_from_row(row) -> Order:
    # Columns are authoritative for fields the narrow updates touch
    data = _json(row["document"])
    data.update(
        version=row["version"],
        stock_reserved=row["stock_reserved"],
        updated_at=row["updated_at"],
    )
    return Order.model_validate(data)


_ORDER_COLUMNS = "document, version, stock_reserved, updated_at"


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self.db = db

    async def insert(self, order: Order) -> Order:
        try:
            await self.db.execute(
                """
                INSERT INTO orders
                (id, order_number, user_id, status, payment_status, payment_method,
                 intent_id, payment_id, stock_reserved, document, version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                """,
                order.order_id,
                order.order_number,
                order.user_id,
                order.status.value,
                order.payment_status.value,
                order.payment_method.value,
                order.gateway.intent_id,
                order.gateway.payment_id,
                order.stock_reserved,
                order.model_dump_json(),
                order.version,
                order.created_at,
                order.updated_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateOrderNumberError(order.order_number)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", order_id
        )
        return _order_from_row(row) if row else None

    async def get_by_intent_id(self, intent_id: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE intent_id = $1", intent_id
        )
        return _order_from_row(row) if row else None

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE payment_id = $1", payment_id
        )
        return _order_from_row(row) if row else None

    async def highest_sequence_for_day(self, day_prefix: str) -> int:
        value = await self.db.fetch_value(
            """
            SELECT COALESCE(MAX(CAST(substring(order_number FROM $2::int) AS INTEGER)), 0)
            FROM orders
            WHERE order_number LIKE $1 || '%'
              AND substring(order_number FROM $2::int) ~ '^[0-9]+$'
            """,
            day_prefix,
            len(day_prefix) + 1,
        )
        return int(value or 0)

    async def replace_if(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_payment_status: PaymentStatus,
    ) -> Optional[Order]:
        now = utcnow()
        row = await self.db.fetch_one(
            f"""
            UPDATE orders
            SET status = $4,
                payment_status = $5,
                intent_id = $6,
                payment_id = $7,
                stock_reserved = stock_reserved AND $8,
                document = $9,
                version = version + 1,
                updated_at = $10
            WHERE id = $1 AND status = $2 AND payment_status = $3
            RETURNING {_ORDER_COLUMNS}
            """,
            order.order_id,
            expected_status.value,
            expected_payment_status.value,
            order.status.value,
            order.payment_status.value,
            order.gateway.intent_id,
            order.gateway.payment_id,
            order.stock_reserved,
            order.model_dump_json(),
            now,
        )
        return _order_from_row(row) if row else None

    async def claim_stock_release(self, order_id: str) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE orders
            SET stock_reserved = FALSE, version = version + 1, updated_at = NOW()
            WHERE id = $1 AND stock_reserved
            RETURNING id
            """,
            order_id,
        )
        return row is not None

    async def list_awaiting_payment(self, older_than: datetime, limit: int) -> List[Order]:
        rows = await self.db.fetch_all(
            f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders
            WHERE status = $1
              AND payment_method = $2
              AND payment_status = $3
              AND intent_id IS NOT NULL
              AND created_at < $4
            ORDER BY created_at
            LIMIT $5
            """,
            OrderStatus.PLACED.value,
            PaymentMethod.ONLINE.value,
            PaymentStatus.PENDING.value,
            older_than,
            limit,
        )
        return [_order_from_row(row) for row in rows]


class PostgresReservationJournal(IReservationJournal):

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _from_row(row) -> Reservation:
        return Reservation(
            reservation_id=row["id"],
            lines=[StockLine.model_validate(line) for line in _json(row["lines"])],
            applied=[StockLine.model_validate(line) for line in _json(row["applied"])],
            state=ReservationState(row["state"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def begin(self, reservation: Reservation) -> None:
        await self.db.execute(
            """
            INSERT INTO reservations (id, lines, state, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            reservation.reservation_id,
            json.dumps([line.model_dump() for line in reservation.lines]),
            reservation.state.value,
            reservation.created_at,
            reservation.updated_at,
        )

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        row = await self.db.fetch_one("SELECT * FROM reservations WHERE id = $1", reservation_id)
        return self._from_row(row) if row else None

    async def record_applied(self, reservation_id: str, line: StockLine) -> None:
        await self.db.execute(
            """
            UPDATE reservations SET applied = applied || $2::jsonb, updated_at = NOW()
            WHERE id = $1
            """,
            reservation_id,
            json.dumps([line.model_dump()]),
        )

    async def mark(self, reservation_id: str, state: ReservationState) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE reservations SET state = $2, updated_at = NOW()
            WHERE id = $1 AND state = $3
            RETURNING id
            """,
            reservation_id,
            state.value,
            ReservationState.PENDING.value,
        )
        return row is not None

    async def list_pending(self, older_than: datetime, limit: int) -> List[Reservation]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM reservations
            WHERE state = $1 AND created_at < $2
            ORDER BY created_at
            LIMIT $3
            """,
            ReservationState.PENDING.value,
            older_than,
            limit,
        )
        return [self._from_row(row) for row in rows]


class PostgresPaymentAttemptLedger(IPaymentAttemptLedger):

    def __init__(self, db: Database):
        self.db = db

    async def append(self, attempt: PaymentAttempt) -> bool:
        row = await self.db.fetch_one(
            """
            INSERT INTO payment_attempts (id, order_id, gateway_event_id, status, document, received_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (gateway_event_id) DO NOTHING
            RETURNING id
            """,
            attempt.attempt_id,
            attempt.order_id,
            attempt.gateway_event_id,
            attempt.status.value,
            attempt.model_dump_json(),
            attempt.received_at,
        )
        return row is not None

    async def list_for_order(self, order_id: str) -> List[PaymentAttempt]:
        rows = await self.db.fetch_all(
            "SELECT document FROM payment_attempts WHERE order_id = $1 ORDER BY received_at",
            order_id,
        )
        return [PaymentAttempt.model_validate(_json(row["document"])) for row in rows]

    async def count_failed(self, order_id: str) -> int:
        value = await self.db.fetch_value(
            "SELECT COUNT(*) FROM payment_attempts WHERE order_id = $1 AND status = $2",
            order_id,
            AttemptStatus.FAILED.value,
        )
        return int(value or 0)


class PostgresCatalog(ICatalog):
    """Catalog backed by the product_variants table"""

    def __init__(self, db: Database):
        self.db = db

    async def get_variant(self, product_id: str, variant_id: str) -> Optional[VariantSnapshot]:
        row = await self.db.fetch_one(
            "SELECT * FROM product_variants WHERE product_id = $1 AND variant_id = $2",
            product_id,
            variant_id,
        )
        return VariantSnapshot.model_validate(dict(row)) if row else None

    async def decrement_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE product_variants SET stock = stock - $3
            WHERE product_id = $1 AND variant_id = $2 AND stock >= $3
            RETURNING stock
            """,
            product_id,
            variant_id,
            quantity,
        )
        return row is not None

    async def increment_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE product_variants SET stock = stock + $3
            WHERE product_id = $1 AND variant_id = $2
            RETURNING stock
            """,
            product_id,
            variant_id,
            quantity,
        )
        return row is not None

    async def increment_sales_counter(self, product_id: str, quantity: int) -> None:
        await self.db.execute(
            """
            INSERT INTO product_sales (product_id, sales_count) VALUES ($1, GREATEST($2, 0))
            ON CONFLICT (product_id)
            DO UPDATE SET sales_count = GREATEST(product_sales.sales_count + $2, 0)
            """,
            product_id,
            quantity,
        )


class PostgresAuditLog(IAuditLog):

    def __init__(self, db: Database):
        self.db = db

    async def record(self, actor, action, entity_type, entity_id,
                     before: Optional[Dict[str, Any]] = None,
                     after: Optional[Dict[str, Any]] = None) -> None:
        await self.db.execute(
            """
            INSERT INTO audit_events (id, actor, action, entity_type, entity_id, before, after, timestamp)
            VALUES (gen_random_uuid(), $1, $2, $3, $4, $5, $6, $7)
            """,
            actor.model_dump_json(),
            action,
            entity_type,
            entity_id,
            json.dumps(before, default=str) if before is not None else None,
            json.dumps(after, default=str) if after is not None else None,
            utcnow(),
        )
