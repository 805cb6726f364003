# storage/__init__.py
# ============================================================================
# ORDER ENGINE — STORAGE MODULE
# ============================================================================
# Repository contracts with in-memory implementations. The asyncpg-backed
# versions live in storage.postgres and are imported explicitly.
# ============================================================================

from storage.repositories import (
    IOrderRepository,
    IPaymentAttemptLedger,
    IReservationJournal,
    InMemoryOrderRepository,
    InMemoryPaymentAttemptLedger,
    InMemoryReservationJournal,
)

__all__ = [
    "IOrderRepository",
    "IPaymentAttemptLedger",
    "IReservationJournal",
    "InMemoryOrderRepository",
    "InMemoryPaymentAttemptLedger",
    "InMemoryReservationJournal",
]
