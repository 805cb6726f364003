# services/__init__.py
# ============================================================================
# ORDER ENGINE — COLLABORATOR SERVICES
# ============================================================================
# Contracts for everything the engine consumes but does not own: catalog,
# carts and addresses, delivery rules, notifications, audit and cache.
# ============================================================================

from services.audit import AuditAction, IAuditLog, InMemoryAuditLog, record_safely
from services.cache import ICache, InMemoryCache, RedisCache
from services.catalog import ICatalog, InMemoryCatalog
from services.customers import (
    IAddressBook,
    ICartStore,
    InMemoryAddressBook,
    InMemoryCartStore,
)
from services.delivery import DeliveryPolicy, haversine_km
from services.notifications import (
    INotifier,
    LoggingNotifier,
    NotificationType,
    notify_safely,
)

__all__ = [
    # Audit
    "AuditAction",
    "IAuditLog",
    "InMemoryAuditLog",
    "record_safely",
    # Cache
    "ICache",
    "InMemoryCache",
    "RedisCache",
    # Catalog
    "ICatalog",
    "InMemoryCatalog",
    # Customers
    "IAddressBook",
    "ICartStore",
    "InMemoryAddressBook",
    "InMemoryCartStore",
    # Delivery
    "DeliveryPolicy",
    "haversine_km",
    # Notifications
    "INotifier",
    "LoggingNotifier",
    "NotificationType",
    "notify_safely",
]
