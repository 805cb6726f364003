"""
Catalog Contract
================
The order engine does not own products. It reads authoritative prices and
stock through ``ICatalog`` and mutates stock only through its conditional
decrement / increment calls, which never let stock go negative.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional

import structlog

from schemas.orders import VariantSnapshot

logger = structlog.get_logger().bind(component="catalog")


class ICatalog(ABC):
    """Catalog collaborator interface"""

    @abstractmethod
    async def get_variant(self, product_id: str, variant_id: str) -> Optional[VariantSnapshot]:
        pass

    @abstractmethod
    async def decrement_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        """Decrement only if current stock >= quantity. False means insufficient or missing."""
        pass

    @abstractmethod
    async def increment_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        """Credit stock back. False when the variant no longer exists."""
        pass

    @abstractmethod
    async def increment_sales_counter(self, product_id: str, quantity: int) -> None:
        """Adjust the product's sales counter; negative quantities revert sales."""
        pass


class InMemoryCatalog(ICatalog):
    """In-memory catalog with atomic conditional updates"""

    def __init__(self):
        self._variants: dict[tuple[str, str], VariantSnapshot] = {}
        self._sales: dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    def add_variant(self, variant: VariantSnapshot) -> None:
        self._variants[(variant.product_id, variant.variant_id)] = variant

    def remove_variant(self, product_id: str, variant_id: str) -> None:
        self._variants.pop((product_id, variant_id), None)

    def stock_of(self, product_id: str, variant_id: str) -> Optional[int]:
        variant = self._variants.get((product_id, variant_id))
        return variant.stock if variant else None

    def sales_of(self, product_id: str) -> int:
        return self._sales[product_id]

    async def get_variant(self, product_id: str, variant_id: str) -> Optional[VariantSnapshot]:
        async with self._lock:
            variant = self._variants.get((product_id, variant_id))
            return variant.model_copy() if variant else None

    async def decrement_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        async with self._lock:
            variant = self._variants.get((product_id, variant_id))
            if variant is None or variant.stock < quantity:
                return False
            self._variants[(product_id, variant_id)] = variant.model_copy(
                update={"stock": variant.stock - quantity}
            )
            return True

    async def increment_stock(self, product_id: str, variant_id: str, quantity: int) -> bool:
        async with self._lock:
            variant = self._variants.get((product_id, variant_id))
            if variant is None:
                return False
            self._variants[(product_id, variant_id)] = variant.model_copy(
                update={"stock": variant.stock + quantity}
            )
            return True

    async def increment_sales_counter(self, product_id: str, quantity: int) -> None:
        async with self._lock:
            self._sales[product_id] = max(0, self._sales[product_id] + quantity)
