"""
Order Number Generator
======================
Human-readable order numbers: ``<prefix><YYYYMMDD><sequence>``, e.g.
``SH202610170042``. The sequence is zero-padded to four digits and keeps
growing past 9999.

The per-day counter lives in the cache with a ~24h TTL. On a miss it is
rebuilt from the highest sequence already persisted for that day, so numbers
stay monotonic across restarts and evictions (gaps are tolerated).
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

import structlog

from schemas.orders import utcnow
from services.cache import ICache
from settings import Settings, settings as default_settings
from storage.repositories import IOrderRepository

logger = structlog.get_logger().bind(component="order_numbers")


class OrderNumberGenerator:

    def __init__(
        self,
        cache: ICache,
        orders: IOrderRepository,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.orders = orders
        self.config = config
        self._clock = clock
        self._lock = asyncio.Lock()

    def day_prefix(self, when: datetime) -> str:
        return f"{self.config.ORDER_NUMBER_PREFIX}{when:%Y%m%d}"

    @staticmethod
    def _counter_key(day_prefix: str) -> str:
        return f"order_counter:{day_prefix}"

    async def next_number(self) -> str:
        day_prefix = self.day_prefix(self._clock())
        key = self._counter_key(day_prefix)

        async with self._lock:
            current = await self.cache.get(key)
            if current is None:
                current = await self.orders.highest_sequence_for_day(day_prefix)
                logger.info("order_counter_rebuilt", day=day_prefix, sequence=current)
            sequence = int(current) + 1
            await self.cache.set(key, sequence, self.config.ORDER_COUNTER_TTL_SECONDS)

        return f"{day_prefix}{sequence:04d}"

    async def invalidate(self, when: Optional[datetime] = None) -> None:
        """Drop the cached counter so the next call rebuilds it from storage."""
        day_prefix = self.day_prefix(when or self._clock())
        await self.cache.invalidate(self._counter_key(day_prefix))
