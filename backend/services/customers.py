"""
Cart and Address Contracts
==========================
Carts and saved addresses belong to the user-profile subsystem. Checkout only
reads a user's cart lines and one address snapshot, and clears the cart once
the order is persisted.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import List, Optional

from schemas.orders import AddressSnapshot, CartItem


class ICartStore(ABC):

    @abstractmethod
    async def get_items(self, user_id: str) -> List[CartItem]:
        pass

    @abstractmethod
    async def clear(self, user_id: str) -> None:
        pass


class IAddressBook(ABC):

    @abstractmethod
    async def get_address(self, user_id: str, address_id: str) -> Optional[AddressSnapshot]:
        pass


class InMemoryCartStore(ICartStore):

    def __init__(self):
        self._carts: dict[str, List[CartItem]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def add(self, user_id: str, item: CartItem) -> None:
        self._carts[user_id].append(item)

    async def get_items(self, user_id: str) -> List[CartItem]:
        async with self._lock:
            return list(self._carts.get(user_id, []))

    async def clear(self, user_id: str) -> None:
        async with self._lock:
            self._carts.pop(user_id, None)


class InMemoryAddressBook(IAddressBook):

    def __init__(self):
        self._addresses: dict[tuple[str, str], AddressSnapshot] = {}

    def add(self, user_id: str, address: AddressSnapshot) -> None:
        self._addresses[(user_id, address.address_id)] = address

    async def get_address(self, user_id: str, address_id: str) -> Optional[AddressSnapshot]:
        return self._addresses.get((user_id, address_id))
