from __future__ import annotations

import asyncio

from tracker.src.contracts.models import TrackedProduct


class ProductRegistry:
    """Central map of tracked products with one lock per product id.

    The lock serialises poll cycles and state changes of a single product;
    unrelated products never contend.
    """

    def __init__(self) -> None:
        self._products: dict[str, TrackedProduct] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def add(self, product: TrackedProduct) -> TrackedProduct:
        self._products[product.id] = product
        self._locks.setdefault(product.id, asyncio.Lock())
        return product

    def remove(self, product_id: str) -> TrackedProduct | None:
        product = self._products.pop(product_id, None)
        if product is not None:
            product.is_tracked = False
        return product

    def get(self, product_id: str) -> TrackedProduct | None:
        return self._products.get(product_id)

    def is_tracked(self, product_id: str) -> bool:
        product = self._products.get(product_id)
        return product is not None and product.is_tracked

    def all(self) -> list[TrackedProduct]:
        return list(self._products.values())

    def lock(self, product_id: str) -> asyncio.Lock:
        return self._locks.setdefault(product_id, asyncio.Lock())

    def discard_lock(self, product_id: str) -> bool:
        """Drop the lock of an untracked product unless someone holds it."""
        lock = self._locks.get(product_id)
        if lock is None or product_id in self._products or lock.locked():
            return False
        del self._locks[product_id]
        return True

    def find_by_source(self, source: str, source_id: str) -> TrackedProduct | None:
        for product in self._products.values():
            if product.source == source and product.source_id == source_id:
                return product
        return None

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products
