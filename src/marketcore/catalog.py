"""Product catalog access and the stock ledger."""

import threading
import time
from typing import Callable

import structlog

from .document_store import DocumentStore
from .errors import InsufficientStockError, NotFoundError, ValidationError
from .models import Product
from .notifications import (
    LOW_INVENTORY,
    OUT_OF_STOCK,
    NotificationDispatcher,
    notify_after_commit,
)

logger = structlog.get_logger(__name__)


class ProductCache:
    """Short-lived in-process cache of product documents."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Product, float]] = {}
        self._lock = threading.Lock()

    def get(self, product_id: str) -> Product | None:
        with self._lock:
            entry = self._entries.get(product_id)
            if entry is None:
                return None
            product, cached_at = entry
            if self._clock() - cached_at >= self.ttl_seconds:
                del self._entries[product_id]
                return None
            return product

    def put(self, product: Product) -> None:
        with self._lock:
            self._entries[product.id] = (product, self._clock())

    def invalidate(self, product_id: str) -> None:
        with self._lock:
            self._entries.pop(product_id, None)


class Catalog:
    """Read access to products; writes go through StockLedger."""

    def __init__(self, store: DocumentStore, cache: ProductCache | None = None):
        self._products = store.collection("products")
        self.cache = cache or ProductCache()

    def find_product(self, product_id: str) -> Product | None:
        product = self.cache.get(product_id)
        if product is not None:
            return product
        doc = self._products.find_one({"_id": product_id})
        if doc is None:
            return None
        product = Product.from_dict(doc)
        self.cache.put(product)
        return product

    def get_product(self, product_id: str) -> Product:
        """
        Get a product by ID.

        Raises:
            NotFoundError: If the product doesn't exist.
        """
        product = self.find_product(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def add_product(self, product: Product) -> Product:
        if product.quantity_available < 0:
            raise ValidationError("quantity_available must not be negative")
        self._products.insert_one(product.to_dict())
        return product


class StockLedger:
    """
    Atomic stock movements.

    Both operations are single conditional updates on the product document,
    so concurrent checkouts for the same product can never drive
    ``quantity_available`` below zero.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: ProductCache,
        notifier: NotificationDispatcher,
        low_stock_threshold: int = 50,
    ):
        self._products = store.collection("products")
        self._cache = cache
        self._notifier = notifier
        self.low_stock_threshold = low_stock_threshold

    def reserve_stock(self, product_id: str, qty: int) -> int:
        """
        Decrement stock by qty if at least qty units are available.

        Returns:
            The remaining quantity.

        Raises:
            ValidationError: If qty is not positive.
            InsufficientStockError: If the product is missing, inactive or short.
        """
        if qty <= 0:
            raise ValidationError(f"Quantity must be greater than 0 (got {qty})")

        doc = self._products.find_one_and_update(
            {"_id": product_id, "is_active": True, "quantity_available": {"$gte": qty}},
            {"$inc": {"quantity_available": -qty}},
        )
        self._cache.invalidate(product_id)

        if doc is None:
            current = self._products.find_one({"_id": product_id})
            available = current.get("quantity_available") if current else None
            logger.info(
                "stock_reservation_rejected",
                product_id=product_id,
                requested=qty,
                available=available,
            )
            raise InsufficientStockError(product_id, qty, available)

        product = Product.from_dict(doc)
        logger.info(
            "stock_reserved",
            product_id=product_id,
            quantity=qty,
            remaining=product.quantity_available,
        )
        self._check_stock_level(product)
        return product.quantity_available

    def restore_stock(self, product_id: str, qty: int) -> int:
        """
        Increment stock by qty.

        Callers guarantee this runs at most once per reserved line.

        Raises:
            NotFoundError: If the product no longer exists.
        """
        if qty <= 0:
            raise ValidationError(f"Quantity must be greater than 0 (got {qty})")

        doc = self._products.find_one_and_update(
            {"_id": product_id}, {"$inc": {"quantity_available": qty}}
        )
        self._cache.invalidate(product_id)
        if doc is None:
            raise NotFoundError("Product", product_id)

        logger.info(
            "stock_restored",
            product_id=product_id,
            quantity=qty,
            remaining=doc["quantity_available"],
        )
        return doc["quantity_available"]

    def _check_stock_level(self, product: Product) -> None:
        remaining = product.quantity_available
        if remaining == 0:
            notify_after_commit(
                self._notifier,
                product.seller_id,
                OUT_OF_STOCK,
                f"{product.title} is now out of stock!",
                {"productId": product.id},
            )
        elif remaining <= self.low_stock_threshold:
            notify_after_commit(
                self._notifier,
                product.seller_id,
                LOW_INVENTORY,
                f"Low inventory alert! Only {remaining} items remaining for {product.title}.",
                {"productId": product.id, "inventoryCount": remaining},
            )
