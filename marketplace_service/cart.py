"""
cart.py — Per-Consumer Shopping Cart

This module keeps the cart of one consumer as an ordered list of CartLine
records and enforces the stock and availability rules at the moment a line is
added or changed.

Responsibilities:
    • CartAggregator: add / set quantity / remove / clear, subtotal and total
    • CartStorage: persistence hook, called after every mutation
    • CartRegistry: one aggregator per consumer, opened on login, closed on logout

The cart never talks to the data store. Callers pass the Product they already
loaded, and any storage error from the hook propagates unchanged.
"""

from decimal import Decimal
import logging
import threading
from typing import Dict, List, Optional

from .errors import InsufficientStock, InvalidQuantity, ProductUnavailable
from .models import CartLine, Product
from .pricing import quantize, sum_amounts, to_decimal

log = logging.getLogger(__name__)


def cart_key(consumer_id: str) -> str:
    return f"cart_{consumer_id}"


class CartStorage:
    """Persistence hook for carts. Subclasses decide where the lines live."""

    def load(self, consumer_id: str) -> List[CartLine]:
        raise NotImplementedError

    def save(self, consumer_id: str, lines: List[CartLine]) -> None:
        raise NotImplementedError

    def delete(self, consumer_id: str) -> None:
        raise NotImplementedError


class InMemoryCartStorage(CartStorage):
    """Keeps serialized carts in a dict keyed by `cart_<consumer_id>`."""

    def __init__(self):
        self._data: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def load(self, consumer_id: str) -> List[CartLine]:
        with self._lock:
            raw = self._data.get(cart_key(consumer_id), [])
        return [CartLine.model_validate(item) for item in raw]

    def save(self, consumer_id: str, lines: List[CartLine]) -> None:
        with self._lock:
            self._data[cart_key(consumer_id)] = [line.model_dump(mode="json") for line in lines]

    def delete(self, consumer_id: str) -> None:
        with self._lock:
            self._data.pop(cart_key(consumer_id), None)


class CartAggregator:
    """
    The cart of a single consumer.

    Lines keep their insertion order. A product appears in at most one line.
    """

    def __init__(self, consumer_id: str, storage: Optional[CartStorage] = None):
        self.consumer_id = consumer_id
        self.storage = storage
        self._lines: List[CartLine] = storage.load(consumer_id) if storage else []
        self._log_prefix = f"[Cart: {consumer_id}]"

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    def is_empty(self) -> bool:
        return not self._lines

    def producer_ids(self) -> set:
        return {line.producer_id for line in self._lines}

    def _find(self, product_id: str) -> Optional[CartLine]:
        for line in self._lines:
            if line.product_id == product_id:
                return line
        return None

    def _persist(self):
        if self.storage:
            self.storage.save(self.consumer_id, self._lines)

    def add(self, product: Product, quantity: int = 1) -> CartLine:
        """
        Adds units of a product, merging with an existing line for the same product.

        Args:
            product (Product): The product as currently listed.
            quantity (int): Units to add, must be positive.
        Returns:
            CartLine: The new or updated line.
        Raises:
            InvalidQuantity: If quantity is not positive.
            ProductUnavailable: If the product is not listed for sale.
            InsufficientStock: If a stock-tracked product would exceed its stock.
        """
        if not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(quantity)
        if not product.is_available:
            raise ProductUnavailable(product.id)

        existing = self._find(product.id)
        wanted = quantity + (existing.quantity if existing else 0)
        if product.tracks_stock and wanted > product.stock_quantity:
            log.info(f"{self._log_prefix} Rejected {wanted} x {product.id}, stock {product.stock_quantity}.")
            raise InsufficientStock(product.id, wanted, product.stock_quantity)

        if existing:
            existing.quantity = wanted
            line = existing
        else:
            line = CartLine(
                product_id=product.id,
                producer_id=product.producer_id,
                quantity=quantity,
                price_per_unit=quantize(product.price),
            )
            self._lines.append(line)
        self._persist()
        log.info(f"{self._log_prefix} {product.id} now x{line.quantity}.")
        return line

    def set_quantity(self, product: Product, quantity: int) -> Optional[CartLine]:
        """
        Sets the quantity of a product's line.

        A quantity of zero or less removes the line. For stock-tracked products
        the quantity is clamped to the current stock.

        Returns:
            Optional[CartLine]: The updated line, or None if it was removed.
        Raises:
            ProductUnavailable: If the product was delisted, whether or not it is already in the cart.
        """
        if quantity <= 0:
            self.remove(product.id)
            return None
        if not product.is_available:
            raise ProductUnavailable(product.id)
        if product.tracks_stock:
            quantity = min(quantity, product.stock_quantity)
            if quantity <= 0:
                self.remove(product.id)
                return None

        line = self._find(product.id)
        if line is None:
            return self.add(product, quantity)
        line.quantity = quantity
        self._persist()
        return line

    def remove(self, product_id: str) -> None:
        before = len(self._lines)
        self._lines = [line for line in self._lines if line.product_id != product_id]
        if len(self._lines) != before:
            self._persist()

    def clear(self) -> None:
        self._lines = []
        if self.storage:
            self.storage.delete(self.consumer_id)
        log.info(f"{self._log_prefix} Cart cleared.")

    def subtotal(self) -> Decimal:
        return sum_amounts(line.line_total for line in self._lines)

    def total(self, delivery_fee=Decimal("0")) -> Decimal:
        return quantize(self.subtotal() + to_decimal(delivery_fee))


class CartRegistry:
    """
    Hands out one CartAggregator per consumer.

    `open` creates the aggregator on first access (login) and returns the same
    instance afterwards. `close` tears it down (logout) without touching storage.
    """

    def __init__(self, storage: Optional[CartStorage] = None):
        self.storage = storage or InMemoryCartStorage()
        self._carts: Dict[str, CartAggregator] = {}
        self._lock = threading.Lock()

    def open(self, consumer_id: str) -> CartAggregator:
        with self._lock:
            cart = self._carts.get(consumer_id)
            if cart is None:
                cart = CartAggregator(consumer_id, self.storage)
                self._carts[consumer_id] = cart
            return cart

    def close(self, consumer_id: str) -> None:
        with self._lock:
            self._carts.pop(consumer_id, None)

    def clear(self, consumer_id: str) -> None:
        self.open(consumer_id).clear()
