"""
store.py — Persistence Collaborator Interface and In-Process Store

`MarketplaceStore` lists every read and write the domain needs from the data
store. Operations that must be atomic on the server side (stock decrement,
order status change, rating recomputation, unique review insert) are single
methods here, so an implementation can map each of them to one authoritative
statement.

`InMemoryMarketplaceStore` implements the interface with plain dicts behind a
lock. It backs local development (no DATA_STORE_URL) and the test suite.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
import threading
from typing import Dict, Iterable, List, Optional

from .errors import DuplicateReview
from .models import (
    Order,
    OrderLine,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductImage,
    RatingSummary,
    Review,
    utc_now,
)
from .pricing import quantize


class MarketplaceStore(ABC):
    """Table-like access to products, orders, reviews, ratings and settings."""

    # --- Products ---
    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def get_products(self, product_ids: Iterable[str]) -> List[Product]: ...

    @abstractmethod
    def decrement_stock(self, product_id: str, quantity: int) -> bool:
        """Decrements stock only if at least `quantity` units remain. Returns False otherwise."""

    @abstractmethod
    def restore_stock(self, product_id: str, quantity: int) -> None: ...

    # --- Product images ---
    @abstractmethod
    def list_product_images(self, product_id: str) -> List[ProductImage]: ...

    @abstractmethod
    def insert_product_image(self, image: ProductImage) -> ProductImage: ...

    @abstractmethod
    def update_product_image(self, image: ProductImage) -> ProductImage: ...

    @abstractmethod
    def delete_product_image(self, image_id: str) -> None: ...

    # --- Orders ---
    @abstractmethod
    def find_order_by_idempotency_key(self, consumer_id: str, key: str) -> Optional[Order]: ...

    @abstractmethod
    def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    def insert_order_line(self, line: OrderLine) -> OrderLine: ...

    @abstractmethod
    def delete_order_lines(self, order_id: str) -> None: ...

    @abstractmethod
    def delete_order(self, order_id: str) -> None: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def get_order_lines(self, order_id: str) -> List[OrderLine]: ...

    @abstractmethod
    def update_order_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> Optional[Order]:
        """Compare-and-set: changes status only if it is still `expected`. Returns None otherwise."""

    @abstractmethod
    def update_order_payment(self, order_id: str, payment_reference: str, payment_status: PaymentStatus) -> Order: ...

    @abstractmethod
    def find_completed_order(self, consumer_id: str, producer_id: str) -> Optional[Order]: ...

    # --- Reviews and ratings ---
    @abstractmethod
    def find_review(self, consumer_id: str, producer_id: str, order_id: Optional[str],
                    product_id: Optional[str]) -> Optional[Review]: ...

    @abstractmethod
    def insert_review(self, review: Review) -> Review:
        """Inserts a review. Raises DuplicateReview if the review key already exists."""

    @abstractmethod
    def recompute_producer_rating(self, producer_id: str) -> RatingSummary:
        """Recomputes and stores the producer's average rating and count from all its reviews."""

    @abstractmethod
    def recompute_product_rating(self, product_id: str) -> RatingSummary: ...

    @abstractmethod
    def get_producer_rating(self, producer_id: str) -> RatingSummary: ...

    # --- Settings ---
    @abstractmethod
    def get_setting(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set_setting(self, key: str, value: str, updated_by: str) -> None: ...


def review_key(consumer_id, producer_id, order_id, product_id) -> tuple:
    return (consumer_id, producer_id, order_id, product_id)


def summarize(subject_id: str, ratings: List[int]) -> RatingSummary:
    if not ratings:
        return RatingSummary(subject_id=subject_id)
    average = quantize(Decimal(sum(ratings)) / Decimal(len(ratings)))
    return RatingSummary(subject_id=subject_id, average_rating=average, review_count=len(ratings))


class InMemoryMarketplaceStore(MarketplaceStore):
    """Dict-backed store. Every method runs under one re-entrant lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self.products: Dict[str, Product] = {}
        self.images: Dict[str, ProductImage] = {}
        self.orders: Dict[str, Order] = {}
        self.order_lines: Dict[str, OrderLine] = {}
        self.reviews: Dict[str, Review] = {}
        self.producer_ratings: Dict[str, RatingSummary] = {}
        self.product_ratings: Dict[str, RatingSummary] = {}
        self.settings: Dict[str, str] = {}

    def add_product(self, product: Product) -> Product:
        with self._lock:
            self.products[product.id] = product.model_copy()
        return product

    def get_product(self, product_id):
        with self._lock:
            product = self.products.get(product_id)
            return product.model_copy() if product else None

    def get_products(self, product_ids):
        wanted = set(product_ids)
        with self._lock:
            return [p.model_copy() for pid, p in self.products.items() if pid in wanted]

    def decrement_stock(self, product_id, quantity):
        with self._lock:
            product = self.products.get(product_id)
            if product is None or product.stock_quantity < quantity:
                return False
            product.stock_quantity -= quantity
            return True

    def restore_stock(self, product_id, quantity):
        with self._lock:
            product = self.products.get(product_id)
            if product is not None:
                product.stock_quantity += quantity

    def list_product_images(self, product_id):
        with self._lock:
            images = [i.model_copy() for i in self.images.values() if i.product_id == product_id]
        return sorted(images, key=lambda i: i.sort_order)

    def insert_product_image(self, image):
        with self._lock:
            self.images[image.id] = image.model_copy()
        return image

    def update_product_image(self, image):
        with self._lock:
            self.images[image.id] = image.model_copy()
        return image

    def delete_product_image(self, image_id):
        with self._lock:
            self.images.pop(image_id, None)

    def find_order_by_idempotency_key(self, consumer_id, key):
        with self._lock:
            for order in self.orders.values():
                if order.consumer_id == consumer_id and order.idempotency_key == key:
                    return order.model_copy()
        return None

    def insert_order(self, order):
        with self._lock:
            self.orders[order.id] = order.model_copy()
        return order

    def insert_order_line(self, line):
        with self._lock:
            self.order_lines[line.id] = line.model_copy()
        return line

    def delete_order_lines(self, order_id):
        with self._lock:
            for line_id in [lid for lid, line in self.order_lines.items() if line.order_id == order_id]:
                del self.order_lines[line_id]

    def delete_order(self, order_id):
        with self._lock:
            self.orders.pop(order_id, None)

    def get_order(self, order_id):
        with self._lock:
            order = self.orders.get(order_id)
            return order.model_copy() if order else None

    def get_order_lines(self, order_id):
        with self._lock:
            return [line.model_copy() for line in self.order_lines.values() if line.order_id == order_id]

    def update_order_status(self, order_id, expected, new):
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status != expected:
                return None
            order.status = new
            order.updated_at = utc_now()
            return order.model_copy()

    def update_order_payment(self, order_id, payment_reference, payment_status):
        with self._lock:
            order = self.orders[order_id]
            order.payment_intent_id = payment_reference
            order.payment_status = payment_status
            order.updated_at = utc_now()
            return order.model_copy()

    def find_completed_order(self, consumer_id, producer_id):
        with self._lock:
            for order in self.orders.values():
                if (order.consumer_id == consumer_id and order.producer_id == producer_id
                        and order.status == OrderStatus.COMPLETED):
                    return order.model_copy()
        return None

    def find_review(self, consumer_id, producer_id, order_id, product_id):
        key = review_key(consumer_id, producer_id, order_id, product_id)
        with self._lock:
            for review in self.reviews.values():
                if review_key(review.consumer_id, review.producer_id, review.order_id, review.product_id) == key:
                    return review.model_copy()
        return None

    def insert_review(self, review):
        with self._lock:
            if self.find_review(review.consumer_id, review.producer_id, review.order_id, review.product_id):
                raise DuplicateReview(review.consumer_id, review.order_id, review.product_id)
            self.reviews[review.id] = review.model_copy()
        return review

    def recompute_producer_rating(self, producer_id):
        with self._lock:
            ratings = [r.rating for r in self.reviews.values() if r.producer_id == producer_id]
            summary = summarize(producer_id, ratings)
            self.producer_ratings[producer_id] = summary
            return summary.model_copy()

    def recompute_product_rating(self, product_id):
        with self._lock:
            ratings = [r.rating for r in self.reviews.values() if r.product_id == product_id]
            summary = summarize(product_id, ratings)
            self.product_ratings[product_id] = summary
            return summary.model_copy()

    def get_producer_rating(self, producer_id):
        with self._lock:
            summary = self.producer_ratings.get(producer_id)
            return summary.model_copy() if summary else RatingSummary(subject_id=producer_id)

    def get_setting(self, key):
        with self._lock:
            return self.settings.get(key)

    def set_setting(self, key, value, updated_by):
        with self._lock:
            self.settings[key] = value
