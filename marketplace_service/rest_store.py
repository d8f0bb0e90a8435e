"""
rest_store.py — MarketplaceStore over the Data Store REST API

Maps each store operation onto table reads/writes through DataStoreClient.
Operations that must be atomic are delegated to the server-side functions
defined in sql/marketplace_functions.sql, or expressed as a conditional PATCH,
never as read-then-write from here.

Raw httpx errors propagate to the caller, which translates them into
UpstreamUnavailable at the domain boundary.
"""

import logging
from typing import Optional

import httpx

from .clients import DataStoreClient, _eq
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
from .store import MarketplaceStore

log = logging.getLogger(__name__)

PRODUCT_COLUMNS = (
    "id,producer_id,name,price,unit,stock_quantity,made_to_order,"
    "execution_time_hours,is_available,category_id"
)


def _in(values) -> str:
    return f"in.({','.join(values)})"


def _first(rows: list) -> Optional[dict]:
    return rows[0] if rows else None


def _product(row: dict) -> Product:
    # made_to_order and is_available are nullable columns
    row = dict(row)
    row["made_to_order"] = bool(row.get("made_to_order"))
    row["is_available"] = row.get("is_available") is not False
    return Product.model_validate(row)


def _summary(subject_id: str, row: Optional[dict]) -> RatingSummary:
    if not row:
        return RatingSummary(subject_id=subject_id)
    return RatingSummary(
        subject_id=subject_id,
        average_rating=row.get("rating") or 0,
        review_count=row.get("review_count") or 0,
    )


class RestMarketplaceStore(MarketplaceStore):
    """Data store access over REST. Table names follow the hosted schema."""

    def __init__(self, client: DataStoreClient):
        self.client = client

    # --- Products ---
    def get_product(self, product_id):
        row = _first(self.client.select("products", {"id": _eq(product_id)}, columns=PRODUCT_COLUMNS))
        return _product(row) if row else None

    def get_products(self, product_ids):
        ids = list(product_ids)
        if not ids:
            return []
        rows = self.client.select("products", {"id": _in(ids)}, columns=PRODUCT_COLUMNS)
        return [_product(row) for row in rows]

    def decrement_stock(self, product_id, quantity):
        return bool(self.client.rpc("decrement_product_stock", {"p_product_id": product_id, "p_quantity": quantity}))

    def restore_stock(self, product_id, quantity):
        self.client.rpc("restore_product_stock", {"p_product_id": product_id, "p_quantity": quantity})

    # --- Product images ---
    def list_product_images(self, product_id):
        rows = self.client.select("product_images", {"product_id": _eq(product_id)}, order="sort_order.asc")
        return [ProductImage.model_validate(row) for row in rows]

    def insert_product_image(self, image):
        rows = self.client.insert("product_images", image.model_dump(mode="json"))
        return ProductImage.model_validate(rows[0])

    def update_product_image(self, image):
        values = {"is_primary": image.is_primary, "sort_order": image.sort_order, "alt_text": image.alt_text}
        rows = self.client.update("product_images", values, {"id": _eq(image.id)})
        return ProductImage.model_validate(rows[0])

    def delete_product_image(self, image_id):
        self.client.delete("product_images", {"id": _eq(image_id)})

    # --- Orders ---
    def find_order_by_idempotency_key(self, consumer_id, key):
        row = _first(self.client.select(
            "orders", {"consumer_id": _eq(consumer_id), "idempotency_key": _eq(key)}, limit=1
        ))
        return Order.model_validate(row) if row else None

    def insert_order(self, order):
        rows = self.client.insert("orders", order.model_dump(mode="json"))
        return Order.model_validate(rows[0])

    def insert_order_line(self, line):
        rows = self.client.insert("order_items", line.model_dump(mode="json"))
        return OrderLine.model_validate(rows[0])

    def delete_order_lines(self, order_id):
        self.client.delete("order_items", {"order_id": _eq(order_id)})

    def delete_order(self, order_id):
        self.client.delete("orders", {"id": _eq(order_id)})

    def get_order(self, order_id):
        row = _first(self.client.select("orders", {"id": _eq(order_id)}))
        return Order.model_validate(row) if row else None

    def get_order_lines(self, order_id):
        rows = self.client.select("order_items", {"order_id": _eq(order_id)})
        return [OrderLine.model_validate(row) for row in rows]

    def update_order_status(self, order_id, expected, new):
        rows = self.client.update(
            "orders",
            {"status": new.value, "updated_at": utc_now().isoformat()},
            {"id": _eq(order_id), "status": _eq(expected.value)},
        )
        row = _first(rows)
        return Order.model_validate(row) if row else None

    def update_order_payment(self, order_id, payment_reference, payment_status):
        rows = self.client.update(
            "orders",
            {
                "payment_intent_id": payment_reference,
                "payment_status": payment_status.value,
                "updated_at": utc_now().isoformat(),
            },
            {"id": _eq(order_id)},
        )
        return Order.model_validate(rows[0])

    def find_completed_order(self, consumer_id, producer_id):
        row = _first(self.client.select(
            "orders",
            {
                "consumer_id": _eq(consumer_id),
                "producer_id": _eq(producer_id),
                "status": _eq(OrderStatus.COMPLETED.value),
            },
            limit=1,
        ))
        return Order.model_validate(row) if row else None

    # --- Reviews and ratings ---
    def find_review(self, consumer_id, producer_id, order_id, product_id):
        row = _first(self.client.select(
            "reviews",
            {
                "consumer_id": _eq(consumer_id),
                "producer_id": _eq(producer_id),
                "order_id": _eq(order_id),
                "product_id": _eq(product_id),
            },
            limit=1,
        ))
        return Review.model_validate(row) if row else None

    def insert_review(self, review):
        try:
            rows = self.client.insert("reviews", review.model_dump(mode="json"))
        except httpx.HTTPStatusError as e:
            # 409 comes from the unique review index
            if e.response.status_code == 409:
                raise DuplicateReview(review.consumer_id, review.order_id, review.product_id) from e
            raise
        return Review.model_validate(rows[0])

    def recompute_producer_rating(self, producer_id):
        row = self.client.rpc("recompute_producer_rating", {"p_producer_id": producer_id})
        return _summary(producer_id, _first(row) if isinstance(row, list) else row)

    def recompute_product_rating(self, product_id):
        row = self.client.rpc("recompute_product_rating", {"p_product_id": product_id})
        return _summary(product_id, _first(row) if isinstance(row, list) else row)

    def get_producer_rating(self, producer_id):
        row = _first(self.client.select(
            "producer_profiles", {"id": _eq(producer_id)}, columns="rating,review_count"
        ))
        return _summary(producer_id, row)

    # --- Settings ---
    def get_setting(self, key):
        row = _first(self.client.select("admin_settings", {"key": _eq(key)}, columns="value"))
        return row["value"] if row else None

    def set_setting(self, key, value, updated_by):
        self.client.upsert(
            "admin_settings",
            {"key": key, "value": value, "updated_by": updated_by, "updated_at": utc_now().isoformat()},
            on_conflict="key",
        )
