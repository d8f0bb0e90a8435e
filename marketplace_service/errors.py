"""
errors.py — Domain Error Kinds for the Marketplace Service

Every failure the service reports to a caller is one of the exceptions below.
Each carries a stable machine-readable `code` that the UI translates, so the
message text is only meant for logs and developers.

Hierarchy:
    MarketplaceError
    ├── ValidationError        malformed input, never retried
    ├── ConflictError          state changed underneath the caller, refresh and retry
    ├── NotEligible            review gate denial
    ├── Forbidden              role/ownership denial
    ├── NotFound               referenced row does not exist
    └── UpstreamUnavailable    data store, storage or payment collaborator failure
"""

from contextlib import contextmanager
from typing import Optional
import logging

import httpx

log = logging.getLogger(__name__)


class MarketplaceError(Exception):
    """Base class for all marketplace errors."""

    code = "marketplace_error"
    retryable = False


# --- Validation ---
class ValidationError(MarketplaceError):
    code = "validation_error"


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"

    def __init__(self, quantity):
        self.quantity = quantity
        super().__init__(f"Quantity must be a positive integer, got {quantity!r}")


class InvalidRating(ValidationError):
    code = "invalid_rating"

    def __init__(self, rating):
        self.rating = rating
        super().__init__(f"Rating must be an integer between 1 and 5, got {rating!r}")


class InvalidPrice(ValidationError):
    code = "invalid_price"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Price must be a non-negative amount, got {value!r}")


class InvalidCommissionRate(ValidationError):
    """Raised for a commission rate outside [0, 100] or one that is not a number."""

    code = "invalid_commission_rate"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Commission rate must be a percentage between 0 and 100, got {value!r}")


class MissingDeliveryAddress(ValidationError):
    code = "missing_delivery_address"

    def __init__(self):
        super().__init__("A delivery address is required for delivery orders")


class EmptyCart(ValidationError):
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cannot create an order from an empty cart")


class MixedProducerCart(ValidationError):
    """Raised when a cart holds products from more than one producer."""

    code = "mixed_producer_cart"

    def __init__(self, producer_ids):
        self.producer_ids = sorted(producer_ids)
        super().__init__(f"Cart contains products from several producers: {', '.join(self.producer_ids)}")


class ImageLimitExceeded(ValidationError):
    code = "image_limit_exceeded"

    def __init__(self, product_id: str, limit: int):
        self.product_id = product_id
        self.limit = limit
        super().__init__(f"Product {product_id} already has the maximum of {limit} images")


# --- Conflicts ---
class ConflictError(MarketplaceError):
    code = "conflict"


class InsufficientStock(ConflictError):
    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Not enough stock for product {product_id} (requested {requested}"
        if available is not None:
            msg += f", available {available}"
        super().__init__(msg + ")")


class ProductUnavailable(ConflictError):
    code = "product_unavailable"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available")


class DuplicateReview(ConflictError):
    code = "duplicate_review"

    def __init__(self, consumer_id: str, order_id: Optional[str], product_id: Optional[str]):
        self.consumer_id = consumer_id
        self.order_id = order_id
        self.product_id = product_id
        super().__init__(
            f"Consumer {consumer_id} already reviewed order={order_id} product={product_id}"
        )


class InvalidStatusTransition(ConflictError):
    code = "invalid_status_transition"

    def __init__(self, order_id: str, current: str, action: str):
        self.order_id = order_id
        self.current = current
        self.action = action
        super().__init__(f"Order {order_id} in status '{current}' does not allow '{action}'")


class CheckoutClosed(ConflictError):
    """Raised when an idempotency key points at an order that can no longer be paid."""

    code = "checkout_closed"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} for this checkout is {status}. Start a new checkout with a new key")


# --- Permission-style denials ---
class NotEligible(MarketplaceError):
    """Raised by the review gate. Reported as a denial, not as a system fault."""

    code = "not_eligible"


class Forbidden(MarketplaceError):
    code = "forbidden"

    def __init__(self, user_id: str, action: str):
        self.user_id = user_id
        self.action = action
        super().__init__(f"User {user_id} may not perform '{action}'")


# --- Missing rows ---
class NotFound(MarketplaceError):
    code = "not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ImageNotFound(NotFound):
    code = "image_not_found"

    def __init__(self, image_id: str):
        self.image_id = image_id
        super().__init__(f"Product image not found: {image_id}")


# --- Collaborators ---
class UpstreamUnavailable(MarketplaceError):
    """A collaborator was unreachable or answered with an error. Transient."""

    code = "upstream_unavailable"
    retryable = True

    def __init__(self, collaborator: str, detail: str = ""):
        self.collaborator = collaborator
        self.detail = detail
        msg = f"{collaborator} unavailable"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


@contextmanager
def upstream_call(collaborator: str, log_prefix: str = ""):
    """
    Translates raw transport errors from a collaborator call into UpstreamUnavailable.

    Domain errors raised inside the block pass through untouched.

    Args:
        collaborator (str): Name used in the error and log line (e.g. "data store").
        log_prefix (str): Entity prefix for the log line, e.g. "[Order: o-1]".
    """
    try:
        yield
    except httpx.TimeoutException as e:
        log.error(f"{log_prefix} Timeout talking to {collaborator}: {e}".strip())
        raise UpstreamUnavailable(collaborator, "timeout") from e
    except httpx.HTTPStatusError as e:
        log.error(f"{log_prefix} {collaborator} answered HTTP {e.response.status_code}".strip())
        raise UpstreamUnavailable(collaborator, f"HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        log.error(f"{log_prefix} {collaborator} unreachable: {e}".strip())
        raise UpstreamUnavailable(collaborator, str(e)) from e
