"""
models.py — Data Models for the Marketplace Domain

This module defines the records the service reads from and writes to the data
store, plus the request payloads accepted by the HTTP API. All of them are
Pydantic models so that incoming data is validated before it reaches the
domain logic.

Currency amounts are always `Decimal`. Binary floats never touch money.

Models:
    - Product, ProductImage: catalog entries owned by a producer.
    - CartLine: one product in a consumer's cart, price snapshotted at add time.
    - Order, OrderLine: persisted purchase records.
    - Review: a product review or a producer-only review.
    - RatingSummary: derived average rating and review count.
    - CurrentUser: identity context supplied by the gateway.
    - *Request / PaymentEvent: HTTP payloads.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import uuid

from pydantic import BaseModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CONSUMER = "consumer"
    PRODUCER = "producer"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryMethod(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


class CurrentUser(BaseModel):
    """
    The authenticated caller, as supplied by the identity collaborator.

    Attributes:
        id (str): User identifier.
        role (Role): consumer, producer or admin.
    """
    id: str
    role: Role


class ProductImage(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    image_url: str
    is_primary: bool = False
    sort_order: int = 0
    alt_text: Optional[str] = None


class Product(BaseModel):
    """
    A catalog entry.

    A product is either stock-tracked or made-to-order. For made-to-order
    products `stock_quantity` is not authoritative and is never checked.

    Attributes:
        id (str): Product identifier.
        producer_id (str): Owning producer.
        name (str): Display name.
        price (Decimal): Customer-facing unit price.
        unit (str): Unit label, e.g. "each" or "kg".
        stock_quantity (int): Units on hand, only meaningful when not made-to-order.
        made_to_order (bool): Fulfilled on demand instead of from stock.
        execution_time_hours (Optional[int]): Lead time for made-to-order products.
        is_available (bool): Listed for sale.
        category_id (Optional[str]): Category reference.
    """
    id: str = Field(default_factory=new_id)
    producer_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    unit: str = "each"
    stock_quantity: int = Field(0, ge=0)
    made_to_order: bool = False
    execution_time_hours: Optional[int] = None
    is_available: bool = True
    category_id: Optional[str] = None

    @property
    def tracks_stock(self) -> bool:
        return not self.made_to_order


class CartLine(BaseModel):
    """
    One product in a consumer's cart.

    Attributes:
        product_id (str): Referenced product.
        producer_id (str): Owner of the product, kept to detect mixed-producer carts.
        quantity (int): Units, always greater than zero.
        price_per_unit (Decimal): Price captured when the line was first added.
    """
    product_id: str
    producer_id: str
    quantity: int = Field(..., gt=0)
    price_per_unit: Decimal = Field(..., ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.price_per_unit * self.quantity


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    consumer_id: str
    producer_id: str
    total_amount: Decimal
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    delivery_address: Optional[str] = None
    delivery_fee: Decimal = Decimal("0.00")
    status: OrderStatus = OrderStatus.PENDING
    payment_intent_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def subtotal(self) -> Decimal:
        return self.total_amount - self.delivery_fee


class OrderLine(BaseModel):
    """An order line. Its price is the snapshot taken at order time and never changes."""
    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    price_per_unit: Decimal = Field(..., ge=0)
    total_price: Decimal


class Review(BaseModel):
    """
    A consumer's review.

    `product_id` is None for a producer-only review, `order_id` is None for a
    review not tied to a specific order. No placeholder rows are ever used.
    """
    id: str = Field(default_factory=new_id)
    consumer_id: str
    producer_id: str
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class RatingSummary(BaseModel):
    """Average rating and review count for a producer or a product."""
    subject_id: str
    average_rating: Decimal = Decimal("0.00")
    review_count: int = 0


class CheckoutSession(BaseModel):
    order: Order
    lines: List[OrderLine]
    redirect_url: str


# --- HTTP request payloads ---
class AddToCartRequest(BaseModel):
    productId: str
    quantity: int = 1


class SetQuantityRequest(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    """
    Attributes:
        deliveryMethod (DeliveryMethod): pickup or delivery.
        deliveryAddress (Optional[str]): Required for delivery.
        successUrl (str): Where the payment page returns on success.
        cancelUrl (str): Where the payment page returns on cancel.
    """
    deliveryMethod: DeliveryMethod = DeliveryMethod.PICKUP
    deliveryAddress: Optional[str] = None
    successUrl: str
    cancelUrl: str


class OrderActionRequest(BaseModel):
    action: str


class ReviewRequest(BaseModel):
    producerId: str
    rating: int
    comment: Optional[str] = None
    orderId: Optional[str] = None
    productId: Optional[str] = None


class CommissionRateUpdate(BaseModel):
    value: Decimal


class PaymentEvent(BaseModel):
    """
    Outcome of a checkout session, delivered by webhook or by the payment-events queue.

    Attributes:
        orderId (str): Order the session was created for.
        paymentReference (str): Payment processor reference (session or intent id).
        status (str): "succeeded", "failed" or "expired".
        metadata (Dict[str, str]): Metadata echoed back from the session.
    """
    orderId: str
    paymentReference: str
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
