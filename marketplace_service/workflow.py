"""
workflow.py — Checkout and Payment Reconciliation

This module coordinates the collaborators around a purchase in the correct sequence.

Checkout Overview:
1. Turn the consumer's cart into a pending order (stock reserved atomically)
2. Split the subtotal into commission and producer payout
3. Request a checkout session from the payment collaborator
4. Compensate (cancel the order, release stock) if the session cannot be created

Payment Reconciliation:
    The payment outcome arrives later, by webhook or from the payment-events
    queue. `confirm_payment` is the single authoritative step that records it:
    a successful payment moves the order from pending to confirmed, clears the
    consumer's cart and only then marks the order paid. An event that fails
    halfway is safe to redeliver: every step before the paid flag is repeated.
    Once the order is paid, replayed events are no-ops.
"""

import logging
from typing import List, Optional
import uuid

import httpx

from .authorization import PLACE_ORDER, require
from .errors import (
    CheckoutClosed,
    EmptyCart,
    InvalidStatusTransition,
    MixedProducerCart,
    UpstreamUnavailable,
    ValidationError,
    upstream_call,
)
from .models import (
    CheckoutRequest,
    CheckoutSession,
    CurrentUser,
    Order,
    OrderLine,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
)
from .pricing import PriceBreakdown, to_minor_units
from .ratings import KeyedLocks
from .services import CURRENCY, Marketplace

log = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = {"failed", "expired"}

_order_locks = KeyedLocks()


def build_line_items(order: Order, lines: List[OrderLine], product_names: dict,
                     currency: str = CURRENCY) -> list:
    """
    Builds the payment collaborator's line items for an order.

    One item per order line at its snapshotted unit price, plus one delivery
    item when the order carries a positive delivery fee. Amounts are integer
    minor units.
    """
    items = [
        {
            "name": product_names.get(line.product_id, f"Product {line.product_id}"),
            "unitAmount": to_minor_units(line.price_per_unit),
            "quantity": line.quantity,
            "currency": currency.lower(),
        }
        for line in lines
    ]
    if order.delivery_fee > 0:
        items.append({
            "name": "Delivery",
            "unitAmount": to_minor_units(order.delivery_fee),
            "quantity": 1,
            "currency": currency.lower(),
        })
    return items


def build_metadata(order: Order, commission: PriceBreakdown) -> dict:
    return {
        "order_id": order.id,
        "consumer_id": order.consumer_id,
        "producer_id": order.producer_id,
        "subtotal": str(commission.customer_price),
        "commission_rate": str(commission.commission_rate),
        "commission_amount": str(commission.commission_amount),
        "producer_earnings": str(commission.producer_earnings),
        "delivery_method": order.delivery_method.value,
        "delivery_address": order.delivery_address or "",
        "delivery_fee": str(order.delivery_fee),
    }


def process_checkout(marketplace: Marketplace, user: CurrentUser, request: CheckoutRequest,
                     idempotency_key: Optional[str] = None) -> CheckoutSession:
    """
    Executes the checkout for the consumer's current cart.

    Args:
        marketplace (Marketplace): Wired services.
        user (CurrentUser): The buying consumer.
        request (CheckoutRequest): Delivery choice and return URLs.
        idempotency_key (Optional[str]): Client key, a repeated checkout returns the same order.
    Returns:
        CheckoutSession: The pending order, its lines and the payment redirect URL.
    Raises:
        EmptyCart, MixedProducerCart, MissingDeliveryAddress, InsufficientStock,
        ProductUnavailable: Validation and stock failures from order assembly.
        InvalidCommissionRate: If the configured rate is invalid.
        CheckoutClosed: If the idempotency key belongs to an order that was cancelled or paid.
        UpstreamUnavailable: If the data store or the payment collaborator fails.
    """
    require(user, PLACE_ORDER)
    cart = marketplace.carts.open(user.id)
    if cart.is_empty():
        raise EmptyCart()
    producer_ids = cart.producer_ids()
    if len(producer_ids) > 1:
        raise MixedProducerCart(producer_ids)
    producer_id = producer_ids.pop()

    commission_rate = marketplace.settings.commission_rate()

    # --- 1. Order ---
    log.info(f"[Consumer: {user.id}] Step 1: Creating order from {len(cart.lines)} cart line(s)...")
    order = marketplace.orders.create_order(
        consumer_id=user.id,
        producer_id=producer_id,
        lines=cart.lines,
        delivery_method=request.deliveryMethod,
        delivery_address=request.deliveryAddress,
        idempotency_key=idempotency_key or str(uuid.uuid4()),
    )
    log_prefix = f"[Order: {order.id}]"
    if order.status != OrderStatus.PENDING or order.payment_status == PaymentStatus.PAID:
        # replayed key of an order that was cancelled or already paid
        log.warning(f"{log_prefix} Checkout replay refused, order is {order.status.value}/"
                    f"{order.payment_status.value}.")
        raise CheckoutClosed(order.id, order.status.value)

    with upstream_call("data store", log_prefix):
        lines = marketplace.store.get_order_lines(order.id)
        names = {p.id: p.name for p in marketplace.store.get_products(line.product_id for line in lines)}

    # --- 2. Commission ---
    commission = marketplace.orders.order_commission(order, commission_rate)
    log.info(f"{log_prefix} Step 2: Subtotal {commission.customer_price}, commission "
             f"{commission.commission_amount} ({commission.commission_rate}%), payout {commission.producer_earnings}.")

    # --- 3. Payment session ---
    log.info(f"{log_prefix} Step 3: Requesting checkout session...")
    try:
        redirect_url = marketplace.payments.create_checkout_session(
            line_items=build_line_items(order, lines, names),
            success_url=request.successUrl,
            cancel_url=request.cancelUrl,
            metadata=build_metadata(order, commission),
            idempotency_key=f"checkout-{order.id}",
        )
    except (httpx.HTTPError, KeyError) as e:
        # COMPENSATION (saga): the order must not stay pending without a session
        log.error(f"{log_prefix} Checkout session failed ({e!r}). Cancelling order.")
        try:
            marketplace.orders.advance(order, OrderStatus.CANCELLED, action="checkout failed")
            log.info(f"{log_prefix} Compensation complete. Order cancelled.")
        except Exception as comp_e:
            log.critical(f"{log_prefix} CRITICAL: Compensation failed! {comp_e}")
        raise UpstreamUnavailable("payment", str(e)) from e

    log.info(f"{log_prefix} Checkout session created. Waiting for payment outcome.")
    return CheckoutSession(order=order, lines=lines, redirect_url=redirect_url)


def confirm_payment(marketplace: Marketplace, event: PaymentEvent) -> Order:
    """
    Records a payment outcome for an order.

    Args:
        marketplace (Marketplace): Wired services.
        event (PaymentEvent): Outcome delivered by the payment collaborator.
    Returns:
        Order: The order after reconciliation.
    Raises:
        OrderNotFound: If the event references an unknown order.
        ValidationError: If the event status is unknown.
        UpstreamUnavailable: If the data store fails.
    """
    log_prefix = f"[Order: {event.orderId}]"
    status = event.status.lower()
    if status != PAYMENT_SUCCEEDED and status not in PAYMENT_FAILED:
        raise ValidationError(f"Unknown payment status '{event.status}'")

    with _order_locks.hold(event.orderId):
        order = marketplace.orders.get_order(event.orderId)

        if order.payment_status == PaymentStatus.PAID:
            log.info(f"{log_prefix} Payment already recorded, ignoring '{status}' event.")
            return order

        if status == PAYMENT_SUCCEEDED:
            # PAID is written last: until then a redelivered event repeats every step
            if order.status == OrderStatus.PENDING:
                try:
                    order = marketplace.orders.advance(order, OrderStatus.CONFIRMED, action="payment confirmed")
                except InvalidStatusTransition:
                    order = marketplace.orders.get_order(order.id)
                    log.warning(f"{log_prefix} Order left pending concurrently, now {order.status.value}.")
            if order.status == OrderStatus.CANCELLED:
                log.critical(f"{log_prefix} Payment {event.paymentReference} received for a cancelled order. "
                             f"REFUND REQUIRED!")
            marketplace.carts.clear(order.consumer_id)
            with upstream_call("data store", log_prefix):
                order = marketplace.store.update_order_payment(order.id, event.paymentReference, PaymentStatus.PAID)
            log.info(f"{log_prefix} Payment {event.paymentReference} recorded, cart of {order.consumer_id} cleared.")
            return order

        if order.status == OrderStatus.PENDING:
            order = marketplace.orders.advance(order, OrderStatus.CANCELLED, action=f"payment {status}")
        with upstream_call("data store", log_prefix):
            order = marketplace.store.update_order_payment(order.id, event.paymentReference, PaymentStatus.FAILED)
        log.warning(f"{log_prefix} Payment {status}. Order {order.status.value}.")
        return order
