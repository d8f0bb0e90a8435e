"""
ordering.py — Order Assembly and the Order Status State Machine

Turns a finalized cart into a persisted order with its lines, and moves orders
through their lifecycle.

Order creation is all-or-nothing. The data store offers no multi-statement
transaction over REST, so creation runs as a saga:
    1. Validate everything (empty cart, single producer, delivery, availability, stock)
    2. Atomically decrement stock for every stock-tracked line
    3. Insert the order header
    4. Insert the order lines one by one
If any step fails, the completed steps are compensated in reverse order
(delete lines, delete header, restore stock) and the failure is re-raised.

State machine:
    pending   -> confirmed | cancelled
    confirmed -> completed | cancelled
    completed, cancelled: terminal
"""

from decimal import Decimal
import logging
import os
from typing import Dict, List, Optional

import httpx

from .authorization import TRANSITION_ORDER, require
from .errors import (
    EmptyCart,
    Forbidden,
    InsufficientStock,
    InvalidStatusTransition,
    MarketplaceError,
    MissingDeliveryAddress,
    MixedProducerCart,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    UpstreamUnavailable,
    ValidationError,
    upstream_call,
)
from .models import (
    CartLine,
    CurrentUser,
    DeliveryMethod,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    Role,
)
from .pricing import PriceBreakdown, breakdown, quantize, sum_amounts
from .store import MarketplaceStore

DELIVERY_FEE = Decimal(os.environ.get("DELIVERY_FEE", "15.00"))

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

ACTIONS = {
    "confirm": OrderStatus.CONFIRMED,
    "decline": OrderStatus.CANCELLED,
    "cancel": OrderStatus.CANCELLED,
    "complete": OrderStatus.COMPLETED,
}

log = logging.getLogger(__name__)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class OrderAssembler:
    """Creates orders atomically and applies status transitions."""

    def __init__(self, store: MarketplaceStore, delivery_fee: Decimal = DELIVERY_FEE):
        self.store = store
        self.delivery_fee = quantize(delivery_fee)

    def delivery_fee_for(self, method: DeliveryMethod) -> Decimal:
        return self.delivery_fee if method == DeliveryMethod.DELIVERY else Decimal("0.00")

    # --- Creation ---
    def create_order(self, consumer_id: str, producer_id: str, lines: List[CartLine],
                     delivery_method: DeliveryMethod = DeliveryMethod.PICKUP,
                     delivery_address: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> Order:
        """
        Persists an order and its lines as one unit.

        Args:
            consumer_id (str): Buyer.
            producer_id (str): Seller. Every line must belong to this producer.
            lines (List[CartLine]): Cart lines with their price snapshots.
            delivery_method (DeliveryMethod): pickup or delivery.
            delivery_address (Optional[str]): Required for delivery.
            idempotency_key (Optional[str]): Repeating a call with the same key returns the first order.
        Returns:
            Order: The persisted order in status `pending`.
        Raises:
            EmptyCart: If there are no lines.
            MixedProducerCart: If any line belongs to a different producer.
            MissingDeliveryAddress: If delivery is chosen without an address.
            ProductNotFound / ProductUnavailable / InsufficientStock: If a line cannot be fulfilled.
            UpstreamUnavailable: If the data store fails. Nothing stays persisted in that case.
        """
        if not lines:
            raise EmptyCart()

        line_producers = {line.producer_id for line in lines} | {producer_id}
        if len(line_producers) > 1:
            raise MixedProducerCart(line_producers)

        address = (delivery_address or "").strip() or None
        if delivery_method == DeliveryMethod.DELIVERY and not address:
            raise MissingDeliveryAddress()
        if delivery_method == DeliveryMethod.PICKUP:
            address = None

        with upstream_call("data store", f"[Consumer: {consumer_id}]"):
            if idempotency_key:
                existing = self.store.find_order_by_idempotency_key(consumer_id, idempotency_key)
                if existing:
                    log.info(f"[Order: {existing.id}] Replayed idempotency key, returning existing order.")
                    return existing
            products = self._load_products(lines)

        product_producers = {p.producer_id for p in products.values()} | {producer_id}
        if len(product_producers) > 1:
            raise MixedProducerCart(product_producers)

        for line in lines:
            product = products[line.product_id]
            if not product.is_available:
                raise ProductUnavailable(product.id)
            if product.tracks_stock and line.quantity > product.stock_quantity:
                raise InsufficientStock(product.id, line.quantity, product.stock_quantity)

        fee = self.delivery_fee_for(delivery_method)
        subtotal = sum_amounts(line.line_total for line in lines)
        order = Order(
            consumer_id=consumer_id,
            producer_id=producer_id,
            total_amount=quantize(subtotal + fee),
            delivery_method=delivery_method,
            delivery_address=address,
            delivery_fee=fee,
            idempotency_key=idempotency_key,
        )
        order_lines = [
            OrderLine(
                order_id=order.id,
                product_id=line.product_id,
                quantity=line.quantity,
                price_per_unit=line.price_per_unit,
                total_price=quantize(line.line_total),
            )
            for line in lines
        ]
        self._persist(order, order_lines, products)
        return order

    def _load_products(self, lines: List[CartLine]) -> Dict[str, Product]:
        products = {p.id: p for p in self.store.get_products(line.product_id for line in lines)}
        for line in lines:
            if line.product_id not in products:
                raise ProductNotFound(line.product_id)
        return products

    def _persist(self, order: Order, order_lines: List[OrderLine], products: Dict[str, Product]):
        log_prefix = f"[Order: {order.id}]"
        decremented = []
        header_written = False

        try:
            log.info(f"{log_prefix} Step 1: Reserving stock...")
            for line in order_lines:
                if not products[line.product_id].tracks_stock:
                    continue
                if not self.store.decrement_stock(line.product_id, line.quantity):
                    log.warning(f"{log_prefix} Stock exhausted for {line.product_id} at commit time.")
                    raise InsufficientStock(line.product_id, line.quantity)
                decremented.append(line)

            log.info(f"{log_prefix} Step 2: Writing order header...")
            self.store.insert_order(order)
            header_written = True

            log.info(f"{log_prefix} Step 3: Writing {len(order_lines)} order line(s)...")
            for line in order_lines:
                self.store.insert_order_line(line)

        except Exception as e:
            log.error(f"{log_prefix} Order creation failed ({e}). Starting compensation.")
            self._compensate(order.id, header_written, decremented)
            if isinstance(e, MarketplaceError):
                raise
            if isinstance(e, httpx.HTTPError):
                raise UpstreamUnavailable("data store", str(e)) from e
            raise

        log.info(f"{log_prefix} Created: total {order.total_amount}, status {order.status.value}.")

    def _compensate(self, order_id: str, header_written: bool, decremented: List[OrderLine]):
        """Undoes a partial order. Every step is attempted even if an earlier one fails."""
        log_prefix = f"[Order: {order_id}]"
        failed = False
        if header_written:
            for step in (self.store.delete_order_lines, self.store.delete_order):
                try:
                    step(order_id)
                except Exception as e:
                    failed = True
                    log.critical(f"{log_prefix} COMPENSATION FAILED ({step.__name__}): {e}. MANUAL ACTION REQUIRED!")
        for line in reversed(decremented):
            try:
                self.store.restore_stock(line.product_id, line.quantity)
            except Exception as e:
                failed = True
                log.critical(f"{log_prefix} COMPENSATION FAILED (restore {line.product_id} x{line.quantity}): {e}. "
                             f"MANUAL ACTION REQUIRED!")
        if not failed:
            log.info(f"{log_prefix} Compensation complete, nothing persisted.")

    # --- Lifecycle ---
    def get_order(self, order_id: str) -> Order:
        with upstream_call("data store", f"[Order: {order_id}]"):
            order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def transition(self, order_id: str, user: CurrentUser, action: str) -> Order:
        """
        Applies a producer action (confirm, decline, cancel, complete) to an order.

        Only the producer who owns the order, or an admin, may transition it.

        Raises:
            Forbidden: If the user may not transition this order.
            ValidationError: If the action is unknown.
            InvalidStatusTransition: If the current status does not allow the action.
        """
        require(user, TRANSITION_ORDER)
        target = ACTIONS.get(action)
        if target is None:
            raise ValidationError(f"Unknown order action '{action}'")
        order = self.get_order(order_id)
        if user.role != Role.ADMIN and order.producer_id != user.id:
            raise Forbidden(user.id, f"{action} order {order_id}")
        return self.advance(order, target, action=action)

    def advance(self, order: Order, target: OrderStatus, action: Optional[str] = None) -> Order:
        """
        Moves an order to `target` with a compare-and-set on its current status.

        Cancelling an order returns its stock-tracked units to stock.
        """
        action = action or target.value
        log_prefix = f"[Order: {order.id}]"
        if not can_transition(order.status, target):
            raise InvalidStatusTransition(order.id, order.status.value, action)

        with upstream_call("data store", log_prefix):
            updated = self.store.update_order_status(order.id, order.status, target)
            if updated is None:
                current = self.store.get_order(order.id)
                status = current.status.value if current else "missing"
                log.warning(f"{log_prefix} Status changed concurrently (now {status}).")
                raise InvalidStatusTransition(order.id, status, action)
            if target == OrderStatus.CANCELLED:
                self._release_stock(updated)

        log.info(f"{log_prefix} {order.status.value} -> {target.value} ({action}).")
        return updated

    def _release_stock(self, order: Order):
        """
        Returns the units of a cancelled order to stock.

        The order is already terminal, so nothing here may abort: every line is
        attempted and each failure is logged at CRITICAL for manual repair.
        """
        log_prefix = f"[Order: {order.id}]"
        try:
            lines = self.store.get_order_lines(order.id)
            products = {p.id: p for p in self.store.get_products(line.product_id for line in lines)}
        except Exception as e:
            log.critical(f"{log_prefix} STOCK RELEASE FAILED, order lines unreadable: {e}. MANUAL ACTION REQUIRED!")
            return
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.tracks_stock:
                continue
            try:
                self.store.restore_stock(line.product_id, line.quantity)
            except Exception as e:
                log.critical(f"{log_prefix} STOCK RELEASE FAILED (restore {line.product_id} x{line.quantity}): {e}. "
                             f"MANUAL ACTION REQUIRED!")

    def order_commission(self, order: Order, commission_rate) -> PriceBreakdown:
        """Splits the order subtotal (delivery fee excluded) into commission and producer payout."""
        return breakdown(order.subtotal, commission_rate)
