"""Tests for checkout and payment reconciliation."""

from decimal import Decimal
import logging

import httpx
import pytest

from marketplace_service.errors import (
    CheckoutClosed,
    EmptyCart,
    Forbidden,
    InvalidCommissionRate,
    MixedProducerCart,
    OrderNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from marketplace_service.models import CheckoutRequest, DeliveryMethod, OrderStatus, PaymentEvent, PaymentStatus
from marketplace_service.workflow import build_line_items, confirm_payment, process_checkout

from conftest import CONSUMER_ID, PRODUCER_ID

DELIVERY = CheckoutRequest(deliveryMethod=DeliveryMethod.DELIVERY, deliveryAddress="Mokotów 12",
                           successUrl="https://shop.test/payment-success", cancelUrl="https://shop.test/cart")
PICKUP = CheckoutRequest(successUrl="https://shop.test/payment-success", cancelUrl="https://shop.test/cart")


def fill_cart(marketplace, *items):
    cart = marketplace.carts.open(CONSUMER_ID)
    for product_id, quantity in items:
        cart.add(marketplace.store.get_product(product_id), quantity)
    return cart


def paid(order_id, status="succeeded", reference="cs_123"):
    return PaymentEvent(orderId=order_id, paymentReference=reference, status=status)


class TestCheckout:
    def test_full_purchase_and_review_cycle(self, marketplace, payments, consumer, producer):
        cart = fill_cart(marketplace, ("bread", 2))
        assert cart.subtotal() == Decimal("200.00")
        assert cart.total(Decimal("15.00")) == Decimal("215.00")

        session = process_checkout(marketplace, consumer, DELIVERY)
        order = session.order
        assert order.status == OrderStatus.PENDING
        assert order.total_amount == Decimal("215.00")
        assert session.redirect_url.endswith(order.id)

        call = payments.calls[0]
        assert call["metadata"]["commission_rate"] == "12"
        assert call["metadata"]["commission_amount"] == "24.00"
        assert call["metadata"]["producer_earnings"] == "176.00"
        assert call["idempotency_key"] == f"checkout-{order.id}"
        assert [item["unitAmount"] for item in call["line_items"]] == [10000, 1500]

        # cart survives until the payment is confirmed
        assert not marketplace.carts.open(CONSUMER_ID).is_empty()
        order = confirm_payment(marketplace, paid(order.id))
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert marketplace.carts.open(CONSUMER_ID).is_empty()

        assert marketplace.reviews.can_review(CONSUMER_ID, order.id, "bread") is False
        marketplace.orders.transition(order.id, producer, "complete")
        assert marketplace.reviews.can_review(CONSUMER_ID, order.id, "bread") is True

    def test_empty_cart(self, marketplace, consumer):
        with pytest.raises(EmptyCart):
            process_checkout(marketplace, consumer, PICKUP)

    def test_mixed_producer_cart(self, marketplace, consumer, payments, store):
        fill_cart(marketplace, ("bread", 1), ("cheese", 1))
        with pytest.raises(MixedProducerCart):
            process_checkout(marketplace, consumer, PICKUP)
        assert store.orders == {}
        assert payments.calls == []

    def test_producers_cannot_check_out(self, marketplace, producer):
        with pytest.raises(Forbidden):
            process_checkout(marketplace, producer, PICKUP)

    def test_invalid_commission_setting_blocks_checkout(self, marketplace, consumer, store):
        store.set_setting("commission_rate", "140", updated_by="admin-1")
        fill_cart(marketplace, ("bread", 1))
        with pytest.raises(InvalidCommissionRate):
            process_checkout(marketplace, consumer, PICKUP)
        assert store.orders == {}

    def test_payment_failure_cancels_order(self, marketplace, payments, consumer, store):
        payments.fail_with = httpx.ConnectError("payment function unreachable")
        fill_cart(marketplace, ("honey", 2))

        with pytest.raises(UpstreamUnavailable):
            process_checkout(marketplace, consumer, PICKUP)

        (order,) = store.orders.values()
        assert order.status == OrderStatus.CANCELLED
        assert store.get_product("honey").stock_quantity == 2
        assert not marketplace.carts.open(CONSUMER_ID).is_empty()

    def test_repeated_checkout_with_key_reuses_order(self, marketplace, consumer, store):
        fill_cart(marketplace, ("bread", 1))
        first = process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1")
        second = process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1")
        assert first.order.id == second.order.id
        assert len(store.orders) == 1


    def test_retry_after_payment_failure_needs_new_key(self, marketplace, payments, consumer, store):
        payments.fail_with = httpx.ConnectError("payment function unreachable")
        fill_cart(marketplace, ("bread", 1))
        with pytest.raises(UpstreamUnavailable):
            process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1")

        payments.fail_with = None
        with pytest.raises(CheckoutClosed) as exc:
            process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1")
        assert exc.value.status == "cancelled"
        assert len(payments.calls) == 1

        session = process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-2")
        assert session.order.status == OrderStatus.PENDING
        assert session.order.id != exc.value.order_id

    def test_replay_of_paid_checkout_refused(self, marketplace, payments, consumer):
        fill_cart(marketplace, ("bread", 1))
        order = process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1").order
        confirm_payment(marketplace, paid(order.id))

        fill_cart(marketplace, ("bread", 1))
        with pytest.raises(CheckoutClosed):
            process_checkout(marketplace, consumer, PICKUP, idempotency_key="k-1")
        assert len(payments.calls) == 1


class TestLineItems:
    def test_pickup_has_no_delivery_line(self, marketplace, consumer, payments):
        fill_cart(marketplace, ("honey", 1), ("cake", 2))
        process_checkout(marketplace, consumer, PICKUP)
        items = payments.calls[0]["line_items"]
        assert [(i["name"], i["unitAmount"], i["quantity"]) for i in items] == [
            ("Honey", 2450, 1),
            ("Birthday cake", 8000, 2),
        ]
        assert {i["currency"] for i in items} == {"pln"}

    def test_unknown_product_name_falls_back(self, marketplace):
        order = marketplace.orders.create_order(
            CONSUMER_ID, PRODUCER_ID, fill_cart(marketplace, ("bread", 1)).lines
        )
        lines = marketplace.store.get_order_lines(order.id)
        assert build_line_items(order, lines, {})[0]["name"] == "Product bread"


class TestConfirmPayment:
    @pytest.fixture
    def order(self, marketplace, consumer):
        fill_cart(marketplace, ("bread", 1))
        return process_checkout(marketplace, consumer, PICKUP).order

    def test_replayed_event_is_noop(self, marketplace, order, store):
        confirm_payment(marketplace, paid(order.id))
        cart = fill_cart(marketplace, ("honey", 1))
        again = confirm_payment(marketplace, paid(order.id))
        assert again.status == OrderStatus.CONFIRMED
        # cart cleared exactly once, the new cart is untouched
        assert cart.lines[0].product_id == "honey"

    def test_failed_payment_cancels_pending_order(self, marketplace, order, store):
        result = confirm_payment(marketplace, paid(order.id, status="failed"))
        assert result.status == OrderStatus.CANCELLED
        assert result.payment_status == PaymentStatus.FAILED
        assert store.get_product("bread").stock_quantity == 10

    def test_failure_after_success_ignored(self, marketplace, order):
        confirm_payment(marketplace, paid(order.id))
        result = confirm_payment(marketplace, paid(order.id, status="expired"))
        assert result.status == OrderStatus.CONFIRMED
        assert result.payment_status == PaymentStatus.PAID

    def test_payment_for_already_confirmed_order(self, marketplace, order, producer):
        marketplace.orders.transition(order.id, producer, "confirm")
        result = confirm_payment(marketplace, paid(order.id))
        assert result.status == OrderStatus.CONFIRMED
        assert result.payment_intent_id == "cs_123"

    def test_redelivery_after_interrupted_confirmation(self, marketplace, order, store, monkeypatch):
        update = store.update_order_status
        failures = [httpx.ConnectError("connection reset")]

        def flaky_update(order_id, expected, new):
            if failures:
                raise failures.pop()
            return update(order_id, expected, new)

        monkeypatch.setattr(store, "update_order_status", flaky_update)
        with pytest.raises(UpstreamUnavailable):
            confirm_payment(marketplace, paid(order.id))
        assert store.get_order(order.id).payment_status == PaymentStatus.UNPAID
        assert not marketplace.carts.open(CONSUMER_ID).is_empty()

        result = confirm_payment(marketplace, paid(order.id))
        assert result.status == OrderStatus.CONFIRMED
        assert result.payment_status == PaymentStatus.PAID
        assert marketplace.carts.open(CONSUMER_ID).is_empty()

    def test_redelivery_after_failed_payment_write(self, marketplace, order, store, monkeypatch):
        record = store.update_order_payment
        failures = [httpx.ReadTimeout("slow")]

        def flaky_record(order_id, reference, payment_status):
            if failures:
                raise failures.pop()
            return record(order_id, reference, payment_status)

        monkeypatch.setattr(store, "update_order_payment", flaky_record)
        with pytest.raises(UpstreamUnavailable):
            confirm_payment(marketplace, paid(order.id))

        result = confirm_payment(marketplace, paid(order.id))
        assert result.status == OrderStatus.CONFIRMED
        assert result.payment_status == PaymentStatus.PAID

    def test_payment_for_declined_order_is_recorded(self, marketplace, order, producer, caplog):
        marketplace.orders.transition(order.id, producer, "decline")
        with caplog.at_level(logging.CRITICAL):
            result = confirm_payment(marketplace, paid(order.id))
        assert result.status == OrderStatus.CANCELLED
        assert result.payment_status == PaymentStatus.PAID
        assert any("REFUND" in r.message for r in caplog.records)

    def test_unknown_status(self, marketplace, order):
        with pytest.raises(ValidationError):
            confirm_payment(marketplace, paid(order.id, status="refunded"))

    def test_unknown_order(self, marketplace):
        with pytest.raises(OrderNotFound):
            confirm_payment(marketplace, paid("missing"))
