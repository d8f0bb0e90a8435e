"""Tests for the review eligibility gate."""

from decimal import Decimal

import httpx
import pytest

from marketplace_service.errors import ConflictError, DuplicateReview, Forbidden, InvalidRating, NotEligible
from marketplace_service.models import CartLine, CurrentUser, Role

from conftest import CONSUMER_ID, OTHER_PRODUCER_ID, PRODUCER_ID


def place_order(marketplace, product_id="bread", quantity=1, price="100.00"):
    lines = [CartLine(product_id=product_id, producer_id=PRODUCER_ID, quantity=quantity,
                      price_per_unit=Decimal(price))]
    return marketplace.orders.create_order(CONSUMER_ID, PRODUCER_ID, lines)


def complete(marketplace, order, producer):
    marketplace.orders.transition(order.id, producer, "confirm")
    return marketplace.orders.transition(order.id, producer, "complete")


class TestCanReview:
    def test_only_completed_orders_unlock_reviews(self, marketplace, producer):
        order = place_order(marketplace)
        gate = marketplace.reviews
        assert gate.can_review(CONSUMER_ID, order.id, "bread") is False

        marketplace.orders.transition(order.id, producer, "confirm")
        assert gate.can_review(CONSUMER_ID, order.id, "bread") is False

        marketplace.orders.transition(order.id, producer, "complete")
        assert gate.can_review(CONSUMER_ID, order.id, "bread") is True

    def test_other_consumer_cannot_review(self, marketplace, producer):
        order = complete(marketplace, place_order(marketplace), producer)
        assert marketplace.reviews.can_review("consumer-2", order.id, "bread") is False

    def test_product_must_be_in_order(self, marketplace, producer):
        order = complete(marketplace, place_order(marketplace), producer)
        assert marketplace.reviews.can_review(CONSUMER_ID, order.id, "honey") is False

    def test_unknown_order(self, marketplace):
        assert marketplace.reviews.can_review(CONSUMER_ID, "no-such-order") is False

    def test_false_after_review(self, marketplace, producer, consumer):
        order = complete(marketplace, place_order(marketplace), producer)
        marketplace.reviews.submit_review(consumer, PRODUCER_ID, 5, order_id=order.id, product_id="bread")
        assert marketplace.reviews.can_review(CONSUMER_ID, order.id, "bread") is False
        # the producer-level review of the same order is a separate key
        assert marketplace.reviews.can_review(CONSUMER_ID, order.id, None) is True


class TestSubmitReview:
    def test_product_review(self, marketplace, producer, consumer, store):
        order = complete(marketplace, place_order(marketplace), producer)
        review = marketplace.reviews.submit_review(consumer, PRODUCER_ID, 4, "  Lovely crust ",
                                                   order_id=order.id, product_id="bread")
        assert review.comment == "Lovely crust"
        assert store.product_ratings["bread"].review_count == 1
        assert store.get_producer_rating(PRODUCER_ID).average_rating == Decimal("4.00")

    def test_duplicate_review_is_a_conflict(self, marketplace, producer, consumer, store):
        order = complete(marketplace, place_order(marketplace), producer)
        marketplace.reviews.submit_review(consumer, PRODUCER_ID, 5, order_id=order.id, product_id="bread")
        with pytest.raises(DuplicateReview) as exc:
            marketplace.reviews.submit_review(consumer, PRODUCER_ID, 1, order_id=order.id, product_id="bread")
        assert isinstance(exc.value, ConflictError)
        assert len(store.reviews) == 1
        assert store.get_producer_rating(PRODUCER_ID).average_rating == Decimal("5.00")

    def test_pending_order_not_eligible(self, marketplace, consumer, store):
        order = place_order(marketplace)
        with pytest.raises(NotEligible):
            marketplace.reviews.submit_review(consumer, PRODUCER_ID, 5, order_id=order.id, product_id="bread")
        assert store.reviews == {}

    def test_producer_mismatch_not_eligible(self, marketplace, producer, consumer):
        order = complete(marketplace, place_order(marketplace), producer)
        with pytest.raises(NotEligible):
            marketplace.reviews.submit_review(consumer, OTHER_PRODUCER_ID, 5, order_id=order.id)

    @pytest.mark.parametrize("rating", [0, 6, -3, 4.5, "5", True])
    def test_invalid_rating(self, marketplace, producer, consumer, rating):
        order = complete(marketplace, place_order(marketplace), producer)
        with pytest.raises(InvalidRating):
            marketplace.reviews.submit_review(consumer, PRODUCER_ID, rating, order_id=order.id)

    def test_producer_only_review_without_order(self, marketplace, producer, consumer, store):
        complete(marketplace, place_order(marketplace), producer)
        review = marketplace.reviews.submit_review(consumer, PRODUCER_ID, 3)
        assert review.order_id is None
        assert review.product_id is None
        # no placeholder rows were created
        assert len(store.orders) == 1
        assert len(store.products) == 5

    def test_producer_only_review_needs_completed_order(self, marketplace, consumer):
        place_order(marketplace)
        with pytest.raises(NotEligible):
            marketplace.reviews.submit_review(consumer, PRODUCER_ID, 3)

    def test_only_consumers_review(self, marketplace, producer):
        with pytest.raises(Forbidden):
            marketplace.reviews.submit_review(producer, PRODUCER_ID, 5)

    def test_rating_average_over_several_reviews(self, marketplace, producer, store):
        for index, rating in enumerate([5, 4, 4]):
            consumer_id = f"consumer-{index + 10}"
            lines = [CartLine(product_id="bread", producer_id=PRODUCER_ID, quantity=1,
                              price_per_unit=Decimal("100.00"))]
            order = marketplace.orders.create_order(consumer_id, PRODUCER_ID, lines)
            complete(marketplace, order, producer)
            user = CurrentUser(id=consumer_id, role=Role.CONSUMER)
            marketplace.reviews.submit_review(user, PRODUCER_ID, rating, order_id=order.id, product_id="bread")

        summary = store.get_producer_rating(PRODUCER_ID)
        assert summary.review_count == 3
        assert summary.average_rating == Decimal("4.33")

    @pytest.mark.parametrize("product_id", ["bread", "cheese", "no-such-product"])
    def test_product_review_without_order_rejected(self, marketplace, producer, consumer, store, product_id):
        complete(marketplace, place_order(marketplace), producer)
        with pytest.raises(NotEligible):
            marketplace.reviews.submit_review(consumer, PRODUCER_ID, 1, product_id=product_id)
        assert store.reviews == {}
        assert product_id not in store.product_ratings
        assert marketplace.reviews.can_review(CONSUMER_ID, None, product_id, producer_id=PRODUCER_ID) is False

    def test_review_kept_when_rating_refresh_fails(self, marketplace, producer, consumer, store, monkeypatch):
        order = complete(marketplace, place_order(marketplace), producer)

        def unreachable(producer_id):
            raise httpx.ConnectError("data store unreachable")

        monkeypatch.setattr(store, "recompute_producer_rating", unreachable)
        review = marketplace.reviews.submit_review(consumer, PRODUCER_ID, 4, order_id=order.id,
                                                   product_id="bread")

        assert review.id in store.reviews
        assert store.product_ratings["bread"].review_count == 1
        assert store.get_producer_rating(PRODUCER_ID).review_count == 0
