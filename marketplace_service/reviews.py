"""
reviews.py — Review Eligibility Gate

A consumer may review only what they actually received:
    • order-bound reviews need an order of theirs in status `completed`
    • producer-only reviews without an order need at least one completed order
      with that producer. Product reviews always name their order.
    • one review per (consumer, producer, order, product) key

Producer-only reviews have `product_id = None`. Missing references stay None;
no placeholder orders or products are ever created to fill them.

Accepted reviews trigger a rating recomputation for the producer, and for the
product when it is a product review.
"""

import logging
from typing import Optional

from .authorization import SUBMIT_REVIEW, require
from .errors import DuplicateReview, InvalidRating, NotEligible, UpstreamUnavailable, upstream_call
from .models import CurrentUser, OrderStatus, Review
from .ratings import RatingAggregator
from .store import MarketplaceStore

log = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def validate_rating(rating) -> int:
    # bool is an int subclass, reject it explicitly
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRating(rating)
    return rating


class ReviewGate:
    def __init__(self, store: MarketplaceStore, ratings: RatingAggregator):
        self.store = store
        self.ratings = ratings

    def _check(self, consumer_id: str, producer_id: Optional[str], order_id: Optional[str],
               product_id: Optional[str]):
        """Raises NotEligible or DuplicateReview unless the consumer may review this key."""
        reason = self._denial(consumer_id, producer_id, order_id, product_id)
        if reason is not None:
            raise NotEligible(reason)
        if order_id is not None:
            producer_id = self.store.get_order(order_id).producer_id
        if self.store.find_review(consumer_id, producer_id, order_id, product_id) is not None:
            raise DuplicateReview(consumer_id, order_id, product_id)

    def _denial(self, consumer_id, producer_id, order_id, product_id) -> Optional[str]:
        if order_id is None:
            if product_id is not None:
                return "a product review requires the order it was bought in"
            if producer_id is None:
                return "a producer or an order is required"
            if self.store.find_completed_order(consumer_id, producer_id) is None:
                return f"no completed order with producer {producer_id}"
        else:
            order = self.store.get_order(order_id)
            if order is None or order.consumer_id != consumer_id:
                return f"order {order_id} does not belong to consumer {consumer_id}"
            if order.status != OrderStatus.COMPLETED:
                return f"order {order_id} is {order.status.value}, not completed"
            if producer_id is not None and producer_id != order.producer_id:
                return f"order {order_id} is not from producer {producer_id}"
            if product_id is not None:
                product_ids = {line.product_id for line in self.store.get_order_lines(order_id)}
                if product_id not in product_ids:
                    return f"product {product_id} is not part of order {order_id}"

        return None

    def can_review(self, consumer_id: str, order_id: Optional[str] = None, product_id: Optional[str] = None,
                   producer_id: Optional[str] = None) -> bool:
        """
        Whether the consumer may review the order (and product) right now.

        Raises:
            UpstreamUnavailable: If the data store cannot be read.
        """
        with upstream_call("data store", f"[Review: {consumer_id}/{order_id}/{product_id}]"):
            try:
                self._check(consumer_id, producer_id, order_id, product_id)
            except (NotEligible, DuplicateReview):
                return False
            return True

    def submit_review(self, user: CurrentUser, producer_id: str, rating, comment: Optional[str] = None,
                      order_id: Optional[str] = None, product_id: Optional[str] = None) -> Review:
        """
        Stores a review after the eligibility check and refreshes ratings.

        Args:
            user (CurrentUser): The reviewing consumer.
            producer_id (str): Reviewed producer, always required.
            rating (int): 1 to 5.
            comment (Optional[str]): Free text.
            order_id (Optional[str]): Completed order the review is about.
            product_id (Optional[str]): Reviewed product, None for a producer review.
        Returns:
            Review: The stored review.
        Raises:
            InvalidRating: If rating is outside 1..5.
            DuplicateReview: If the key was already reviewed.
            NotEligible: If the gate denies the review.
            UpstreamUnavailable: If the data store fails.
        """
        require(user, SUBMIT_REVIEW)
        validate_rating(rating)
        log_prefix = f"[Review: {user.id}/{order_id}/{product_id}]"

        with upstream_call("data store", log_prefix):
            try:
                self._check(user.id, producer_id, order_id, product_id)
            except NotEligible as e:
                log.info(f"{log_prefix} Not eligible: {e}.")
                raise

            comment = (comment or "").strip() or None
            review = self.store.insert_review(Review(
                consumer_id=user.id,
                producer_id=producer_id,
                product_id=product_id,
                order_id=order_id,
                rating=rating,
                comment=comment,
            ))
        log.info(f"{log_prefix} Stored rating {rating} for producer {producer_id}.")

        # The review is committed. A failed refresh leaves that summary stale until the next review.
        refreshes = [(self.ratings.recompute_producer_rating, producer_id)]
        if product_id is not None:
            refreshes.append((self.ratings.recompute_product_rating, product_id))
        for refresh, subject_id in refreshes:
            try:
                refresh(subject_id)
            except UpstreamUnavailable as e:
                log.error(f"{log_prefix} Review {review.id} stored but rating refresh for {subject_id} failed: {e}")
        return review
