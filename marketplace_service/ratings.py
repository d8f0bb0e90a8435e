"""
ratings.py — Producer and Product Rating Recomputation

Ratings are never patched incrementally. Each recomputation asks the data store
for one authoritative aggregate over the current review set and stores the
result, so calling it twice in a row yields the same summary. Calls for the
same producer are additionally serialized in-process by a per-producer lock.
"""

from contextlib import contextmanager
import logging
import threading
from typing import Dict

from .errors import upstream_call
from .models import RatingSummary
from .store import MarketplaceStore

log = logging.getLogger(__name__)


class KeyedLocks:
    """
    One lock per key, alive only while someone holds or waits for it.

    Entries are reference counted and dropped when the last holder leaves, so
    the table only ever contains the keys currently in use.
    """

    def __init__(self):
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self):
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]



class RatingAggregator:
    def __init__(self, store: MarketplaceStore):
        self.store = store
        self._producer_locks = KeyedLocks()
        self._product_locks = KeyedLocks()

    def recompute_producer_rating(self, producer_id: str) -> RatingSummary:
        """
        Recomputes a producer's average rating and review count.

        Returns:
            RatingSummary: The stored summary.
        Raises:
            UpstreamUnavailable: If the data store fails.
        """
        log_prefix = f"[Producer: {producer_id}]"
        with self._producer_locks.hold(producer_id), upstream_call("data store", log_prefix):
            summary = self.store.recompute_producer_rating(producer_id)
        log.info(f"{log_prefix} Rating {summary.average_rating} from {summary.review_count} review(s).")
        return summary

    def recompute_product_rating(self, product_id: str) -> RatingSummary:
        log_prefix = f"[Product: {product_id}]"
        with self._product_locks.hold(product_id), upstream_call("data store", log_prefix):
            summary = self.store.recompute_product_rating(product_id)
        log.info(f"{log_prefix} Rating {summary.average_rating} from {summary.review_count} review(s).")
        return summary
