"""
services.py — Wiring of Stores, Clients and Domain Services

`build_marketplace()` picks the data store from the environment: the REST
store when DATA_STORE_URL is set, the in-process store otherwise.
"""

import logging
import os
from typing import Optional

from .cart import CartRegistry
from .clients import DATA_STORE_URL, DataStoreClient, PaymentClient, StorageClient
from .images import ProductImageManager
from .ordering import OrderAssembler
from .ratings import RatingAggregator
from .rest_store import RestMarketplaceStore
from .reviews import ReviewGate
from .settings import PlatformSettings
from .store import InMemoryMarketplaceStore, MarketplaceStore

CURRENCY = os.environ.get("CURRENCY", "PLN")

log = logging.getLogger(__name__)


class Marketplace:
    """Holds one instance of every service, sharing a single store."""

    def __init__(self, store: MarketplaceStore, payments: PaymentClient, storage: StorageClient,
                 carts: Optional[CartRegistry] = None):
        self.store = store
        self.payments = payments
        self.storage = storage
        self.carts = carts or CartRegistry()
        self.settings = PlatformSettings(store)
        self.orders = OrderAssembler(store)
        self.ratings = RatingAggregator(store)
        self.reviews = ReviewGate(store, self.ratings)
        self.images = ProductImageManager(store, storage)


def build_marketplace() -> Marketplace:
    if DATA_STORE_URL:
        log.info(f"Using REST data store at {DATA_STORE_URL}.")
        store = RestMarketplaceStore(DataStoreClient())
    else:
        log.warning("DATA_STORE_URL not set. Using the in-process data store (not persistent).")
        store = InMemoryMarketplaceStore()
    return Marketplace(store=store, payments=PaymentClient(), storage=StorageClient())
