"""Pytest fixtures for marketplace service tests."""

import os

# Must be set before marketplace_service.main is imported
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("PAYMENT_EVENT_LISTENER", "false")

from decimal import Decimal

import pytest

from marketplace_service.models import CurrentUser, Product, Role
from marketplace_service.services import Marketplace
from marketplace_service.store import InMemoryMarketplaceStore

PRODUCER_ID = "producer-1"
OTHER_PRODUCER_ID = "producer-2"
CONSUMER_ID = "consumer-1"


class FakePaymentClient:
    """Records checkout session requests instead of calling the payment function."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    def create_checkout_session(self, line_items, success_url, cancel_url, metadata, idempotency_key):
        self.calls.append({
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return f"https://checkout.example.test/pay/{metadata['order_id']}"


class FakeStorageClient:
    def __init__(self):
        self.uploads = []

    def upload(self, owner_id, filename, content, content_type):
        self.uploads.append((owner_id, filename, content, content_type))
        return f"https://cdn.example.test/{owner_id}/{len(self.uploads)}-{filename}"


@pytest.fixture
def store():
    """In-process store seeded with a few products and a 12% commission rate."""
    store = InMemoryMarketplaceStore()
    store.add_product(Product(id="bread", producer_id=PRODUCER_ID, name="Sourdough", price=Decimal("100.00"),
                              stock_quantity=10))
    store.add_product(Product(id="honey", producer_id=PRODUCER_ID, name="Honey", price=Decimal("24.50"),
                              unit="jar", stock_quantity=2))
    store.add_product(Product(id="cake", producer_id=PRODUCER_ID, name="Birthday cake", price=Decimal("80.00"),
                              stock_quantity=2, made_to_order=True, execution_time_hours=48))
    store.add_product(Product(id="cheese", producer_id=OTHER_PRODUCER_ID, name="Goat cheese",
                              price=Decimal("35.99"), stock_quantity=5))
    store.add_product(Product(id="jam", producer_id=PRODUCER_ID, name="Jam", price=Decimal("12.00"),
                              stock_quantity=5, is_available=False))
    store.set_setting("commission_rate", "12", updated_by="admin-1")
    return store


@pytest.fixture
def payments():
    return FakePaymentClient()


@pytest.fixture
def storage():
    return FakeStorageClient()


@pytest.fixture
def marketplace(store, payments, storage):
    return Marketplace(store=store, payments=payments, storage=storage)


@pytest.fixture
def consumer():
    return CurrentUser(id=CONSUMER_ID, role=Role.CONSUMER)


@pytest.fixture
def producer():
    return CurrentUser(id=PRODUCER_ID, role=Role.PRODUCER)


@pytest.fixture
def admin():
    return CurrentUser(id="admin-1", role=Role.ADMIN)

