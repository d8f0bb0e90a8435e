"""Tests for platform settings and role capabilities."""

from decimal import Decimal

import pytest

from marketplace_service.authorization import (
    MANAGE_PRODUCTS,
    MODIFY_CART,
    PLACE_ORDER,
    SUBMIT_REVIEW,
    TRANSITION_ORDER,
    UPDATE_SETTINGS,
    authorize,
    require,
)
from marketplace_service.errors import Forbidden, InvalidCommissionRate
from marketplace_service.settings import DEFAULT_COMMISSION_RATE, PlatformSettings
from marketplace_service.store import InMemoryMarketplaceStore


class TestCommissionRate:
    def test_default_when_missing(self):
        settings = PlatformSettings(InMemoryMarketplaceStore())
        assert settings.commission_rate() == DEFAULT_COMMISSION_RATE == Decimal("5")

    def test_reads_stored_value(self, marketplace):
        assert marketplace.settings.commission_rate() == Decimal("12")

    def test_invalid_stored_value(self, marketplace, store):
        store.set_setting("commission_rate", "twelve", updated_by="admin-1")
        with pytest.raises(InvalidCommissionRate):
            marketplace.settings.commission_rate()

    def test_change_applies_to_next_read(self, marketplace, admin):
        marketplace.settings.update_commission_rate(admin, "20")
        assert marketplace.settings.commission_rate() == Decimal("20")

    @pytest.mark.parametrize("value", ["-1", "100.01", "NaN", "Infinity", "abc"])
    def test_update_rejects_invalid(self, marketplace, admin, store, value):
        with pytest.raises(InvalidCommissionRate):
            marketplace.settings.update_commission_rate(admin, value)
        assert store.get_setting("commission_rate") == "12"

    @pytest.mark.parametrize("value", ["0", "100"])
    def test_update_accepts_bounds(self, marketplace, admin, value):
        assert marketplace.settings.update_commission_rate(admin, value) == Decimal(value)

    def test_update_requires_admin(self, marketplace, producer):
        with pytest.raises(Forbidden):
            marketplace.settings.update_commission_rate(producer, "3")


class TestCapabilities:
    def test_consumer(self, consumer):
        assert authorize(consumer, MODIFY_CART)
        assert authorize(consumer, PLACE_ORDER)
        assert authorize(consumer, SUBMIT_REVIEW)
        assert not authorize(consumer, TRANSITION_ORDER)
        assert not authorize(consumer, UPDATE_SETTINGS)

    def test_producer(self, producer):
        assert authorize(producer, MANAGE_PRODUCTS)
        assert authorize(producer, TRANSITION_ORDER)
        assert not authorize(producer, PLACE_ORDER)
        assert not authorize(producer, UPDATE_SETTINGS)

    def test_admin(self, admin):
        assert authorize(admin, UPDATE_SETTINGS)
        assert not authorize(admin, MODIFY_CART)

    def test_require_raises(self, producer):
        with pytest.raises(Forbidden) as excinfo:
            require(producer, SUBMIT_REVIEW)
        assert excinfo.value.action == SUBMIT_REVIEW
