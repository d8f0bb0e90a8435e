"""
settings.py — Platform Settings Stored in the Data Store

Only one setting drives domain logic: `commission_rate`, the percentage the
platform keeps from every sale. It is read fresh for every calculation, so an
admin's change applies to the next calculation and never to amounts already
computed.
"""

from decimal import Decimal
import logging

from .authorization import UPDATE_SETTINGS, require
from .errors import upstream_call
from .models import CurrentUser
from .pricing import validate_commission_rate
from .store import MarketplaceStore

log = logging.getLogger(__name__)

COMMISSION_RATE_KEY = "commission_rate"
DEFAULT_COMMISSION_RATE = Decimal("5")


class PlatformSettings:
    def __init__(self, store: MarketplaceStore):
        self.store = store

    def commission_rate(self) -> Decimal:
        """
        Current commission rate.

        Returns:
            Decimal: Percentage in [0, 100]. Falls back to 5 when the setting is absent.
        Raises:
            InvalidCommissionRate: If the stored value is not a valid percentage.
            UpstreamUnavailable: If the data store cannot be read.
        """
        with upstream_call("data store", "[Settings]"):
            raw = self.store.get_setting(COMMISSION_RATE_KEY)
        if raw is None:
            log.warning(f"[Settings] '{COMMISSION_RATE_KEY}' not set, using default {DEFAULT_COMMISSION_RATE}%.")
            return DEFAULT_COMMISSION_RATE
        return validate_commission_rate(raw.strip())

    def update_commission_rate(self, user: CurrentUser, value) -> Decimal:
        require(user, UPDATE_SETTINGS)
        rate = validate_commission_rate(value)
        with upstream_call("data store", "[Settings]"):
            self.store.set_setting(COMMISSION_RATE_KEY, str(rate), updated_by=user.id)
        log.info(f"[Settings] Commission rate set to {rate}% by {user.id}.")
        return rate
