"""
Unit tests for buyer price resolution and the pricing TTL
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import FakeMarketplaceClient, item_payload
from listing_sync.core.models import FetchResult
from listing_sync.services.price_resolver import PriceResolver, should_refetch_pricing
from listing_sync.utils.config import ListingSyncConfig
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import ErrorType


PROMO_PRICES = {
    "prices": [
        {"type": "standard", "amount": 99.90},
        {"type": "promotion", "amount": 79.90, "regular_amount": 99.90},
    ]
}


def listing_checked(hours_ago):
    checked_at = utcnow() - timedelta(hours=hours_ago) if hours_ago is not None else None
    return SimpleNamespace(promotion_checked_at=checked_at)


class TestShouldRefetch:
    """Test the TTL gate"""

    def test_flag_off(self, config):
        assert should_refetch_pricing(None, utcnow(), True, config) is False

    def test_new_listing(self, prices_config):
        assert should_refetch_pricing(None, utcnow(), False, prices_config) is True

    def test_never_checked(self, prices_config):
        assert should_refetch_pricing(listing_checked(None), utcnow(), False, prices_config) is True

    def test_within_ttl(self, prices_config):
        assert should_refetch_pricing(listing_checked(1), utcnow(), False, prices_config) is False

    def test_ttl_elapsed(self, prices_config):
        assert should_refetch_pricing(listing_checked(13), utcnow(), False, prices_config) is True

    def test_force(self, prices_config):
        assert should_refetch_pricing(listing_checked(1), utcnow(), True, prices_config) is True

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_unusable_ttl_means_fetch(self, ttl):
        config = ListingSyncConfig(use_ml_prices_for_promo=True, promo_prices_ttl_hours=ttl)
        assert should_refetch_pricing(listing_checked(1), utcnow(), False, config) is True


class TestPriceResolver:
    """Test resolution with and without the pricing endpoint"""

    def test_item_only_when_disabled(self, config):
        client = FakeMarketplaceClient(prices={"MLB100": PROMO_PRICES})
        resolver = PriceResolver(client, config)

        resolution = resolver.resolve(None, item_payload("MLB100"))

        assert resolution.price_final == 99.90
        assert resolution.checked is False
        assert client.calls["prices"] == 0

    def test_endpoint_promotion_overrides(self, prices_config):
        client = FakeMarketplaceClient(prices={"MLB100": PROMO_PRICES})
        resolver = PriceResolver(client, prices_config)

        resolution = resolver.resolve(None, item_payload("MLB100"))

        assert resolution.price_final == 79.90
        assert resolution.original_price == 99.90
        assert resolution.discount_percent == 20
        assert resolution.has_promotion is True
        assert resolution.checked is True
        assert resolver.stats == {"pricing_calls": 1, "pricing_overrides": 1, "pricing_failures": 0}

    def test_ttl_gating_single_call(self, prices_config):
        """Test two runs inside the TTL make exactly one pricing call"""
        client = FakeMarketplaceClient(prices={"MLB100": PROMO_PRICES})
        resolver = PriceResolver(client, prices_config)
        listing = SimpleNamespace(promotion_checked_at=None)

        first = resolver.resolve(listing, item_payload("MLB100"))
        if first.checked:
            listing.promotion_checked_at = utcnow()
        resolver.resolve(listing, item_payload("MLB100"))

        assert client.calls["prices"] == 1

    def test_failure_keeps_item_values(self, prices_config):
        failure = FetchResult.failure(ErrorType.SERVER_ERROR, "boom", status=500)
        client = FakeMarketplaceClient(prices={"MLB100": failure})
        resolver = PriceResolver(client, prices_config)

        resolution = resolver.resolve(None, item_payload("MLB100", original_price=120))

        assert resolution.price_final == 99.90
        assert resolution.original_price == 120
        assert resolution.checked is False
        assert resolver.stats["pricing_failures"] == 1
