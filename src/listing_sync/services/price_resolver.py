"""
Buyer-facing price and promotion resolution.

The item payload alone always yields a resolution. When the authoritative
pricing endpoint is enabled, it is consulted at most once per TTL window per
listing, and only its effective promotion can override the item-derived one.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from listing_sync.core.calculator import apply_buyer_prices_override, resolve_item_prices
from listing_sync.core.models import PriceResolution
from listing_sync.database.models import Listing
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


def should_refetch_pricing(listing: Optional[Listing], now: datetime, force: bool,
                           config: ListingSyncConfig) -> bool:
    """
    Decide whether the authoritative pricing call is due for ``listing``.

    Never when the feature flag is off. Otherwise always when forced, for a
    new listing, or when the listing was never checked; else once the TTL
    has elapsed. An unusable TTL means "fetch".
    """
    if not config.use_ml_prices_for_promo:
        return False
    if force or listing is None or listing.promotion_checked_at is None:
        return True

    ttl_hours = config.promo_prices_ttl_hours
    if not isinstance(ttl_hours, (int, float)) or ttl_hours <= 0:
        return True

    elapsed_hours = (now - listing.promotion_checked_at).total_seconds() / 3600
    return elapsed_hours >= ttl_hours


class PriceResolver:
    def __init__(self, client: MarketplaceClient, config: Optional[ListingSyncConfig] = None):
        self.client = client
        self.config = config or get_config()
        self.stats = {"pricing_calls": 0, "pricing_overrides": 0, "pricing_failures": 0}

    def resolve(self, listing: Optional[Listing], item: Dict[str, Any], force: bool = False,
                now: Optional[datetime] = None) -> PriceResolution:
        """
        Resolve prices for one fetched item.

        ``checked`` on the result is True only when the pricing endpoint was
        called successfully; the caller stamps ``promotion_checked_at`` then.
        """
        now = now or utcnow()
        resolution = resolve_item_prices(item)

        if not should_refetch_pricing(listing, now, force, self.config):
            return resolution

        item_id = str(item.get("id"))
        self.stats["pricing_calls"] += 1
        fetched = self.client.fetch_item_prices(item_id)

        if not fetched.ok:
            # Item-derived values stand; the listing stays due for the next run
            self.stats["pricing_failures"] += 1
            logger.debug(f"Pricing check failed for {item_id}: {fetched.message}")
            return resolution

        applied, resolution = apply_buyer_prices_override(resolution, fetched.value)
        if applied:
            self.stats["pricing_overrides"] += 1
            logger.debug(f"Pricing endpoint promotion applied for {item_id}: {resolution}")
        return resolution
