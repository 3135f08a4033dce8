"""
Catalog candidate discovery with an orders-history fallback.

Public seller search is tried first. When it is policy-blocked, or answers
with an empty catalog, the distinct item ids referenced by recent orders
become the candidate catalog instead.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from listing_sync.database.models import ListingSource
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import (
    APIError, AuthenticationError, ListingSyncError, is_discovery_blocked_error,
)
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CatalogCandidates:
    item_ids: List[str]
    source: ListingSource
    # True only when discovery itself was rejected by the provider
    discovery_blocked: bool = False
    orders_processed: int = 0
    error: Optional[ListingSyncError] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == ListingSource.ORDERS_FALLBACK


def extract_item_ids(orders: Iterable[Dict[str, Any]]) -> List[str]:
    """Distinct item ids referenced by order lines, in first-seen order."""
    seen = set()
    item_ids = []
    for order in orders:
        for entry in order.get("order_items") or []:
            item_id = (entry.get("item") or {}).get("id")
            if item_id and item_id not in seen:
                seen.add(item_id)
                item_ids.append(str(item_id))
    return item_ids


class CatalogFallbackStrategy:
    def __init__(self, client: MarketplaceClient, config: Optional[ListingSyncConfig] = None,
                 ledger_item_ids: Optional[Callable[[int], List[str]]] = None):
        """
        Args:
            client: Marketplace client for discovery and order search
            config: Sync configuration
            ledger_item_ids: Reads item ids from already-ingested orders; used
                when the provider order search itself fails
        """
        self.client = client
        self.config = config or get_config()
        self.ledger_item_ids = ledger_item_ids

    def candidate_ids_from_orders(self, lookback_days: Optional[int] = None,
                                  now: Optional[datetime] = None):
        """
        Item ids from orders created within the lookback window.

        Returns:
            (item_ids, orders_processed)
        """
        lookback_days = lookback_days or self.config.sync.orders_fallback_lookback_days
        date_from = (now or utcnow()) - timedelta(days=lookback_days)

        orders = self.client.fetch_orders(date_from)
        item_ids = extract_item_ids(orders)
        logger.info(
            f"Orders fallback: {len(orders)} orders in {lookback_days} days "
            f"reference {len(item_ids)} distinct items"
        )
        return item_ids, len(orders)

    def resolve_candidates(self, max_items: Optional[int] = None,
                           now: Optional[datetime] = None) -> CatalogCandidates:
        """
        Candidate catalog for this run.

        A discovery failure that is not a policy block is reported in
        ``error`` with no candidates; it is never treated as an empty catalog.
        """
        blocked = False
        try:
            item_ids = self.client.discover_item_ids(max_items=max_items)
        except AuthenticationError:
            raise
        except APIError as e:
            if not is_discovery_blocked_error(e):
                logger.error(f"Discovery failed: {e}")
                return CatalogCandidates(item_ids=[], source=ListingSource.DISCOVERY, error=e)
            logger.warning(f"Discovery blocked by provider policy, using orders fallback: {e}")
            blocked = True
            item_ids = []

        if item_ids:
            return CatalogCandidates(item_ids=item_ids, source=ListingSource.DISCOVERY)

        if not blocked:
            logger.info("Discovery returned no items, using orders fallback")

        try:
            item_ids, orders_processed = self.candidate_ids_from_orders(now=now)
        except AuthenticationError:
            raise
        except APIError as e:
            logger.error(f"Orders fallback failed: {e}")
            item_ids = []
            if self.ledger_item_ids is not None:
                item_ids = self.ledger_item_ids(self.config.sync.orders_fallback_lookback_days)
                logger.info(f"Using {len(item_ids)} item ids from the local order ledger")
            return CatalogCandidates(
                item_ids=item_ids, source=ListingSource.ORDERS_FALLBACK, discovery_blocked=blocked, error=e,
            )

        return CatalogCandidates(
            item_ids=item_ids,
            source=ListingSource.ORDERS_FALLBACK,
            discovery_blocked=blocked,
            orders_processed=orders_processed,
        )
