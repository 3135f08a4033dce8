"""
Catalog synchronization for one tenant.

Candidates come from discovery (or the orders fallback), details are fetched
in bulk batches, and each listing is merged inside its own savepoint so one
bad row never rolls back its batch. Work is committed per batch.
"""

from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_sync.core.models import CatalogSyncResult
from listing_sync.core.parsers import parse_item_snapshot
from listing_sync.database.models import Listing, ListingSource, MarketplaceConnection
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.services.catalog_fallback import CatalogFallbackStrategy
from listing_sync.services.context import SyncContext
from listing_sync.services.listing_merge import ListingMergeEngine
from listing_sync.services.orders_sync import OrdersSyncService
from listing_sync.services.price_resolver import PriceResolver
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import (
    AuthenticationError, AuthRevokedError, ListingSyncError, SyncCancelledError,
)
from listing_sync.utils.logger import get_logger
from listing_sync.utils.transaction import savepoint_scope

logger = get_logger(__name__)


class CatalogSyncService:
    """
    Synchronizes listings from the marketplace into the database.

    Partial failures end up in ``result.errors``; only connection-level auth
    failures propagate.
    """

    def __init__(self, db: Session, connection: MarketplaceConnection, client: MarketplaceClient,
                 config: Optional[ListingSyncConfig] = None):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.client = client
        self.config = config or get_config()
        self.merge = ListingMergeEngine(db, self.tenant_id, connection.id, connection.marketplace)
        self.prices = PriceResolver(client, self.config)
        self.fallback = CatalogFallbackStrategy(
            client, self.config,
            ledger_item_ids=OrdersSyncService(db, connection, client, self.config).fetch_order_item_ids,
        )

    def sync_catalog(self, ctx: SyncContext, max_listings: Optional[int] = None) -> CatalogSyncResult:
        """
        Discover the seller's catalog and merge every fetched listing.

        Returns:
            CatalogSyncResult with processed/created/updated/skipped counters,
            the candidate source and any per-listing errors
        """
        started = utcnow()
        result = CatalogSyncResult()
        max_listings = max_listings or self.config.sync.max_listings_per_sync

        logger.info(f"Starting catalog sync for tenant {self.tenant_id} (request {ctx.request_id})")

        try:
            ctx.check("catalog")
            candidates = self.fallback.resolve_candidates()
        except SyncCancelledError as e:
            result.add_error(e)
            return result

        result.source = candidates.source.value
        result.discovery_blocked = candidates.discovery_blocked
        result.orders_processed = candidates.orders_processed
        result.unique_item_ids = len(candidates.item_ids)

        if candidates.error is not None:
            result.add_error(candidates.error)

        item_ids = self.prioritize(candidates.item_ids, max_listings)
        if len(item_ids) < len(candidates.item_ids):
            logger.info(f"Processing {len(item_ids)} of {len(candidates.item_ids)} candidates this run")

        self.sync_items(
            item_ids, ctx, result,
            provenance=candidates.source,
            discovery_blocked=candidates.used_fallback,
        )

        duration = (utcnow() - started).total_seconds()
        logger.info(
            f"Catalog sync for tenant {self.tenant_id} finished in {duration:.2f}s: "
            f"processed={result.processed} created={result.created} updated={result.updated} "
            f"skipped={result.skipped} source={result.source} errors={len(result.errors)}"
        )
        return result

    def prioritize(self, item_ids: Sequence[str], limit: int) -> List[str]:
        """Never-synced ids first (candidate order), then the least recently synced."""
        if len(item_ids) <= limit:
            return list(item_ids)

        known = self.merge.find_many(item_ids)
        fresh = [item_id for item_id in item_ids if item_id not in known]
        stale = sorted(
            (item_id for item_id in item_ids if item_id in known),
            key=lambda item_id: known[item_id].last_synced_at or datetime.min,
        )
        return (fresh + stale)[:limit]

    def sync_items(self, item_ids: Sequence[str], ctx: SyncContext, result: CatalogSyncResult,
                   provenance: Optional[ListingSource] = None,
                   discovery_blocked: Optional[bool] = None) -> CatalogSyncResult:
        """Fetch details for ``item_ids`` and merge them; commits after every batch."""
        if not item_ids:
            return result

        try:
            for batch in self.client.fetch_items(item_ids):
                existing = self.merge.find_many(item_id for item_id, _ in batch)
                for item_id, fetched in batch:
                    self._merge_one(item_id, fetched, existing.get(item_id), ctx, result,
                                    provenance, discovery_blocked)
                self.db.commit()
        except SyncCancelledError as e:
            self.db.commit()
            logger.warning(f"Catalog sync for tenant {self.tenant_id} stopped at deadline")
            result.add_error(e)

        return result

    def _merge_one(self, item_id: str, fetched, listing: Optional[Listing], ctx: SyncContext,
                   result: CatalogSyncResult, provenance, discovery_blocked) -> None:
        if not fetched.ok:
            result.skipped += 1
            result.add_error(fetched, item_id)
            with savepoint_scope(self.db):
                self.merge.mark_access_failure(item_id, fetched, listing=listing)
            return

        try:
            snapshot = parse_item_snapshot(fetched.value, fetched.status)
            # May refresh and commit the connection's token, so it runs outside the savepoint
            prices = self.prices.resolve(listing, fetched.value, force=ctx.force_prices)
            with savepoint_scope(self.db):
                outcome = self.merge.upsert(
                    snapshot,
                    provenance=provenance,
                    discovery_blocked=discovery_blocked,
                    prices=prices,
                    existing=listing,
                )
        except (AuthRevokedError, AuthenticationError, SyncCancelledError):
            raise
        except (ListingSyncError, SQLAlchemyError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to merge listing {item_id}: {e}")
            result.skipped += 1
            result.add_error(e, item_id)
            return

        result.processed += 1
        if outcome.created:
            result.created += 1
        elif outcome.updated:
            result.updated += 1


def sync_catalog(db: Session, connection: MarketplaceConnection, client: MarketplaceClient,
                 ctx: SyncContext, config: Optional[ListingSyncConfig] = None) -> CatalogSyncResult:
    return CatalogSyncService(db, connection, client, config).sync_catalog(ctx)
