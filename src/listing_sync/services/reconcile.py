"""
Access and status reconciliation.

Re-fetches every persisted listing's detail in bulk batches and updates only
its business status and access state. A successful fetch heals a blocked
listing; a policy or auth denial marks it.
"""

from typing import Optional

from sqlalchemy.orm import Session

from listing_sync.core.calculator import map_listing_status
from listing_sync.core.models import ReconcileResult
from listing_sync.database.models import AccessStatus, Listing, MarketplaceConnection
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.services.context import SyncContext
from listing_sync.services.listing_merge import ACCESS_STATE_BY_ERROR, ListingMergeEngine
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import SyncCancelledError
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


class ReconcileService:
    def __init__(self, db: Session, connection: MarketplaceConnection, client: MarketplaceClient):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.client = client
        self.merge = ListingMergeEngine(db, self.tenant_id, connection.id, connection.marketplace)

    def reconcile_access_and_status(self, ctx: SyncContext) -> ReconcileResult:
        result = ReconcileResult()
        listings = self.db.query(Listing).filter(
            Listing.tenant_id == self.tenant_id,
            Listing.marketplace == self.connection.marketplace,
        ).order_by(Listing.external_id).all()

        if not listings:
            return result

        by_external_id = {listing.external_id: listing for listing in listings}
        logger.info(f"Reconciling {len(listings)} listings for tenant {self.tenant_id}")

        try:
            ctx.check("reconcile")
            for batch in self.client.fetch_items(list(by_external_id)):
                now = utcnow()
                for item_id, fetched in batch:
                    listing = by_external_id[item_id]
                    result.checked += 1
                    before = (listing.status, listing.access_status)

                    if fetched.ok:
                        listing.status = map_listing_status(fetched.value.get("status"))
                        self.merge.mark_accessible(listing)
                    elif fetched.error_type in ACCESS_STATE_BY_ERROR:
                        self.merge.mark_access_failure(item_id, fetched, listing=listing, now=now)
                        if listing.access_status == AccessStatus.BLOCKED_BY_POLICY.value:
                            result.blocked_by_policy += 1
                        else:
                            result.unauthorized += 1
                    else:
                        result.add_error(fetched, item_id)

                    if (listing.status, listing.access_status) != before:
                        listing.updated_at = now
                        result.updated += 1
                self.db.commit()
        except SyncCancelledError as e:
            self.db.commit()
            logger.warning(f"Reconcile for tenant {self.tenant_id} stopped at deadline")
            result.add_error(e)

        logger.info(
            f"Reconcile for tenant {self.tenant_id}: checked={result.checked} updated={result.updated} "
            f"blocked_by_policy={result.blocked_by_policy} unauthorized={result.unauthorized}"
        )
        return result


def reconcile_access_and_status(db: Session, connection: MarketplaceConnection, client: MarketplaceClient,
                                ctx: SyncContext) -> ReconcileResult:
    return ReconcileService(db, connection, client).reconcile_access_and_status(ctx)
