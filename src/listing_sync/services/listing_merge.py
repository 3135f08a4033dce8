"""
Idempotent merge of fetched listing snapshots into persisted listings.

Field behaviour comes from ``LISTING_FIELD_POLICIES``; this module adds the
parts that are not per-field policies: provenance, price fields, and the
per-listing access state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from listing_sync.core.merge_policy import (
    LISTING_CREATE_DEFAULTS, LISTING_FIELD_POLICIES, apply_policies, creation_values, same_value,
)
from listing_sync.core.models import FetchResult, ListingSnapshot, PriceResolution
from listing_sync.database.models import AccessStatus, Listing, ListingSource, MarketplaceType
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import ErrorType
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Error classes that say something about access to this one listing
ACCESS_STATE_BY_ERROR = {
    ErrorType.POLICY_BLOCKED: AccessStatus.BLOCKED_BY_POLICY,
    ErrorType.UNAUTHORIZED: AccessStatus.UNAUTHORIZED,
    ErrorType.FORBIDDEN: AccessStatus.UNAUTHORIZED,
}

PRICE_FIELDS = ("price_final", "original_price", "discount_percent", "has_promotion")
MAX_BLOCK_REASON_LENGTH = 500


@dataclass
class MergeOutcome:
    listing: Listing
    created: bool
    changed_fields: List[str] = field(default_factory=list)

    @property
    def updated(self) -> bool:
        return not self.created and bool(self.changed_fields)


def snapshot_values(snapshot: ListingSnapshot) -> Dict[str, Any]:
    return {name: getattr(snapshot, name) for name in LISTING_FIELD_POLICIES}


class ListingMergeEngine:
    """Merges snapshots for one tenant; the caller owns the transaction."""

    def __init__(self, db: Session, tenant_id: Any, connection_id: Any = None,
                 marketplace: str = MarketplaceType.MERCADOLIVRE.value):
        self.db = db
        self.tenant_id = tenant_id
        self.connection_id = connection_id
        self.marketplace = marketplace

    def find(self, external_id: str) -> Optional[Listing]:
        return self.db.query(Listing).filter(
            Listing.tenant_id == self.tenant_id,
            Listing.marketplace == self.marketplace,
            Listing.external_id == external_id,
        ).first()

    def find_many(self, external_ids: Iterable[str]) -> Dict[str, Listing]:
        external_ids = list(external_ids)
        if not external_ids:
            return {}
        rows = self.db.query(Listing).filter(
            Listing.tenant_id == self.tenant_id,
            Listing.marketplace == self.marketplace,
            Listing.external_id.in_(external_ids),
        ).all()
        return {row.external_id: row for row in rows}

    def upsert(self, snapshot: ListingSnapshot, provenance: Optional[ListingSource] = None,
               discovery_blocked: Optional[bool] = None, prices: Optional[PriceResolution] = None,
               existing: Optional[Listing] = None, now: Optional[datetime] = None) -> MergeOutcome:
        """
        Create or update the listing for ``snapshot``.

        Args:
            snapshot: Normalized detail fetch
            provenance: Channel that produced the snapshot; None leaves it unchanged
            discovery_blocked: New discovery-blocked flag; None leaves it unchanged
            prices: Resolved buyer prices; fields stay as they are when it carries no price
            existing: Listing already loaded by the caller, if any
            now: Timestamp for sync and check stamps

        A successful snapshot always heals the access state to ``accessible``.
        """
        now = now or utcnow()
        listing = existing if existing is not None else self.find(snapshot.external_id)
        incoming = snapshot_values(snapshot)

        if listing is None:
            listing = Listing(
                tenant_id=self.tenant_id,
                connection_id=self.connection_id,
                marketplace=self.marketplace,
                external_id=snapshot.external_id,
                source=(provenance or ListingSource.DISCOVERY).value,
                discovery_blocked=bool(discovery_blocked),
                access_status=AccessStatus.ACCESSIBLE.value,
                has_promotion=False,
                last_synced_at=now,
                created_at=now,
                updated_at=now,
                **creation_values(incoming, LISTING_FIELD_POLICIES, LISTING_CREATE_DEFAULTS),
            )
            self._apply_prices(listing, prices, now)
            self.db.add(listing)
            self.db.flush()
            logger.debug(f"Created listing {snapshot.external_id} for tenant {self.tenant_id}")
            return MergeOutcome(listing=listing, created=True)

        changed = apply_policies(listing, incoming, LISTING_FIELD_POLICIES)

        if provenance is not None and listing.source != provenance.value:
            listing.source = provenance.value
            changed.append("source")
        if discovery_blocked is not None and listing.discovery_blocked != discovery_blocked:
            listing.discovery_blocked = discovery_blocked
            changed.append("discovery_blocked")
        if self.connection_id is not None and listing.connection_id != self.connection_id:
            listing.connection_id = self.connection_id
            changed.append("connection_id")

        changed.extend(self._apply_prices(listing, prices, now))
        if self.mark_accessible(listing):
            changed.append("access_status")

        listing.last_synced_at = now
        if changed:
            listing.updated_at = now
            logger.debug(f"Updated listing {listing.external_id}: {changed}")

        self.db.flush()
        return MergeOutcome(listing=listing, created=False, changed_fields=changed)

    def _apply_prices(self, listing: Listing, prices: Optional[PriceResolution], now: datetime) -> List[str]:
        if prices is None:
            return []

        if prices.checked:
            listing.promotion_checked_at = now

        if prices.price_final is None:
            return []

        changed = []
        for name in PRICE_FIELDS:
            value = getattr(prices, name)
            if not same_value(getattr(listing, name), value):
                setattr(listing, name, value)
                changed.append(name)
        return changed

    def mark_accessible(self, listing: Listing) -> bool:
        """Heal a listing after a successful detail fetch; True when something changed."""
        if (listing.access_status == AccessStatus.ACCESSIBLE.value
                and listing.access_blocked_code is None
                and listing.access_blocked_reason is None
                and listing.access_blocked_at is None):
            return False

        if listing.access_status != AccessStatus.ACCESSIBLE.value:
            logger.info(f"Listing {listing.external_id} is accessible again (was {listing.access_status})")
        listing.access_status = AccessStatus.ACCESSIBLE.value
        listing.access_blocked_code = None
        listing.access_blocked_reason = None
        listing.access_blocked_at = None
        return True

    def mark_access_failure(self, external_id: str, result: FetchResult,
                            listing: Optional[Listing] = None,
                            now: Optional[datetime] = None) -> Optional[Listing]:
        """
        Record a failed detail fetch on the affected listing only.

        Policy blocks and auth-type denials change the access state; transient
        failures (rate limit, server, network) leave it alone.

        Returns:
            The listing when its access state was written, else None
        """
        target = ACCESS_STATE_BY_ERROR.get(result.error_type)
        if target is None:
            return None

        listing = listing if listing is not None else self.find(external_id)
        if listing is None:
            return None

        now = now or utcnow()
        code = result.error_code or (f"http_{result.status}" if result.status else result.error_type.value)

        listing.access_status = target.value
        listing.access_blocked_code = code[:100]
        listing.access_blocked_reason = (result.message or "")[:MAX_BLOCK_REASON_LENGTH]
        listing.access_blocked_at = now
        listing.updated_at = now
        self.db.flush()

        logger.warning(f"Listing {external_id} marked {target.value} ({code})")
        return listing
