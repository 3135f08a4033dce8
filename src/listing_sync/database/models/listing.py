"""
Listing model - a catalog entity (marketplace item) owned by a tenant.

Listings are created on the first successful fetch and only ever logically
deleted through ``status``.
"""

import enum
import uuid

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, Numeric, JSON,
    ForeignKey, Index, UniqueConstraint, Uuid,
)

from listing_sync.utils.dates import utcnow
from .base import Base


class ListingStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DELETED = "deleted"


class AccessStatus(str, enum.Enum):
    ACCESSIBLE = "accessible"
    UNAUTHORIZED = "unauthorized"
    BLOCKED_BY_POLICY = "blocked_by_policy"


class ListingSource(str, enum.Enum):
    """Provenance: the channel that most recently populated the listing."""
    DISCOVERY = "discovery"
    ORDERS_FALLBACK = "orders_fallback"
    RECONCILE = "reconcile"


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    connection_id = Column(Uuid(as_uuid=True), ForeignKey("marketplace_connections.id"), nullable=True)
    marketplace = Column(String(50), nullable=False, default="mercadolivre")
    external_id = Column(String(64), nullable=False)

    # Refreshed on every successful fetch
    title = Column(String(500), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ListingStatus.ACTIVE.value)
    health_score = Column(Float, nullable=True)
    category_id = Column(String(64), nullable=True)
    permalink = Column(String(500), nullable=True)

    # Refreshed only when present in the snapshot
    description = Column(Text, nullable=True)
    thumbnail = Column(String(500), nullable=True)
    pictures = Column(JSON, nullable=True)
    pictures_count = Column(Integer, nullable=True)
    variations_count = Column(Integer, nullable=True)
    visits_last_7d = Column(Integer, nullable=True)
    sales_last_7d = Column(Integer, nullable=True)

    # Tri-state, sticky once true
    has_video = Column(Boolean, nullable=True)
    has_clips = Column(Boolean, nullable=True)

    # Pricing; null until there is evidence
    price_final = Column(Numeric(12, 2), nullable=True)
    original_price = Column(Numeric(12, 2), nullable=True)
    discount_percent = Column(Integer, nullable=True)
    has_promotion = Column(Boolean, nullable=False, default=False)
    promotion_checked_at = Column(DateTime, nullable=True)

    access_status = Column(String(32), nullable=False, default=AccessStatus.ACCESSIBLE.value)
    access_blocked_code = Column(String(100), nullable=True)
    access_blocked_reason = Column(Text, nullable=True)
    access_blocked_at = Column(DateTime, nullable=True)

    source = Column(String(32), nullable=True)
    discovery_blocked = Column(Boolean, nullable=False, default=False)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", "external_id", name="uq_listings_tenant_marketplace_external"),
        Index("ix_listings_tenant_status", "tenant_id", "status"),
        Index("ix_listings_tenant_last_synced", "tenant_id", "last_synced_at"),
    )

    def __repr__(self):
        return f"<Listing(id={self.id}, external_id='{self.external_id}', status='{self.status}')>"
