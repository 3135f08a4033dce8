"""
ListingMetricDaily model - one row per (tenant, listing, day).

``visits`` is NULL when the count is unknown and 0 only when the provider
confirmed zero visits. ``orders``/``gmv`` are computed locally and always
numeric.
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, Date, DateTime, Numeric, ForeignKey, Index, UniqueConstraint, Uuid,
)

from listing_sync.utils.dates import utcnow
from .base import Base


VISITS_SOURCE = "ml_visits_api_daily"
ORDERS_SOURCE = "local_orders"


class ListingMetricDaily(Base):
    __tablename__ = "listing_metrics_daily"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)

    # Owned by the traffic pass
    visits = Column(Integer, nullable=True)
    source = Column(String(50), nullable=True)
    period_days = Column(Integer, nullable=True)

    # Owned by the orders pass
    orders = Column(Integer, nullable=False, default=0)
    gmv = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "listing_id", "date", name="uq_metrics_tenant_listing_date"),
        Index("ix_metrics_tenant_date", "tenant_id", "date"),
    )

    def __repr__(self):
        return f"<ListingMetricDaily(listing_id={self.listing_id}, date={self.date}, visits={self.visits}, orders={self.orders})>"
