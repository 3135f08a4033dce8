"""
Tenant model - a seller account whose marketplace data is synchronized.
"""

from datetime import datetime
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from listing_sync.utils.dates import utcnow
from .base import Base


class Tenant(Base):
    """
    Organizational unit owning connections, listings, orders and metrics.

    ``last_sync_*`` columns are maintained by the tenant sync orchestrator.
    """

    __tablename__ = "tenants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # running | success | error
    last_sync_status = Column(String(20), nullable=True)
    last_sync_started_at = Column(DateTime, nullable=True)
    last_sync_finished_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    connections = relationship("MarketplaceConnection", back_populates="tenant", lazy="selectin")
    sync_logs = relationship("SyncLog", back_populates="tenant")

    def __repr__(self):
        return f"<Tenant(id={self.id}, name='{self.name}', slug='{self.slug}')>"
