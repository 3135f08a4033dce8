"""
MarketplaceConnection model - OAuth grant for one seller account.

A tenant may accumulate several connections over time (reconnection
history). Rows are never hard-deleted; the connection resolver picks the
current one.
"""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from listing_sync.utils.dates import utcnow
from .base import Base


class MarketplaceType(str, enum.Enum):
    """Supported marketplace types."""
    MERCADOLIVRE = "mercadolivre"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    REAUTH_REQUIRED = "reauth_required"


class MarketplaceConnection(Base):
    __tablename__ = "marketplace_connections"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    marketplace = Column(String(50), nullable=False, default=MarketplaceType.MERCADOLIVRE.value)

    # Seller user id at the provider
    provider_account_id = Column(String(64), nullable=False)

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    status = Column(String(32), nullable=False, default=ConnectionStatus.ACTIVE.value)
    last_error_code = Column(String(100), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="connections")

    __table_args__ = (
        Index("ix_connections_tenant_status", "tenant_id", "marketplace", "status"),
    )

    def __repr__(self):
        return (
            f"<MarketplaceConnection(id={self.id}, tenant_id={self.tenant_id}, "
            f"account='{self.provider_account_id}', status='{self.status}')>"
        )
