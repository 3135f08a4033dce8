"""
SyncLog model - history of sync operations.
"""

import uuid

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, Text, JSON, Uuid
from sqlalchemy.orm import relationship

from listing_sync.utils.dates import utcnow
from .base import Base


class SyncLog(Base):
    """Log entry for each tenant sync run triggered by a worker or the CLI."""

    __tablename__ = "sync_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    # full | catalog | orders | metrics | reconcile
    sync_type = Column(String(20), nullable=False, default="full")
    # in_progress | success | completed_with_errors | error | reauth_required | skipped
    status = Column(String(50), nullable=False)
    listings_synced = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    errors = Column(JSON, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", back_populates="sync_logs")

    __table_args__ = (
        Index("ix_sync_logs_tenant_started", "tenant_id", "started_at"),
        Index("ix_sync_logs_status", "status"),
    )

    def __repr__(self):
        return f"<SyncLog(id={self.id}, tenant_id={self.tenant_id}, status='{self.status}', listings={self.listings_synced})>"
