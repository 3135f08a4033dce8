"""
Order ledger: one Order per provider order, with its line items.
"""

import enum
import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, Numeric, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship

from listing_sync.utils.dates import utcnow
from .base import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    marketplace = Column(String(50), nullable=False, default="mercadolivre")
    external_order_id = Column(String(64), nullable=False)

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    currency_id = Column(String(8), nullable=True)
    buyer_id = Column(String(64), nullable=True)
    buyer_nickname = Column(String(255), nullable=True)

    order_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", "external_order_id", name="uq_orders_tenant_marketplace_external"),
        Index("ix_orders_tenant_order_date", "tenant_id", "order_date"),
    )

    def __repr__(self):
        return f"<Order(external_order_id='{self.external_order_id}', status='{self.status}')>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # Resolved at insert time; null when the listing is not known yet
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=True, index=True)
    listing_external_id = Column(String(64), nullable=False)

    title = Column(String(500), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(14, 2), nullable=False, default=0)

    order = relationship("Order", back_populates="items")
