"""
SQLAlchemy database models for the multi-tenant listing sync engine.

Models:
- Tenant: seller account
- MarketplaceConnection: OAuth grant per seller account (history kept)
- Listing: catalog entity
- Order / OrderItem: order ledger
- ListingMetricDaily: per-listing per-day traffic and sales
- SyncLog: sync run history
"""

from .base import Base
from .tenant import Tenant
from .connection import MarketplaceConnection, MarketplaceType, ConnectionStatus
from .listing import Listing, ListingStatus, AccessStatus, ListingSource
from .order import Order, OrderItem, OrderStatus
from .metric import ListingMetricDaily, VISITS_SOURCE, ORDERS_SOURCE
from .sync_log import SyncLog

__all__ = [
    "Base",
    "Tenant",
    "MarketplaceConnection",
    "MarketplaceType",
    "ConnectionStatus",
    "Listing",
    "ListingStatus",
    "AccessStatus",
    "ListingSource",
    "Order",
    "OrderItem",
    "OrderStatus",
    "ListingMetricDaily",
    "VISITS_SOURCE",
    "ORDERS_SOURCE",
    "SyncLog",
]
