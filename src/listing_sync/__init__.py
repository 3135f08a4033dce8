"""
Listing Sync

Multi-tenant synchronization engine for Mercado Livre seller accounts:
OAuth token lifecycle, catalog discovery with an orders fallback, idempotent
listing merge, buyer price resolution and daily traffic/sales metrics.
"""

__version__ = "1.0.0"
__author__ = "Listing Sync Team"
