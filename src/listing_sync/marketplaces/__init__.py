"""Marketplace client interface and the Mercado Livre implementation."""

from .base import MarketplaceClient, OAuthCredentials
from .mercadolivre import MercadoLivreMarketplaceClient
from .factory import create_marketplace_client

__all__ = [
    "MarketplaceClient",
    "OAuthCredentials",
    "MercadoLivreMarketplaceClient",
    "create_marketplace_client",
]
