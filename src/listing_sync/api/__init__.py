"""Low-level HTTP access to the Mercado Livre REST API."""

from .client import MercadoLivreAPIClient

__all__ = ["MercadoLivreAPIClient"]
