"""
Factory for creating marketplace clients for a resolved connection.
"""

from typing import Optional

from listing_sync.database.models import MarketplaceConnection, MarketplaceType
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.marketplaces.mercadolivre import MercadoLivreMarketplaceClient
from listing_sync.services.context import SyncContext
from listing_sync.services.token_manager import TokenManager
from listing_sync.utils.config import ListingSyncConfig
from listing_sync.utils.exceptions import ConfigurationError
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


def create_marketplace_client(connection: MarketplaceConnection, token_manager: TokenManager,
                              ctx: Optional[SyncContext] = None,
                              config: Optional[ListingSyncConfig] = None) -> MarketplaceClient:
    """
    Create the client matching the connection's marketplace.

    Raises:
        ConfigurationError: marketplace not supported
    """
    if connection.marketplace == MarketplaceType.MERCADOLIVRE.value:
        logger.debug(f"Creating Mercado Livre client for connection {connection.id}")
        return MercadoLivreMarketplaceClient(connection, token_manager, ctx=ctx, config=config)

    raise ConfigurationError(f"Unsupported marketplace: {connection.marketplace}")
