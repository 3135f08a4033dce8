"""
Abstract base class for marketplace clients used by the sync services.

Services talk to this interface only; per-entity calls return tagged results
and only connection-level auth failures are raised.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from listing_sync.core.models import FetchResult, VisitsResult


@dataclass
class OAuthCredentials:
    """Identifies the connection whose tokens the client uses."""
    connection_id: Any
    provider_account_id: str


class MarketplaceClient(ABC):
    """
    Marketplace client interface.

    ``AuthRevokedError`` (and a repeated 401) propagate from every method;
    everything else is either tagged (per-entity calls) or raised as an
    ``APIError`` for the caller to record (list/search calls).
    """

    def __init__(self, credentials: OAuthCredentials):
        self.credentials = credentials

    @property
    @abstractmethod
    def marketplace_name(self) -> str:
        pass

    @abstractmethod
    def discover_item_ids(self, max_items: Optional[int] = None) -> List[str]:
        """Enumerate the seller's catalog through the low-cost discovery channel."""
        pass

    @abstractmethod
    def fetch_items(self, item_ids: Sequence[str]) -> Iterator[List[Tuple[str, FetchResult]]]:
        """Yield detail results per batch, in request order."""
        pass

    @abstractmethod
    def fetch_item_prices(self, item_id: str) -> FetchResult:
        pass

    @abstractmethod
    def fetch_item_visits(self, item_id: str, days: int) -> VisitsResult:
        pass

    @abstractmethod
    def iter_order_pages(self, date_from: datetime,
                         date_to: Optional[datetime] = None) -> Iterator[List[Dict[str, Any]]]:
        pass

    @abstractmethod
    def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Order payload, or None when the provider does not know the order."""
        pass

    def fetch_orders(self, date_from: datetime, date_to: Optional[datetime] = None) -> List[Dict[str, Any]]:
        orders = []
        for page in self.iter_order_pages(date_from, date_to):
            orders.extend(page)
        return orders
