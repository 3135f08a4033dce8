"""
Mercado Livre API client implementation.

Thin HTTP layer: builds requests, enforces the provider's page-size ceiling,
and turns every non-2xx response or transport failure into a classified
exception. Token lifecycle, auth-retry and rate-limit retry live one level up
in ``listing_sync.marketplaces.mercadolivre``.

Endpoints:
- GET  /sites/{site}/search?seller_id=            public catalog discovery
- GET  /items?ids=a,b                              bulk detail (<= 20 ids)
- GET  /items/{id}/prices                          buyer-facing prices
- GET  /items/{id}/visits/time_window              daily visits
- GET  /orders/search?seller=                      order search
- GET  /orders/{id}                                order detail
- POST /oauth/token                                refresh-token grant
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from listing_sync.utils.config import MercadoLivreAPIConfig, get_config
from listing_sync.utils.exceptions import (
    APIError, ConfigurationError, NetworkError, RequestTimeoutError,
    ValidationError, handle_api_error,
)
from listing_sync.utils.logger import get_logger


logger = get_logger(__name__)


def format_provider_datetime(value: datetime) -> str:
    """Timestamp format accepted by order search filters (naive UTC input)."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.000-00:00")


class MercadoLivreAPIClient:
    """
    Mercado Livre REST client.

    One instance per connection/run; ``set_access_token`` swaps the bearer
    token after a refresh without rebuilding the session.
    """

    def __init__(self, access_token: Optional[str] = None,
                 config: Optional[MercadoLivreAPIConfig] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            access_token: OAuth bearer token (not needed for public/OAuth calls)
            config: API configuration, defaults to the global config
            session: Pre-built session (tests inject fakes here)
        """
        self.config = config or get_config().mercadolivre
        self.base_url = self.config.base_url
        self.timeout = self.config.timeout
        self.page_size_cap = self.config.page_size_cap
        self.access_token = access_token

        if session is None:
            session = requests.Session()
            # Transport-level retries only for gateway hiccups; 429 is handled above us
            retry_strategy = Retry(
                total=2,
                backoff_factor=0.5,
                status_forcelist=[502, 503, 504],
                allowed_methods=["GET"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)

        self.session = session
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "ListingSync/1.0",
        })

        logger.debug(f"Initialized Mercado Livre API client for {self.base_url}")

    def set_access_token(self, access_token: Optional[str]) -> None:
        self.access_token = access_token

    def clamp_limit(self, limit: int) -> int:
        """Clamp a requested page size to the provider ceiling."""
        clamped = max(1, min(int(limit), self.page_size_cap))
        if clamped != limit:
            logger.debug(f"Page size {limit} clamped to {clamped}")
        return clamped

    def _make_request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                      data: Optional[Dict[str, Any]] = None, authenticated: bool = True,
                      timeout: Optional[float] = None) -> Any:
        """
        Make HTTP request with error handling.

        Returns:
            Decoded JSON body (None for an empty body)

        Raises:
            APIError subclass matching the failure
        """
        url = f"{self.base_url}{path}"
        headers = {}
        if authenticated and self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        effective_timeout = timeout or self.timeout

        try:
            logger.debug(f"Making {method} request to {path} params={params}")
            response = self.session.request(
                method, url, params=params, data=data, headers=headers, timeout=effective_timeout
            )
        except requests.exceptions.Timeout:
            raise RequestTimeoutError(f"Request timeout after {effective_timeout}s", endpoint=path)
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Connection failed to {path}: {e}", endpoint=path)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed: {e}", endpoint=path)

        if not response.ok:
            handle_api_error(response, path)

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            raise APIError(
                "Response body is not valid JSON",
                status_code=response.status_code,
                endpoint=path,
            )

    # -- catalog -------------------------------------------------------------

    def search_seller_items(self, seller_id: str, offset: int = 0, limit: int = 50,
                            timeout: Optional[float] = None) -> Dict[str, Any]:
        """Public search for a seller's items; returns ``{results, paging}``."""
        params = {
            "seller_id": seller_id,
            "offset": offset,
            "limit": self.clamp_limit(limit),
        }
        return self._make_request(
            "GET", f"/sites/{self.config.site_id}/search",
            params=params, authenticated=False, timeout=timeout,
        ) or {}

    def get_items(self, item_ids: Sequence[str], timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Bulk detail; returns ``[{code, body}, ...]`` in request order."""
        if not item_ids:
            raise ValidationError("At least one item id is required", field="item_ids")
        if len(item_ids) > self.config.detail_batch_size:
            raise ValidationError(
                f"At most {self.config.detail_batch_size} ids per bulk call",
                field="item_ids", value=len(item_ids),
            )
        return self._make_request(
            "GET", "/items", params={"ids": ",".join(item_ids)}, timeout=timeout
        ) or []

    def get_item_prices(self, item_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._make_request("GET", f"/items/{item_id}/prices", timeout=timeout) or {}

    def get_item_visits(self, item_id: str, last: int, unit: str = "day",
                        timeout: Optional[float] = None) -> Any:
        if last <= 0:
            raise ValidationError("Visits window must be positive", field="last", value=last)
        return self._make_request(
            "GET", f"/items/{item_id}/visits/time_window",
            params={"last": last, "unit": unit}, timeout=timeout,
        )

    # -- orders --------------------------------------------------------------

    def search_orders(self, seller_id: str, date_from: datetime, date_to: Optional[datetime] = None,
                      offset: int = 0, limit: int = 50,
                      timeout: Optional[float] = None) -> Dict[str, Any]:
        """Order search, newest first; returns ``{results, paging}``."""
        params = {
            "seller": seller_id,
            "order.date_created.from": format_provider_datetime(date_from),
            "sort": "date_desc",
            "offset": offset,
            "limit": self.clamp_limit(limit),
        }
        if date_to is not None:
            params["order.date_created.to"] = format_provider_datetime(date_to)
        return self._make_request("GET", "/orders/search", params=params, timeout=timeout) or {}

    def get_order(self, order_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._make_request("GET", f"/orders/{order_id}", timeout=timeout)

    # -- oauth ---------------------------------------------------------------

    def exchange_refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Refresh-token grant.

        Returns:
            ``{access_token, refresh_token, expires_in, ...}``
        """
        if not self.config.client_id or not self.config.client_secret:
            raise ConfigurationError("ML_CLIENT_ID and ML_CLIENT_SECRET are required to refresh tokens")

        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
        }
        return self._make_request("POST", "/oauth/token", data=data, authenticated=False) or {}
