"""
Resilient Mercado Livre client.

Wraps ``MercadoLivreAPIClient`` with:
- token acquisition through the token manager, and a single refresh plus a
  single retry after a 401 (a second 401 propagates)
- one fixed backoff and one retry on 429
- classification of every other failure into a tagged ``FetchResult`` for
  per-entity calls, so bulk loops keep going
- run deadline checks between pages and batches
"""

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from listing_sync.api.client import MercadoLivreAPIClient
from listing_sync.core.models import FetchResult, VisitsResult
from listing_sync.core.parsers import parse_visits_payload, unwrap_item_entry
from listing_sync.database.models import MarketplaceConnection
from listing_sync.marketplaces.base import MarketplaceClient, OAuthCredentials
from listing_sync.services.context import SyncContext
from listing_sync.services.token_manager import TokenManager
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.exceptions import (
    APIError, AuthenticationError, ErrorType, NotFoundError, classify_status_code,
)
from listing_sync.utils.logger import get_logger
from listing_sync.utils.retry import rate_limit_retry_config, retry_call

logger = get_logger(__name__)

SEARCH_PAGE_SIZE = 50
ORDERS_PAGE_SIZE = 50


def chunked(values: Sequence[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


class MercadoLivreMarketplaceClient(MarketplaceClient):
    """Per-run client bound to one connection and one ``SyncContext``."""

    def __init__(self, connection: MarketplaceConnection, token_manager: TokenManager,
                 ctx: Optional[SyncContext] = None,
                 api_client: Optional[MercadoLivreAPIClient] = None,
                 config: Optional[ListingSyncConfig] = None,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(OAuthCredentials(
            connection_id=connection.id,
            provider_account_id=connection.provider_account_id,
        ))
        self.config = config or get_config()
        self.api = api_client or MercadoLivreAPIClient(config=self.config.mercadolivre)
        self.token_manager = token_manager
        self.ctx = ctx
        self._sleep = sleep
        self._auth_lock = threading.Lock()
        self._token_ready = False
        self._rate_limit_retry = rate_limit_retry_config(self.config.mercadolivre.rate_limit_backoff_seconds)

    @property
    def marketplace_name(self) -> str:
        return "mercadolivre"

    # -- plumbing ------------------------------------------------------------

    def _timeout(self) -> float:
        default = float(self.config.mercadolivre.timeout)
        return self.ctx.call_timeout(default) if self.ctx else default

    def _check(self, phase: str) -> None:
        if self.ctx:
            self.ctx.check(phase)

    def _ensure_token(self) -> None:
        with self._auth_lock:
            if not self._token_ready:
                result = self.token_manager.get_valid_token(self.credentials.connection_id)
                self.api.set_access_token(result.token)
                self._token_ready = True

    def _refresh_after_auth_failure(self, stale_token: Optional[str]) -> None:
        with self._auth_lock:
            # Another worker thread may have refreshed already
            if self.api.access_token != stale_token:
                return
            result = self.token_manager.force_refresh(self.credentials.connection_id)
            self.api.set_access_token(result.token)

    def _with_rate_limit_retry(self, fn: Callable[[], Any]) -> Any:
        return retry_call(fn, self._rate_limit_retry, sleep=self._sleep)

    def execute_with_auth_retry(self, fn: Callable[[], Any]) -> Any:
        """
        Run ``fn``; after a 401 refresh the token once and retry ``fn`` once.

        Raises:
            AuthRevokedError: refresh rejected
            AuthenticationError: still 401 after the refresh
        """
        self._ensure_token()
        token_used = self.api.access_token
        try:
            return self._with_rate_limit_retry(fn)
        except AuthenticationError:
            logger.warning(f"401 for connection {self.credentials.connection_id}, refreshing token and retrying once")
            self._refresh_after_auth_failure(token_used)
            return self._with_rate_limit_retry(fn)

    # -- catalog -------------------------------------------------------------

    def discover_item_ids(self, max_items: Optional[int] = None) -> List[str]:
        """
        Page through public seller search.

        Raises:
            PolicyBlockedError: discovery rejected for this account
            APIError: any other failure
        """
        seller_id = self.credentials.provider_account_id
        offset_cap = self.config.mercadolivre.search_offset_cap
        item_ids: List[str] = []
        seen = set()
        offset = 0

        while True:
            self._check("discovery")
            if offset >= offset_cap:
                logger.warning(f"Discovery for seller {seller_id} stopped at offset cap {offset_cap}")
                break

            data = self._with_rate_limit_retry(
                lambda: self.api.search_seller_items(
                    seller_id, offset=offset, limit=SEARCH_PAGE_SIZE, timeout=self._timeout()
                )
            )
            results = data.get("results") or []
            for result in results:
                item_id = result.get("id") if isinstance(result, dict) else result
                if item_id and item_id not in seen:
                    seen.add(item_id)
                    item_ids.append(str(item_id))

            total = (data.get("paging") or {}).get("total") or 0
            offset += len(results)

            if not results or offset >= total:
                break
            if max_items and len(item_ids) >= max_items:
                item_ids = item_ids[:max_items]
                break

        logger.info(f"Discovery found {len(item_ids)} items for seller {seller_id}")
        return item_ids

    def fetch_items(self, item_ids: Sequence[str]) -> Iterator[List[Tuple[str, FetchResult]]]:
        batch_size = self.config.mercadolivre.detail_batch_size

        for batch in chunked(list(item_ids), batch_size):
            self._check("detail")
            try:
                entries = self.execute_with_auth_retry(
                    lambda: self.api.get_items(batch, timeout=self._timeout())
                )
            except AuthenticationError:
                raise
            except APIError as e:
                logger.warning(f"Bulk detail failed for {len(batch)} items: {e}")
                failure = FetchResult.from_exception(e)
                yield [(item_id, failure) for item_id in batch]
                continue

            yield self._unwrap_batch(batch, entries)

    def _unwrap_batch(self, batch: List[str], entries: Any) -> List[Tuple[str, FetchResult]]:
        entries = entries if isinstance(entries, list) else []
        by_id: Dict[str, Tuple[Optional[int], Any]] = {}
        positional: List[Tuple[Optional[int], Any]] = []

        for entry in entries:
            status, body = unwrap_item_entry(entry)
            positional.append((status, body))
            if isinstance(body, dict) and body.get("id"):
                by_id[str(body["id"])] = (status, body)

        results = []
        for index, item_id in enumerate(batch):
            status, body = by_id.get(item_id) or (positional[index] if index < len(positional) else (None, None))

            if status == 200 and isinstance(body, dict):
                results.append((item_id, FetchResult.success(body, status=200)))
                continue

            if status is None:
                results.append((item_id, FetchResult.failure(
                    ErrorType.CLIENT_ERROR, "Item missing from bulk detail response"
                )))
                continue

            body = body if isinstance(body, dict) else {}
            results.append((item_id, FetchResult.failure(
                classify_status_code(status, body),
                body.get("message") or f"Item detail returned {status}",
                status=status,
                error_code=body.get("code") or body.get("error"),
            )))

        return results

    def fetch_item_prices(self, item_id: str) -> FetchResult:
        self._check("prices")
        try:
            payload = self.execute_with_auth_retry(
                lambda: self.api.get_item_prices(item_id, timeout=self._timeout())
            )
        except AuthenticationError:
            raise
        except APIError as e:
            logger.warning(f"Prices fetch failed for {item_id}: {e}")
            return FetchResult.from_exception(e)
        return FetchResult.success(payload)

    def fetch_item_visits(self, item_id: str, days: int) -> VisitsResult:
        self._check("visits")
        try:
            payload = self.execute_with_auth_retry(
                lambda: self.api.get_item_visits(item_id, last=days, unit="day", timeout=self._timeout())
            )
        except AuthenticationError:
            raise
        except APIError as e:
            logger.warning(f"Visits fetch failed for {item_id}: {e}")
            return VisitsResult(
                ok=False,
                status=e.status_code,
                error_type=e.error_type,
                message=e.message,
            )

        raw_shape, points = parse_visits_payload(payload)
        if raw_shape is None:
            logger.warning(f"Unrecognized visits payload shape for {item_id}: {type(payload).__name__}")
            raw_shape = "unknown"

        return VisitsResult(ok=True, status=200, visits=points, raw_shape=raw_shape)

    # -- orders --------------------------------------------------------------

    def iter_order_pages(self, date_from: datetime,
                         date_to: Optional[datetime] = None) -> Iterator[List[Dict[str, Any]]]:
        seller_id = self.credentials.provider_account_id
        page_size = self.api.clamp_limit(ORDERS_PAGE_SIZE)
        offset = 0

        while True:
            self._check("orders")
            data = self.execute_with_auth_retry(
                lambda: self.api.search_orders(
                    seller_id, date_from, date_to, offset=offset, limit=page_size, timeout=self._timeout()
                )
            )
            results = data.get("results") or []
            if results:
                yield results

            total = (data.get("paging") or {}).get("total") or 0
            offset += len(results)
            if len(results) < page_size or offset >= total:
                break

    def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        self._check("order")
        try:
            return self.execute_with_auth_retry(
                lambda: self.api.get_order(order_id, timeout=self._timeout())
            )
        except NotFoundError:
            logger.info(f"Order {order_id} not found at provider")
            return None
