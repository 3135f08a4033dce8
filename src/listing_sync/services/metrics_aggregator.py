"""
Daily listing metrics.

Two independent passes write ``listing_metrics_daily``:

- traffic: one time-window call per listing; a day the provider reports is
  stored with its count (0 included); any other day, and every day of a
  failed fetch, is written as NULL (unknown)
- orders: computed locally from the order ledger, always numeric

Each pass upserts only the columns it owns, so the passes can run in any
order, or concurrently, against the same rows.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from listing_sync.core.models import FetchResult, MetricsSyncResult, VisitsResult
from listing_sync.database.models import (
    Listing, ListingMetricDaily, ListingStatus, MarketplaceConnection, Order, OrderItem,
    OrderStatus, ORDERS_SOURCE, VISITS_SOURCE,
)
from listing_sync.database.upsert import upsert_column_scoped
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.services.context import SyncContext
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import iter_days, utcnow
from listing_sync.utils.exceptions import (
    AuthenticationError, AuthRevokedError, ErrorType, SyncCancelledError, ValidationError,
)
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)

METRIC_KEY = ("tenant_id", "listing_id", "date")
TRAFFIC_COLUMNS = ("visits", "source", "period_days")
ORDER_COLUMNS = ("orders", "gmv")
UPSERT_CHUNK_SIZE = 50
RECENT_WINDOW_DAYS = 7


def _chunks(rows: List[Dict[str, Any]], size: int = UPSERT_CHUNK_SIZE):
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def traffic_window_days(date_from: date, today: date) -> int:
    """``last=N`` for the traffic endpoint so the window reaches back to ``date_from``."""
    return max(1, (today - date_from).days + 1)


def build_traffic_rows(tenant_id: Any, listing_id: Any, days: Sequence[date],
                       visits: VisitsResult, period_days: int) -> List[Dict[str, Any]]:
    """One row per day; days the fetch did not report (or a failed fetch) carry ``visits=None``."""
    counts = visits.by_date() if visits.ok else {}
    return [
        {
            "tenant_id": tenant_id,
            "listing_id": listing_id,
            "date": day,
            "visits": counts.get(day.isoformat()),
            "source": VISITS_SOURCE,
            "period_days": period_days,
            "orders": 0,
            "gmv": 0,
        }
        for day in days
    ]


class MetricsAggregator:
    def __init__(self, db: Session, connection: MarketplaceConnection, client: MarketplaceClient,
                 config: Optional[ListingSyncConfig] = None):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.client = client
        self.config = config or get_config()

    def _listings(self) -> List[Listing]:
        return self.db.query(Listing).filter(
            Listing.tenant_id == self.tenant_id,
            Listing.marketplace == self.connection.marketplace,
            Listing.status != ListingStatus.DELETED.value,
        ).order_by(Listing.created_at, Listing.external_id).limit(
            self.config.sync.max_listings_per_sync
        ).all()

    @staticmethod
    def _validate_range(date_from: date, date_to: date) -> List[date]:
        if date_from > date_to:
            raise ValidationError(
                "date_from must not be after date_to",
                field="date_from", value=date_from.isoformat(),
            )
        return list(iter_days(date_from, date_to))

    def sync_metrics(self, date_from: date, date_to: date, ctx: SyncContext,
                     listings: Optional[List[Listing]] = None) -> MetricsSyncResult:
        """
        Write one row per listing per day in ``[date_from, date_to]``.

        Raises:
            ValidationError: inverted range
            AuthRevokedError: connection needs reauthorization
        """
        days = self._validate_range(date_from, date_to)
        listings = listings if listings is not None else self._listings()

        result = MetricsSyncResult(
            listings_processed=len(listings),
            min_date=date_from.isoformat(),
            max_date=date_to.isoformat(),
        )
        if not listings:
            logger.info(f"No listings to aggregate for tenant {self.tenant_id}")
            return result

        logger.info(
            f"Aggregating metrics for tenant {self.tenant_id}: {len(listings)} listings, "
            f"{date_from} to {date_to}"
        )

        self.sync_traffic(date_from, date_to, ctx, listings=listings, result=result)
        self.sync_order_metrics(date_from, date_to, listings=listings, result=result)
        self.refresh_listing_counters(listings, date_to)
        self.db.commit()

        result.rows_upserted = len(listings) * len(days)
        logger.info(
            f"Metrics for tenant {self.tenant_id}: {result.rows_upserted} rows, "
            f"{len(result.errors)} errors"
        )
        return result

    # -- traffic -------------------------------------------------------------

    def sync_traffic(self, date_from: date, date_to: date, ctx: SyncContext,
                     listings: Optional[List[Listing]] = None,
                     result: Optional[MetricsSyncResult] = None) -> MetricsSyncResult:
        """Fetch visits with bounded concurrency, then write traffic columns only."""
        days = self._validate_range(date_from, date_to)
        listings = listings if listings is not None else self._listings()
        result = result or MetricsSyncResult(listings_processed=len(listings))

        window = traffic_window_days(date_from, utcnow().date())
        fetched = self._fetch_visits(listings, window, ctx, result)

        rows = []
        for listing in listings:
            visits = fetched.get(listing.id)
            if visits is None:
                # Not fetched before the deadline; nothing is known about these days
                visits = VisitsResult(ok=False, error_type=ErrorType.TIMEOUT)
            elif not visits.ok:
                result.add_error(_visits_error(visits), listing.external_id)
            rows.extend(build_traffic_rows(self.tenant_id, listing.id, days, visits, window))

        for chunk in _chunks(rows):
            upsert_column_scoped(
                self.db, ListingMetricDaily, chunk,
                conflict_columns=METRIC_KEY,
                update_columns=TRAFFIC_COLUMNS,
            )
        self.db.commit()
        return result

    def _fetch_visits(self, listings: List[Listing], window: int, ctx: SyncContext,
                      result: MetricsSyncResult) -> Dict[Any, VisitsResult]:
        fetched: Dict[Any, VisitsResult] = {}
        workers = self.config.sync.metrics_concurrency

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="visits") as executor:
            futures = {
                executor.submit(self.client.fetch_item_visits, listing.external_id, window): listing
                for listing in listings
            }
            try:
                for future in as_completed(futures):
                    listing = futures[future]
                    fetched[listing.id] = future.result()
            except SyncCancelledError as e:
                logger.warning(f"Traffic fetch for tenant {self.tenant_id} stopped at deadline")
                result.add_error(e)
                for future in futures:
                    future.cancel()
            except (AuthRevokedError, AuthenticationError):
                for future in futures:
                    future.cancel()
                raise

        return fetched

    # -- orders --------------------------------------------------------------

    def sync_order_metrics(self, date_from: date, date_to: date,
                           listings: Optional[List[Listing]] = None,
                           result: Optional[MetricsSyncResult] = None) -> MetricsSyncResult:
        """Aggregate ledger orders per listing per day and write order columns only."""
        days = self._validate_range(date_from, date_to)
        listings = listings if listings is not None else self._listings()
        result = result or MetricsSyncResult(listings_processed=len(listings))

        aggregates = self.aggregate_orders([listing.id for listing in listings], date_from, date_to)

        rows = []
        for listing in listings:
            for day in days:
                order_ids, gmv = aggregates.get((listing.id, day), (set(), 0.0))
                rows.append({
                    "tenant_id": self.tenant_id,
                    "listing_id": listing.id,
                    "date": day,
                    "visits": None,
                    "source": ORDERS_SOURCE,
                    "period_days": None,
                    "orders": len(order_ids),
                    "gmv": round(gmv, 2),
                })

        for chunk in _chunks(rows):
            upsert_column_scoped(
                self.db, ListingMetricDaily, chunk,
                conflict_columns=METRIC_KEY,
                update_columns=ORDER_COLUMNS,
            )
        self.db.commit()
        return result

    def aggregate_orders(self, listing_ids: List[Any], date_from: date,
                         date_to: date) -> Dict[Tuple[Any, date], Tuple[set, float]]:
        """
        Distinct orders and line totals per (listing, day).

        Orders are bucketed by paid date, falling back to order date;
        cancelled orders are excluded.
        """
        if not listing_ids:
            return {}

        bucket_at = func.coalesce(Order.paid_date, Order.order_date)
        start = datetime.combine(date_from, datetime.min.time())
        end = datetime.combine(date_to + timedelta(days=1), datetime.min.time())

        rows = self.db.query(
            OrderItem.listing_id, Order.id, bucket_at, OrderItem.total_price,
        ).join(Order, OrderItem.order_id == Order.id).filter(
            Order.tenant_id == self.tenant_id,
            Order.status != OrderStatus.CANCELLED.value,
            OrderItem.listing_id.in_(listing_ids),
            bucket_at >= start,
            bucket_at < end,
        ).all()

        aggregates: Dict[Tuple[Any, date], Tuple[set, float]] = defaultdict(lambda: (set(), 0.0))
        for listing_id, order_id, bucketed, total_price in rows:
            key = (listing_id, _as_datetime(bucketed).date())
            order_ids, gmv = aggregates[key]
            order_ids.add(order_id)
            aggregates[key] = (order_ids, gmv + float(total_price or 0))
        return dict(aggregates)

    # -- listing counters ----------------------------------------------------

    def refresh_listing_counters(self, listings: List[Listing], as_of: date) -> None:
        """Roll the last 7 days of metric rows up into ``visits_last_7d``/``sales_last_7d``."""
        since = as_of - timedelta(days=RECENT_WINDOW_DAYS - 1)
        self.db.flush()

        totals = {
            listing_id: (visits, known_days, orders)
            for listing_id, visits, known_days, orders in self.db.query(
                ListingMetricDaily.listing_id,
                func.sum(ListingMetricDaily.visits),
                func.count(ListingMetricDaily.visits),
                func.sum(ListingMetricDaily.orders),
            ).filter(
                ListingMetricDaily.tenant_id == self.tenant_id,
                ListingMetricDaily.listing_id.in_([listing.id for listing in listings]),
                ListingMetricDaily.date >= since,
                ListingMetricDaily.date <= as_of,
            ).group_by(ListingMetricDaily.listing_id).all()
        }

        for listing in listings:
            visits, known_days, orders = totals.get(listing.id, (None, 0, None))
            # Unknown traffic leaves the last known counter in place
            if known_days:
                listing.visits_last_7d = int(visits)
            if orders is not None:
                listing.sales_last_7d = int(orders)


def _visits_error(visits: VisitsResult) -> FetchResult:
    return FetchResult.failure(
        visits.error_type or ErrorType.CLIENT_ERROR,
        visits.message or "Visits fetch failed",
        status=visits.status,
    )


def _as_datetime(value: Any) -> datetime:
    # SQLite hands COALESCE results back as strings
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
