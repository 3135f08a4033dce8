"""
Order ledger synchronization.

Orders are upserted by (tenant, marketplace, external order id) and their
line items replaced wholesale. Each line resolves to a listing by external
id at write time; unknown listings leave ``listing_id`` empty.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_sync.core.models import OrderSnapshot, OrderSyncResult
from listing_sync.core.parsers import parse_order_snapshot
from listing_sync.database.models import (
    Listing, MarketplaceConnection, Order, OrderItem, OrderStatus,
)
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.services.context import SyncContext
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import (
    APIError, AuthenticationError, AuthRevokedError, ListingSyncError, SyncCancelledError,
    ValidationError,
)
from listing_sync.utils.logger import get_logger
from listing_sync.utils.transaction import savepoint_scope

logger = get_logger(__name__)


def _line_key(lines) -> List[Tuple[str, int, float]]:
    return sorted(
        (line.listing_external_id, int(line.quantity), round(float(line.unit_price), 2))
        for line in lines
    )


class OrdersSyncService:
    def __init__(self, db: Session, connection: MarketplaceConnection, client: MarketplaceClient,
                 config: Optional[ListingSyncConfig] = None):
        self.db = db
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.marketplace = connection.marketplace
        self.client = client
        self.config = config or get_config()

    def sync_orders(self, date_from: datetime, date_to: Optional[datetime],
                    ctx: SyncContext) -> OrderSyncResult:
        """
        Pull orders created in ``[date_from, date_to]`` into the ledger.

        Raises:
            ValidationError: inverted date range (checked before any call)
            AuthRevokedError: connection needs reauthorization
        """
        if date_to is not None and date_from > date_to:
            raise ValidationError(
                "date_from must not be after date_to",
                field="date_from", value=date_from.isoformat(),
            )

        result = OrderSyncResult()
        logger.info(f"Starting orders sync for tenant {self.tenant_id} from {date_from} to {date_to or 'now'}")

        try:
            for page in self.client.iter_order_pages(date_from, date_to):
                listing_ids = self._listing_ids_for(page)
                for payload in page:
                    self._sync_one(payload, listing_ids, result)
                self.db.commit()
        except (AuthRevokedError, AuthenticationError):
            self.db.commit()
            raise
        except SyncCancelledError as e:
            self.db.commit()
            logger.warning(f"Orders sync for tenant {self.tenant_id} stopped at deadline")
            result.add_error(e)
        except APIError as e:
            self.db.commit()
            logger.error(f"Order search failed for tenant {self.tenant_id}: {e}")
            result.add_error(e)

        result.total_gmv = round(result.total_gmv, 2)
        logger.info(
            f"Orders sync for tenant {self.tenant_id}: processed={result.processed} "
            f"created={result.created} updated={result.updated} gmv={result.total_gmv}"
        )
        return result

    def _sync_one(self, payload: Dict[str, Any], listing_ids: Dict[str, Any], result: OrderSyncResult) -> None:
        order_id = payload.get("id")
        try:
            with savepoint_scope(self.db):
                snapshot = parse_order_snapshot(payload)
                _, created, changed = self.upsert_order(snapshot, listing_ids)
        except (ListingSyncError, SQLAlchemyError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to sync order {order_id}: {e}")
            result.add_error(e, str(order_id) if order_id is not None else None)
            return

        result.processed += 1
        if created:
            result.created += 1
        elif changed:
            result.updated += 1
        if snapshot.status != OrderStatus.CANCELLED.value:
            result.total_gmv += snapshot.total_amount

    def _listing_ids_for(self, orders: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        external_ids = {
            str((entry.get("item") or {}).get("id"))
            for order in orders
            for entry in order.get("order_items") or []
            if (entry.get("item") or {}).get("id")
        }
        if not external_ids:
            return {}
        rows = self.db.query(Listing.external_id, Listing.id).filter(
            Listing.tenant_id == self.tenant_id,
            Listing.marketplace == self.marketplace,
            Listing.external_id.in_(external_ids),
        ).all()
        return {external_id: listing_id for external_id, listing_id in rows}

    def upsert_order(self, snapshot: OrderSnapshot,
                     listing_ids: Optional[Dict[str, Any]] = None) -> Tuple[Order, bool, bool]:
        """
        Insert or update one order and replace its lines.

        Returns:
            (order, created, changed)
        """
        if listing_ids is None:
            listing_ids = self._listing_ids_for([{
                "order_items": [{"item": {"id": line.listing_external_id}} for line in snapshot.lines]
            }])

        now = utcnow()
        order = self.db.query(Order).filter(
            Order.tenant_id == self.tenant_id,
            Order.marketplace == self.marketplace,
            Order.external_order_id == snapshot.external_order_id,
        ).first()

        created = order is None
        if created:
            order = Order(
                tenant_id=self.tenant_id,
                marketplace=self.marketplace,
                external_order_id=snapshot.external_order_id,
                created_at=now,
            )
            self.db.add(order)
            changed = True
        else:
            changed = (
                order.status != snapshot.status
                or float(order.total_amount or 0) != round(snapshot.total_amount, 2)
                or order.paid_date != snapshot.paid_date
                or _line_key(order.items) != _line_key(snapshot.lines)
            )

        order.status = snapshot.status
        order.total_amount = snapshot.total_amount
        order.currency_id = snapshot.currency_id
        order.buyer_id = snapshot.buyer_id
        order.buyer_nickname = snapshot.buyer_nickname
        order.order_date = snapshot.order_date
        order.paid_date = snapshot.paid_date

        if created or changed:
            order.items = [
                OrderItem(
                    listing_id=listing_ids.get(line.listing_external_id),
                    listing_external_id=line.listing_external_id,
                    title=line.title,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                )
                for line in snapshot.lines
            ]
            order.updated_at = now

        self.db.flush()
        return order, created, changed

    def process_order_by_id(self, order_id: str, ctx: SyncContext) -> Optional[Order]:
        """
        Sync a single order, as triggered by an order notification.

        Returns:
            The stored order, or None when the provider does not know it
        """
        ctx.check("order_notification")
        payload = self.client.fetch_order(str(order_id))
        if payload is None:
            return None

        order, created, changed = self.upsert_order(parse_order_snapshot(payload))
        self.db.commit()
        logger.info(
            f"Order {order_id} for tenant {self.tenant_id} "
            f"{'created' if created else 'updated' if changed else 'unchanged'}"
        )
        return order

    def fetch_order_item_ids(self, lookback_days: Optional[int] = None) -> List[str]:
        """Distinct listing external ids referenced by ledger orders within the lookback."""
        lookback_days = lookback_days or self.config.sync.orders_fallback_lookback_days
        since = utcnow() - timedelta(days=lookback_days)

        rows = self.db.query(OrderItem.listing_external_id).join(Order).filter(
            Order.tenant_id == self.tenant_id,
            Order.marketplace == self.marketplace,
            Order.order_date >= since,
        ).distinct().all()
        return sorted(row[0] for row in rows if row[0])
