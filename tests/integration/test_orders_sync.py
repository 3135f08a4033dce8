"""
Integration tests for the order ledger
"""
from datetime import datetime

import pytest

from conftest import FakeMarketplaceClient, make_listing, order_payload
from listing_sync.database.models import Order, OrderItem
from listing_sync.services.orders_sync import OrdersSyncService
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import ServerError, ValidationError

pytestmark = pytest.mark.integration

DATE_FROM = datetime(2024, 1, 1)
DATE_TO = datetime(2024, 1, 31, 23, 59, 59)


@pytest.fixture
def orders():
    return [
        order_payload(1001, "MLB1", quantity=2, unit_price=50.0),
        order_payload(1002, "MLB404", quantity=1, unit_price=30.0),
        order_payload(1003, "MLB1", quantity=1, unit_price=20.0, status="cancelled"),
    ]


class TestSyncOrders:
    """Test order search ingestion"""

    def test_ingest(self, db_session, tenant, connection, config, ctx, orders):
        listing = make_listing(db_session, tenant, "MLB1")
        client = FakeMarketplaceClient(orders=orders)

        result = OrdersSyncService(db_session, connection, client, config).sync_orders(DATE_FROM, DATE_TO, ctx)

        assert result.processed == 3
        assert result.created == 3
        assert result.total_gmv == 130.0
        assert result.errors == []

        lines = {item.listing_external_id: item for item in db_session.query(OrderItem).all()}
        assert lines["MLB404"].listing_id is None
        assert db_session.query(OrderItem).filter_by(listing_id=listing.id).count() == 2

    def test_rerun_is_idempotent(self, db_session, tenant, connection, config, ctx, orders):
        client = FakeMarketplaceClient(orders=orders)
        service = OrdersSyncService(db_session, connection, client, config)

        service.sync_orders(DATE_FROM, DATE_TO, ctx)
        second = service.sync_orders(DATE_FROM, DATE_TO, ctx)

        assert second.created == 0
        assert second.updated == 0
        assert db_session.query(Order).filter_by(tenant_id=tenant.id).count() == 3
        assert db_session.query(OrderItem).count() == 3

    def test_status_change_updates(self, db_session, tenant, connection, config, ctx):
        client = FakeMarketplaceClient(orders=[order_payload(1001, "MLB1")])
        service = OrdersSyncService(db_session, connection, client, config)
        service.sync_orders(DATE_FROM, DATE_TO, ctx)

        client.orders = [order_payload(1001, "MLB1", status="delivered")]
        result = service.sync_orders(DATE_FROM, DATE_TO, ctx)

        db_session.expire_all()
        order = db_session.query(Order).filter_by(external_order_id="1001").one()
        assert result.updated == 1
        assert order.status == "delivered"
        assert len(order.items) == 1

    def test_malformed_order_isolated(self, db_session, tenant, connection, config, ctx):
        broken = order_payload(1002, "MLB1")
        broken["date_created"] = None
        client = FakeMarketplaceClient(orders=[order_payload(1001, "MLB1"), broken])

        result = OrdersSyncService(db_session, connection, client, config).sync_orders(DATE_FROM, DATE_TO, ctx)

        assert result.processed == 1
        assert result.errors[0]["external_id"] == "1002"

    def test_search_failure_recorded(self, db_session, connection, config, ctx):
        client = FakeMarketplaceClient(orders=ServerError("Server error: 502", status_code=502))

        result = OrdersSyncService(db_session, connection, client, config).sync_orders(DATE_FROM, DATE_TO, ctx)

        assert result.processed == 0
        assert result.errors[0]["error_type"] == "SERVER_ERROR"

    def test_inverted_range(self, db_session, connection, config, ctx):
        client = FakeMarketplaceClient(orders=[order_payload()])

        with pytest.raises(ValidationError):
            OrdersSyncService(db_session, connection, client, config).sync_orders(DATE_TO, DATE_FROM, ctx)
        assert client.calls["orders"] == 0


class TestSingleOrder:
    """Test notification-driven single order sync"""

    def test_process_order(self, db_session, tenant, connection, config, ctx):
        client = FakeMarketplaceClient(orders=[order_payload(2000001234, "MLB1", status="shipped")])

        order = OrdersSyncService(db_session, connection, client, config).process_order_by_id("2000001234", ctx)

        assert order.external_order_id == "2000001234"
        assert order.status == "shipped"
        assert db_session.query(Order).count() == 1

    def test_unknown_order(self, db_session, connection, config, ctx):
        client = FakeMarketplaceClient()
        assert OrdersSyncService(db_session, connection, client, config).process_order_by_id("1", ctx) is None


class TestLedgerItemIds:

    def test_distinct_sorted(self, db_session, connection, config, ctx):
        recent = utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
        client = FakeMarketplaceClient(orders=[
            order_payload(1, "MLB9", date_created=recent),
            order_payload(2, "MLB3", date_created=recent),
            order_payload(3, "MLB9", date_created=recent),
            order_payload(4, "MLB5"),
        ])
        service = OrdersSyncService(db_session, connection, client, config)
        service.sync_orders(DATE_FROM, None, ctx)

        assert service.fetch_order_item_ids(lookback_days=30) == ["MLB3", "MLB9"]
