"""
Unit tests for the resilient Mercado Livre marketplace client
"""
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import FakeResponse, FakeSession, item_payload
from listing_sync.api.client import MercadoLivreAPIClient
from listing_sync.marketplaces.mercadolivre import MercadoLivreMarketplaceClient, chunked
from listing_sync.services.context import SyncContext
from listing_sync.services.token_manager import TokenResult
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import (
    AuthRevokedError,
    AuthenticationError,
    ErrorType,
    PolicyBlockedError,
    SyncCancelledError,
)


POLICY_BODY = {
    "code": "PA_UNAUTHORIZED_RESULT_FROM_POLICIES",
    "blocked_by": "PolicyAgent",
    "message": "At least one policy returned UNAUTHORIZED.",
}


@pytest.fixture
def token_manager():
    manager = MagicMock()
    manager.get_valid_token.return_value = TokenResult(token="APP_USR-valid", used_refresh=False, expires_at=None)
    manager.force_refresh.return_value = TokenResult(token="APP_USR-new", used_refresh=True, expires_at=None)
    return manager


@pytest.fixture
def sleep():
    return MagicMock()


def build_client(config, session, token_manager, sleep, ctx=None):
    api = MercadoLivreAPIClient(config=config.mercadolivre, session=session)
    connection = SimpleNamespace(id="conn-1", provider_account_id="2019955315")
    return MercadoLivreMarketplaceClient(
        connection, token_manager, ctx=ctx, api_client=api, config=config, sleep=sleep
    )


@pytest.fixture
def client(config, fake_session, token_manager, sleep):
    return build_client(config, fake_session, token_manager, sleep)


class TestAuthRetry:
    """Test the single refresh and retry after a 401"""

    def test_refresh_then_retry(self, client, fake_session, token_manager):
        fake_session.queue(
            FakeResponse(401, {"message": "invalid access token"}),
            FakeResponse(200, {"prices": []}),
        )

        result = client.fetch_item_prices("MLB1")

        assert result.ok is True
        token_manager.force_refresh.assert_called_once_with("conn-1")
        assert fake_session.calls[0]["headers"]["Authorization"] == "Bearer APP_USR-valid"
        assert fake_session.calls[1]["headers"]["Authorization"] == "Bearer APP_USR-new"

    def test_second_401_propagates(self, client, fake_session, token_manager):
        fake_session.queue(
            FakeResponse(401, {"message": "invalid access token"}),
            FakeResponse(401, {"message": "invalid access token"}),
        )

        with pytest.raises(AuthenticationError):
            client.fetch_item_prices("MLB1")

        assert len(fake_session.calls) == 2
        token_manager.force_refresh.assert_called_once()

    def test_revoked_refresh_propagates(self, client, fake_session, token_manager):
        token_manager.force_refresh.side_effect = AuthRevokedError("Refresh token rejected", connection_id="conn-1")
        fake_session.queue(FakeResponse(401, {"message": "invalid access token"}))

        with pytest.raises(AuthRevokedError):
            client.fetch_item_prices("MLB1")

    def test_token_resolved_once_per_client(self, client, fake_session, token_manager):
        fake_session.queue(FakeResponse(200, {"prices": []}), FakeResponse(200, {"prices": []}))

        client.fetch_item_prices("MLB1")
        client.fetch_item_prices("MLB2")

        token_manager.get_valid_token.assert_called_once_with("conn-1")


class TestRateLimit:
    """Test the single fixed-backoff retry on 429"""

    def test_retried_once(self, client, fake_session, sleep):
        fake_session.queue(
            FakeResponse(429, {"message": "too many requests"}),
            FakeResponse(200, {"prices": []}),
        )

        result = client.fetch_item_prices("MLB1")

        assert result.ok is True
        sleep.assert_called_once_with(0.01)

    def test_second_429_is_tagged(self, client, fake_session, sleep):
        fake_session.queue(
            FakeResponse(429, {"message": "too many requests"}),
            FakeResponse(429, {"message": "too many requests"}),
        )

        result = client.fetch_item_prices("MLB1")

        assert result.ok is False
        assert result.error_type is ErrorType.RATE_LIMIT
        assert result.status == 429
        assert len(fake_session.calls) == 2
        assert sleep.call_count == 1


class TestBulkDetail:
    """Test per-item tagging inside bulk detail"""

    def test_entries_tagged_individually(self, client, fake_session):
        fake_session.queue(FakeResponse(200, [
            {"code": 200, "body": item_payload("MLB1")},
            {"code": 403, "body": POLICY_BODY},
            {"code": 404, "body": {"message": "Item not found", "error": "not_found"}},
        ]))

        batches = list(client.fetch_items(["MLB1", "MLB2", "MLB3"]))

        assert len(batches) == 1
        results = dict(batches[0])
        assert results["MLB1"].ok is True
        assert results["MLB1"].value["id"] == "MLB1"
        assert results["MLB2"].error_type is ErrorType.POLICY_BLOCKED
        assert results["MLB2"].error_code == "PA_UNAUTHORIZED_RESULT_FROM_POLICIES"
        assert results["MLB2"].status == 403
        assert results["MLB3"].error_type is ErrorType.NOT_FOUND
        assert results["MLB3"].error_code == "not_found"

    def test_entries_matched_by_id(self, client, fake_session):
        fake_session.queue(FakeResponse(200, [
            {"code": 200, "body": item_payload("MLB2")},
            {"code": 200, "body": item_payload("MLB1")},
        ]))

        results = dict(next(client.fetch_items(["MLB1", "MLB2"])))

        assert results["MLB1"].value["id"] == "MLB1"
        assert results["MLB2"].value["id"] == "MLB2"

    def test_missing_entry(self, client, fake_session):
        fake_session.queue(FakeResponse(200, [{"code": 200, "body": item_payload("MLB1")}]))

        results = dict(next(client.fetch_items(["MLB1", "MLB2"])))

        assert results["MLB2"].ok is False
        assert results["MLB2"].error_type is ErrorType.CLIENT_ERROR

    def test_failed_batch_tags_every_item(self, client, fake_session):
        fake_session.queue(FakeResponse(500, {"message": "internal"}))

        results = next(client.fetch_items(["MLB1", "MLB2"]))

        assert [item_id for item_id, _ in results] == ["MLB1", "MLB2"]
        assert all(r.error_type is ErrorType.SERVER_ERROR for _, r in results)

    def test_batches_of_twenty(self, client, fake_session):
        ids = [f"MLB{i}" for i in range(25)]
        fake_session.queue(
            FakeResponse(200, [{"code": 200, "body": item_payload(i)} for i in ids[:20]]),
            FakeResponse(200, [{"code": 200, "body": item_payload(i)} for i in ids[20:]]),
        )

        batches = list(client.fetch_items(ids))

        assert [len(b) for b in batches] == [20, 5]
        assert fake_session.calls[1]["params"]["ids"] == ",".join(ids[20:])


class TestDiscovery:
    """Test public search paging"""

    def test_pages_until_total(self, client, fake_session, token_manager):
        fake_session.queue(
            FakeResponse(200, {"results": [{"id": "MLB1"}, {"id": "MLB2"}], "paging": {"total": 3}}),
            FakeResponse(200, {"results": ["MLB2", "MLB3"], "paging": {"total": 3}}),
        )

        ids = client.discover_item_ids()

        assert ids == ["MLB1", "MLB2", "MLB3"]
        assert fake_session.calls[1]["params"]["offset"] == 2
        token_manager.get_valid_token.assert_not_called()

    def test_stops_on_empty_page(self, client, fake_session):
        fake_session.queue(FakeResponse(200, {"results": [], "paging": {"total": 10}}))

        assert client.discover_item_ids() == []
        assert len(fake_session.calls) == 1

    def test_max_items(self, client, fake_session):
        fake_session.queue(FakeResponse(200, {
            "results": [{"id": f"MLB{i}"} for i in range(5)], "paging": {"total": 100},
        }))

        assert client.discover_item_ids(max_items=3) == ["MLB0", "MLB1", "MLB2"]

    def test_policy_block_raises(self, client, fake_session):
        fake_session.queue(FakeResponse(403, POLICY_BODY))

        with pytest.raises(PolicyBlockedError):
            client.discover_item_ids()


class TestOrders:
    """Test order paging and single-order fetch"""

    def test_pages_until_short_page(self, client, fake_session):
        first = [{"id": i} for i in range(50)]
        second = [{"id": i} for i in range(50, 60)]
        fake_session.queue(
            FakeResponse(200, {"results": first, "paging": {"total": 60}}),
            FakeResponse(200, {"results": second, "paging": {"total": 60}}),
        )

        pages = list(client.iter_order_pages(datetime(2024, 1, 1)))

        assert [len(p) for p in pages] == [50, 10]
        assert fake_session.calls[0]["params"]["limit"] == 50
        assert fake_session.calls[1]["params"]["offset"] == 50

    def test_fetch_orders_flattens(self, client, fake_session):
        fake_session.queue(FakeResponse(200, {"results": [{"id": 1}, {"id": 2}], "paging": {"total": 2}}))

        assert [o["id"] for o in client.fetch_orders(datetime(2024, 1, 1))] == [1, 2]

    def test_order_not_found(self, client, fake_session):
        fake_session.queue(FakeResponse(404, {"message": "Order not found"}))
        assert client.fetch_order("999") is None


class TestVisits:
    """Test traffic fetch outcomes"""

    def test_points(self, client, fake_session):
        fake_session.queue(FakeResponse(200, {"visits": [{"date": "2024-01-01T00:00:00Z", "total": 4}]}))

        result = client.fetch_item_visits("MLB1", days=7)

        assert result.ok is True
        assert result.by_date() == {"2024-01-01": 4}
        assert fake_session.calls[0]["params"] == {"last": 7, "unit": "day"}

    def test_unknown_shape_is_empty_success(self, client, fake_session):
        fake_session.queue(FakeResponse(200, {"total_visits": 12}))

        result = client.fetch_item_visits("MLB1", days=7)

        assert result.ok is True
        assert result.raw_shape == "unknown"
        assert result.visits == []

    def test_failure(self, client, fake_session):
        fake_session.queue(FakeResponse(403, {"message": "forbidden"}))

        result = client.fetch_item_visits("MLB1", days=7)

        assert result.ok is False
        assert result.status == 403
        assert result.error_type is ErrorType.FORBIDDEN


class TestDeadline:

    def test_expired_context_stops_before_calling(self, config, fake_session, token_manager, sleep):
        ctx = SyncContext(tenant_id="t", deadline=utcnow() - timedelta(seconds=1))
        client = build_client(config, fake_session, token_manager, sleep, ctx=ctx)

        with pytest.raises(SyncCancelledError):
            client.fetch_item_prices("MLB1")
        assert fake_session.calls == []


def test_chunked():
    assert list(chunked(["a", "b", "c"], 2)) == [["a", "b"], ["c"]]
