"""
Test configuration and fixtures for Listing Sync
"""
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, Iterator, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("LOG_DIR", os.path.join(os.path.dirname(__file__), ".logs"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

from listing_sync.core.models import FetchResult, VisitPoint, VisitsResult
from listing_sync.database.models import (
    Base, ConnectionStatus, Listing, MarketplaceConnection, Tenant,
)
from listing_sync.marketplaces.base import MarketplaceClient, OAuthCredentials
from listing_sync.services.context import SyncContext
from listing_sync.utils.config import ListingSyncConfig
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import ErrorType


# =============================================================================
# Test Database Setup
# =============================================================================

@pytest.fixture(scope="session")
def engine():
    """In-memory SQLite engine shared by the whole session"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs these two hooks for SAVEPOINT to work
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Generator[Session, None, None]:
    """Session per test; every table is emptied afterwards"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config() -> ListingSyncConfig:
    """Configuration with fast backoff and credentials set"""
    return ListingSyncConfig(
        database_url="sqlite://",
        ml_client_id="client-id",
        ml_client_secret="client-secret",
        ml_api_base_url="https://api.test.local",
        rate_limit_backoff_seconds=0.01,
        use_ml_prices_for_promo=False,
    )


@pytest.fixture
def prices_config() -> ListingSyncConfig:
    """Configuration with the authoritative pricing endpoint enabled"""
    return ListingSyncConfig(
        database_url="sqlite://",
        ml_api_base_url="https://api.test.local",
        use_ml_prices_for_promo=True,
        promo_prices_ttl_hours=12,
    )


# =============================================================================
# Test Data Fixtures
# =============================================================================

@pytest.fixture
def tenant(db_session) -> Tenant:
    tenant = Tenant(name="Loja Teste", slug=f"loja-{uuid.uuid4().hex[:8]}", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


def make_connection(db_session, tenant, **overrides) -> MarketplaceConnection:
    now = utcnow()
    values = {
        "tenant_id": tenant.id,
        "provider_account_id": "2019955315",
        "access_token": "APP_USR-valid",
        "refresh_token": "TG-refresh",
        "expires_at": now + timedelta(hours=6),
        "status": ConnectionStatus.ACTIVE.value,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    connection = MarketplaceConnection(**values)
    db_session.add(connection)
    db_session.commit()
    return connection


@pytest.fixture
def connection(db_session, tenant) -> MarketplaceConnection:
    return make_connection(db_session, tenant)


def make_listing(db_session, tenant, external_id="MLB100", **overrides) -> Listing:
    now = utcnow()
    values = {
        "tenant_id": tenant.id,
        "marketplace": "mercadolivre",
        "external_id": external_id,
        "title": "Fone de Ouvido Bluetooth",
        "price": 99.90,
        "stock": 10,
        "status": "active",
        "access_status": "accessible",
        "has_promotion": False,
        "discovery_blocked": False,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    listing = Listing(**values)
    db_session.add(listing)
    db_session.commit()
    return listing


@pytest.fixture
def ctx(tenant) -> SyncContext:
    return SyncContext(tenant_id=tenant.id)


def item_payload(item_id="MLB100", **overrides) -> Dict[str, Any]:
    """Item detail body as returned inside a multiget entry"""
    payload = {
        "id": item_id,
        "title": "Fone de Ouvido Bluetooth Sem Fio",
        "price": 99.90,
        "available_quantity": 25,
        "status": "active",
        "category_id": "MLB1234",
        "permalink": f"https://produto.mercadolivre.com.br/{item_id}",
        "thumbnail": "http://http2.mlstatic.com/D_1.jpg",
        "pictures": [{"secure_url": "https://img/1.jpg"}, {"secure_url": "https://img/2.jpg"}],
        "variations": [],
        "health": 0.8,
    }
    payload.update(overrides)
    return payload


def order_payload(order_id=2000001, item_id="MLB100", quantity=1, unit_price=50.0,
                  status="paid", date_created="2024-01-15T10:30:00.000-03:00",
                  date_approved: Optional[str] = "2024-01-15T11:00:00.000-03:00") -> Dict[str, Any]:
    payments = []
    if date_approved:
        payments.append({"status": "approved", "date_approved": date_approved})
    return {
        "id": order_id,
        "status": status,
        "date_created": date_created,
        "total_amount": quantity * unit_price,
        "currency_id": "BRL",
        "buyer": {"id": 555, "nickname": "COMPRADOR"},
        "payments": payments,
        "order_items": [
            {"item": {"id": item_id, "title": "Fone"}, "quantity": quantity, "unit_price": unit_price},
        ],
    }


# =============================================================================
# Fake HTTP transport
# =============================================================================

class FakeResponse:
    """Minimal stand-in for requests.Response"""

    def __init__(self, status_code=200, json_data=None, headers=None, text=None):
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        if text is not None:
            self.content = text.encode()
        else:
            self.content = b"" if json_data is None else b"{...}"

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Records requests and replays queued responses (or raises queued exceptions)"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}

    def queue(self, *responses) -> "FakeSession":
        self.responses.extend(responses)
        return self

    def request(self, method, url, params=None, data=None, headers=None, timeout=None):
        self.calls.append({
            "method": method, "url": url, "params": params,
            "data": data, "headers": headers, "timeout": timeout,
        })
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


# =============================================================================
# Fake marketplace client
# =============================================================================

class FakeMarketplaceClient(MarketplaceClient):
    """
    In-memory marketplace client for service tests.

    ``items`` maps external id -> item payload or a failed FetchResult;
    ``discovery`` is a list of ids or an exception to raise.
    """

    def __init__(self, items=None, discovery=None, orders=None, visits=None, prices=None,
                 batch_size=20):
        super().__init__(OAuthCredentials(connection_id=None, provider_account_id="2019955315"))
        self.items: Dict[str, Any] = items or {}
        self.discovery = discovery if discovery is not None else list(self.items)
        self.orders: List[Dict[str, Any]] = orders or []
        self.visits: Dict[str, VisitsResult] = visits or {}
        self.prices: Dict[str, Any] = prices or {}
        self.batch_size = batch_size
        self.calls: Dict[str, int] = {"discover": 0, "items": 0, "prices": 0, "visits": 0, "orders": 0}

    @property
    def marketplace_name(self) -> str:
        return "mercadolivre"

    def discover_item_ids(self, max_items=None) -> List[str]:
        self.calls["discover"] += 1
        if isinstance(self.discovery, Exception):
            raise self.discovery
        return list(self.discovery)

    def fetch_items(self, item_ids: Sequence[str]) -> Iterator[List[Tuple[str, FetchResult]]]:
        ids = list(item_ids)
        for start in range(0, len(ids), self.batch_size):
            self.calls["items"] += 1
            batch = []
            for item_id in ids[start:start + self.batch_size]:
                value = self.items.get(item_id)
                if isinstance(value, FetchResult):
                    batch.append((item_id, value))
                elif value is None:
                    batch.append((item_id, FetchResult.failure(ErrorType.NOT_FOUND, "not found", status=404)))
                else:
                    batch.append((item_id, FetchResult.success(value)))
            yield batch

    def fetch_item_prices(self, item_id: str) -> FetchResult:
        self.calls["prices"] += 1
        value = self.prices.get(item_id, {"prices": []})
        if isinstance(value, FetchResult):
            return value
        return FetchResult.success(value)

    def fetch_item_visits(self, item_id: str, days: int) -> VisitsResult:
        self.calls["visits"] += 1
        return self.visits.get(item_id, VisitsResult(ok=True, status=200, raw_shape="visits"))

    def iter_order_pages(self, date_from: datetime, date_to=None):
        self.calls["orders"] += 1
        if isinstance(self.orders, Exception):
            raise self.orders
        if self.orders:
            yield list(self.orders)

    def fetch_order(self, order_id: str):
        for order in self.orders:
            if str(order["id"]) == str(order_id):
                return order
        return None


def visits_result(*points: Tuple[str, int]) -> VisitsResult:
    return VisitsResult(
        ok=True, status=200, raw_shape="visits",
        visits=[VisitPoint(date=day, visits=count) for day, count in points],
    )
