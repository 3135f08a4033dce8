"""
Tenant sync orchestrator used by Celery tasks and the CLI.

Runs catalog -> orders -> metrics -> reconcile for one tenant against its
resolved connection, and records the outcome on the tenant row.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from listing_sync.core.models import (
    CatalogSyncResult, MetricsSyncResult, OrderSyncResult, ReconcileResult,
)
from listing_sync.database.models import MarketplaceConnection, Order, SyncLog, Tenant
from listing_sync.marketplaces.base import MarketplaceClient
from listing_sync.marketplaces.factory import create_marketplace_client
from listing_sync.services.catalog_sync import CatalogSyncService
from listing_sync.services.connection_resolver import ConnectionResolver
from listing_sync.services.context import SyncContext
from listing_sync.services.metrics_aggregator import MetricsAggregator
from listing_sync.services.orders_sync import OrdersSyncService
from listing_sync.services.reconcile import ReconcileService
from listing_sync.services.token_manager import TokenManager
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import ErrorType, ListingSyncError
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)

ORDERS_LOOKBACK_DAYS = 30
METRICS_WINDOW_DAYS = 30

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_ERROR = "error"
MAX_TENANT_ERROR_LENGTH = 1000


class SyncService:
    """
    Synchronous orchestrator for one tenant.

    The marketplace client is created lazily from the resolved connection;
    tests inject one directly.
    """

    def __init__(self, tenant: Tenant, db_session: Session,
                 config: Optional[ListingSyncConfig] = None,
                 marketplace_client: Optional[MarketplaceClient] = None,
                 token_manager: Optional[TokenManager] = None):
        self.tenant = tenant
        self.db = db_session
        self.config = config or get_config()
        self.token_manager = token_manager or TokenManager(db_session, config=self.config)
        self._client = marketplace_client
        self._connection: Optional[MarketplaceConnection] = None
        logger.info(f"SyncService initialized for tenant {tenant.id} ({tenant.name})")

    def resolve(self, ctx: SyncContext) -> Tuple[MarketplaceConnection, MarketplaceClient]:
        """
        Resolve the tenant's connection and bind a client to it.

        Raises:
            NoActiveConnectionError: tenant has no active connection
        """
        if self._connection is None:
            resolver = ConnectionResolver(self.db, self.config.sync.token_safety_margin_seconds)
            self._connection = resolver.resolve(self.tenant.id).connection
        if self._client is None:
            self._client = create_marketplace_client(self._connection, self.token_manager, ctx, self.config)
        return self._connection, self._client

    # -- single phases -------------------------------------------------------

    def sync_catalog(self, ctx: SyncContext) -> CatalogSyncResult:
        connection, client = self.resolve(ctx)
        return CatalogSyncService(self.db, connection, client, self.config).sync_catalog(ctx)

    def sync_orders(self, ctx: SyncContext, days: int = ORDERS_LOOKBACK_DAYS,
                    date_from: Optional[datetime] = None,
                    date_to: Optional[datetime] = None) -> OrderSyncResult:
        connection, client = self.resolve(ctx)
        date_to = date_to or utcnow()
        date_from = date_from or date_to - timedelta(days=days)
        return OrdersSyncService(self.db, connection, client, self.config).sync_orders(date_from, date_to, ctx)

    def sync_metrics(self, ctx: SyncContext, days: int = METRICS_WINDOW_DAYS,
                     date_from: Optional[date] = None,
                     date_to: Optional[date] = None) -> MetricsSyncResult:
        connection, client = self.resolve(ctx)
        date_to = date_to or utcnow().date()
        date_from = date_from or date_to - timedelta(days=days - 1)
        return MetricsAggregator(self.db, connection, client, self.config).sync_metrics(date_from, date_to, ctx)

    def reconcile(self, ctx: SyncContext) -> ReconcileResult:
        connection, client = self.resolve(ctx)
        return ReconcileService(self.db, connection, client).reconcile_access_and_status(ctx)

    def process_order(self, order_id: str, ctx: SyncContext) -> Optional[Order]:
        """Single-order sync for an order notification; None when the provider has no such order."""
        connection, client = self.resolve(ctx)
        return OrdersSyncService(self.db, connection, client, self.config).process_order_by_id(order_id, ctx)

    # -- full run ------------------------------------------------------------

    def run_full_sync(self, ctx: SyncContext) -> Dict[str, Any]:
        """
        Run every phase in order.

        Per-listing and per-page failures are collected into each phase's
        ``errors``; the run then reports ``completed_with_errors``.

        Raises:
            AuthRevokedError / NoActiveConnectionError: after recording the
            failure on the tenant
        """
        started_at = utcnow()
        self._mark_tenant(STATUS_RUNNING, started_at=started_at)
        logger.info(f"Starting full sync for tenant {self.tenant.id} (request {ctx.request_id})")

        try:
            catalog = self.sync_catalog(ctx)
            orders = self.sync_orders(ctx)
            metrics = self.sync_metrics(ctx)
            reconcile = self.reconcile(ctx)
        except ListingSyncError as e:
            self.db.rollback()
            logger.error(f"Full sync failed for tenant {self.tenant.id}: [{e.error_type.value}] {e}")
            self._mark_tenant(STATUS_ERROR, error=f"{e.error_type.value}: {e.message}")
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Full sync crashed for tenant {self.tenant.id}: {e}")
            self._mark_tenant(STATUS_ERROR, error=str(e))
            raise

        phases = {"catalog": catalog, "orders": orders, "metrics": metrics, "reconcile": reconcile}
        error_count = sum(len(phase.errors) for phase in phases.values())
        status = STATUS_COMPLETED_WITH_ERRORS if error_count else STATUS_SUCCESS

        self._mark_tenant(
            status,
            error=f"{error_count} errors during sync" if error_count else None,
        )

        duration_ms = int((utcnow() - started_at).total_seconds() * 1000)
        logger.info(
            f"Full sync for tenant {self.tenant.id} finished with status={status} "
            f"in {duration_ms}ms ({error_count} errors)"
        )

        result = {
            "status": status,
            "tenant_id": str(self.tenant.id),
            "request_id": ctx.request_id,
            "duration_ms": duration_ms,
            "error_count": error_count,
        }
        result.update({name: phase.to_dict() for name, phase in phases.items()})
        return result

    def _mark_tenant(self, status: str, started_at: Optional[datetime] = None,
                     error: Optional[str] = None) -> None:
        now = utcnow()
        self.tenant.last_sync_status = status
        if started_at is not None:
            self.tenant.last_sync_started_at = started_at
            self.tenant.last_sync_error = None
        else:
            self.tenant.last_sync_finished_at = now
            self.tenant.last_sync_error = error[:MAX_TENANT_ERROR_LENGTH] if error else None
        self.tenant.updated_at = now
        self.db.commit()


def phase_status(errors: List[Dict[str, Any]]) -> str:
    return STATUS_COMPLETED_WITH_ERRORS if errors else STATUS_SUCCESS


def record_sync_log(db: Session, tenant_id: Any, sync_type: str, status: str, started_at: datetime,
                    listings_synced: int = 0, errors: Optional[List[Dict[str, Any]]] = None,
                    error: Optional[ListingSyncError] = None) -> SyncLog:
    """Persist one run in ``sync_logs``."""
    completed_at = utcnow()
    errors = errors or []
    sync_log = SyncLog(
        tenant_id=tenant_id,
        sync_type=sync_type,
        status=status,
        listings_synced=listings_synced,
        error_count=len(errors) + (1 if error is not None else 0),
        errors=errors[:100],
        duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        error_message=error.message if error is not None else None,
        error_code=error.error_type.value if error is not None else None,
        started_at=started_at,
        completed_at=completed_at,
    )
    db.add(sync_log)
    db.commit()
    return sync_log


def is_reauth_error(error: Exception) -> bool:
    return isinstance(error, ListingSyncError) and error.error_type == ErrorType.AUTH_REVOKED
