"""
Celery tasks for background processing.

Tasks:
- sync_tenant: full catalog/orders/metrics/reconcile run for one tenant
- sync_tenant_metrics: metrics only
- process_order_notification: single order from a marketplace notification
- refresh_expiring_tokens: proactive OAuth refresh (beat)
- cleanup_old_sync_logs: sync log retention (beat)

AUTH_REVOKED is never retried: the seller has to reconnect first.
"""

import re
import uuid
from datetime import timedelta
from typing import Any, Optional

from celery import Task
from sqlalchemy.orm import Session

from .celery_app import celery_app, TASK_SOFT_TIME_LIMIT
from ..database.connection import SessionLocal, get_engine
from ..database.models import SyncLog, Tenant
from ..services.context import SyncContext
from ..services.sync_service import (
    SyncService, STATUS_ERROR, phase_status, record_sync_log, is_reauth_error,
)
from ..services.token_manager import TokenManager
from ..utils.dates import utcnow
from ..utils.exceptions import ListingSyncError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

STATUS_REAUTH_REQUIRED = "reauth_required"
ORDER_RESOURCE_PATTERN = re.compile(r"/orders/(\d+)")


class DatabaseTask(Task):
    """
    Base task class that provides database session management.

    Creates the session lazily and closes it after the task returns.
    """
    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        if self._db is None:
            get_engine()
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


def _load_tenant(db: Session, tenant_id: Any) -> Tenant:
    tenant = db.get(Tenant, uuid.UUID(str(tenant_id)))
    if tenant is None:
        raise ValidationError("Unknown tenant", field="tenant_id", value=str(tenant_id))
    return tenant


def parse_order_resource(resource: str) -> str:
    """Order id from a notification resource such as ``/orders/2000001234``."""
    match = ORDER_RESOURCE_PATTERN.search(resource or "")
    if not match:
        raise ValidationError("Notification resource is not an order", field="resource", value=resource)
    return match.group(1)


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="listing_sync.workers.tasks.sync_tenant",
    max_retries=3,
    default_retry_delay=300,  # 5 minutes
)
def sync_tenant(self, tenant_id: str, triggered_by: str = "schedule", force_prices: bool = False) -> dict:
    """
    Full sync for one tenant.

    Returns:
        dict: run status and per-phase results
    """
    db: Session = self.db
    started_at = utcnow()
    tenant = _load_tenant(db, tenant_id)
    ctx = SyncContext.with_timeout(
        tenant.id, TASK_SOFT_TIME_LIMIT,
        triggered_by=triggered_by, force_prices=force_prices,
    )

    try:
        result = SyncService(tenant, db).run_full_sync(ctx)
    except ListingSyncError as exc:
        if is_reauth_error(exc):
            logger.warning(f"Tenant {tenant_id} needs to reconnect: {exc}")
            record_sync_log(db, tenant.id, "full", STATUS_REAUTH_REQUIRED, started_at, error=exc)
            return {"status": STATUS_REAUTH_REQUIRED, "tenant_id": tenant_id, "error": exc.message}

        record_sync_log(db, tenant.id, "full", STATUS_ERROR, started_at, error=exc)
        logger.error(f"Sync failed for tenant {tenant_id}: {exc}", exc_info=True)
        if self.request.retries < self.max_retries:
            logger.info(f"Retrying sync for tenant {tenant_id} (attempt {self.request.retries + 1})")
            raise self.retry(exc=exc)
        raise

    errors = [error for phase in ("catalog", "orders", "metrics", "reconcile") for error in result[phase]["errors"]]
    record_sync_log(
        db, tenant.id, "full", result["status"], started_at,
        listings_synced=result["catalog"]["processed"],
        errors=errors,
    )
    return result


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="listing_sync.workers.tasks.sync_tenant_metrics",
)
def sync_tenant_metrics(self, tenant_id: str, days: int = 30) -> dict:
    db: Session = self.db
    started_at = utcnow()
    tenant = _load_tenant(db, tenant_id)
    ctx = SyncContext.with_timeout(tenant.id, TASK_SOFT_TIME_LIMIT, triggered_by="schedule")

    try:
        result = SyncService(tenant, db).sync_metrics(ctx, days=days)
    except ListingSyncError as exc:
        status = STATUS_REAUTH_REQUIRED if is_reauth_error(exc) else STATUS_ERROR
        record_sync_log(db, tenant.id, "metrics", status, started_at, error=exc)
        return {"status": status, "tenant_id": tenant_id, "error": exc.message}

    status = phase_status(result.errors)
    record_sync_log(db, tenant.id, "metrics", status, started_at, errors=result.errors)
    return {"status": status, "tenant_id": tenant_id, "metrics": result.to_dict()}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="listing_sync.workers.tasks.process_order_notification",
    max_retries=3,
    default_retry_delay=60,
)
def process_order_notification(self, tenant_id: str, resource: str) -> dict:
    """Sync the order named by a marketplace notification."""
    db: Session = self.db
    tenant = _load_tenant(db, tenant_id)
    order_id = parse_order_resource(resource)
    ctx = SyncContext.with_timeout(tenant.id, 60, triggered_by="notification")

    try:
        order = SyncService(tenant, db).process_order(order_id, ctx)
    except ListingSyncError as exc:
        if is_reauth_error(exc):
            return {"status": STATUS_REAUTH_REQUIRED, "tenant_id": tenant_id, "order_id": order_id}
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        raise

    if order is None:
        return {"status": "not_found", "tenant_id": tenant_id, "order_id": order_id}
    return {"status": "processed", "tenant_id": tenant_id, "order_id": order_id, "order_status": order.status}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="listing_sync.workers.tasks.refresh_expiring_tokens",
)
def refresh_expiring_tokens(self, window_hours: Optional[int] = None) -> dict:
    return TokenManager(self.db).refresh_expiring_tokens(window_hours)


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="listing_sync.workers.tasks.cleanup_old_sync_logs",
)
def cleanup_old_sync_logs(self, days: int = 30) -> dict:
    """
    Delete sync logs older than ``days``.

    Returns:
        dict: deleted_count, cutoff_date
    """
    db: Session = self.db
    cutoff_date = utcnow() - timedelta(days=days)

    deleted_count = db.query(SyncLog).filter(SyncLog.started_at < cutoff_date).delete()
    db.commit()

    logger.info(f"Cleaned up {deleted_count} sync logs older than {days} days")
    return {
        "deleted_count": deleted_count,
        "cutoff_date": cutoff_date.isoformat(),
    }
