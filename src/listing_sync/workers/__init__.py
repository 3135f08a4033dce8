"""
Celery workers module for background task processing.
"""

from .celery_app import celery_app
from .tasks import (
    sync_tenant,
    sync_tenant_metrics,
    process_order_notification,
    refresh_expiring_tokens,
    cleanup_old_sync_logs,
)

__all__ = [
    "celery_app",
    "sync_tenant",
    "sync_tenant_metrics",
    "process_order_notification",
    "refresh_expiring_tokens",
    "cleanup_old_sync_logs",
]
