"""
Celery application configuration for Listing Sync.

This module configures Celery for:
- Per-tenant marketplace synchronization
- Order notification processing
- Scheduled maintenance (Celery Beat): token refresh, log cleanup
"""

import os
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# Soft limit doubles as the run deadline handed to SyncContext
TASK_SOFT_TIME_LIMIT = int(os.getenv("SYNC_DEADLINE_SECONDS", "540"))

celery_app = Celery(
    "listing_sync",
    broker=REDIS_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["listing_sync.workers.tasks"]
)

celery_app.conf.update(
    task_routes={
        "listing_sync.workers.tasks.sync_tenant": {"queue": "sync"},
        "listing_sync.workers.tasks.sync_tenant_metrics": {"queue": "sync"},
        "listing_sync.workers.tasks.process_order_notification": {"queue": "sync"},
        "listing_sync.workers.tasks.refresh_expiring_tokens": {"queue": "maintenance"},
        "listing_sync.workers.tasks.cleanup_old_sync_logs": {"queue": "maintenance"},
    },

    task_queues=(
        Queue("sync", routing_key="sync"),
        Queue("maintenance", routing_key="maintenance"),
        Queue("default", routing_key="default"),
    ),
    task_default_queue="default",
    task_default_routing_key="default",

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=TASK_SOFT_TIME_LIMIT + 60,
    task_soft_time_limit=TASK_SOFT_TIME_LIMIT,
    worker_prefetch_multiplier=1,

    result_expires=3600,

    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    beat_schedule={
        "refresh-expiring-tokens": {
            "task": "listing_sync.workers.tasks.refresh_expiring_tokens",
            "schedule": crontab(minute="*/30"),
            "options": {"queue": "maintenance"},
        },
        # Daily at 3 AM
        "cleanup-old-sync-logs": {
            "task": "listing_sync.workers.tasks.cleanup_old_sync_logs",
            "schedule": crontab(hour=3, minute=0),
            "options": {"queue": "maintenance"},
        },
    },

    worker_max_tasks_per_child=1000,
    worker_hijack_root_logger=False,
)
