"""
Run context threaded through a tenant sync.

Carries the deadline and run options explicitly from the caller (CLI,
Celery task, webhook handler) down to every outbound call, instead of any
per-instance "currently syncing" state.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Optional

from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import SyncCancelledError

# Never hand out a per-call timeout smaller than this
MIN_CALL_TIMEOUT_SECONDS = 1.0


@dataclass(frozen=True)
class SyncContext:
    tenant_id: Any
    deadline: Optional[datetime] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    force_prices: bool = False
    triggered_by: str = "manual"

    @classmethod
    def with_timeout(cls, tenant_id: Any, seconds: Optional[float], **kwargs) -> "SyncContext":
        deadline = utcnow() + timedelta(seconds=seconds) if seconds else None
        return cls(tenant_id=tenant_id, deadline=deadline, **kwargs)

    def remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.deadline is None:
            return None
        return (self.deadline - (now or utcnow())).total_seconds()

    def expired(self, now: Optional[datetime] = None) -> bool:
        remaining = self.remaining_seconds(now)
        return remaining is not None and remaining <= 0

    def check(self, phase: Optional[str] = None) -> None:
        """Raise ``SyncCancelledError`` once the deadline has passed."""
        if self.expired():
            raise SyncCancelledError(
                "Sync deadline exceeded",
                {"tenant_id": str(self.tenant_id), "request_id": self.request_id, "phase": phase},
            )

    def call_timeout(self, default: float) -> float:
        """Per-call timeout bounded by what is left of the run."""
        remaining = self.remaining_seconds()
        if remaining is None:
            return default
        return max(MIN_CALL_TIMEOUT_SECONDS, min(default, remaining))

    def child(self, **overrides) -> "SyncContext":
        return replace(self, **overrides)
