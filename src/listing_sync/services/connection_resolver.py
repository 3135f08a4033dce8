"""
Pick the usable marketplace connection for a tenant.

Tenants keep their reconnection history, so several active rows may exist.
Resolution is deterministic for identical state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from listing_sync.database.models import ConnectionStatus, MarketplaceConnection, MarketplaceType
from listing_sync.services.token_manager import has_refresh_token, is_access_token_valid
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import NoActiveConnectionError
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ResolvedConnection:
    connection: MarketplaceConnection
    # access_valid | refresh_available | latest_fallback
    reason: str


def _recency_key(connection: MarketplaceConnection):
    return (
        connection.updated_at or datetime.min,
        connection.expires_at or datetime.min,
        str(connection.id),
    )


class ConnectionResolver:
    def __init__(self, db: Session, margin_seconds: int = 60):
        self.db = db
        self.margin_seconds = margin_seconds

    def resolve(self, tenant_id: Any, marketplace: str = MarketplaceType.MERCADOLIVRE.value,
                now: Optional[datetime] = None) -> ResolvedConnection:
        """
        Select the tenant's current connection.

        Priority: valid access token, then a refresh token, then the most
        recently updated row. Ties break on updated_at desc, expires_at desc.

        Raises:
            NoActiveConnectionError: the tenant has no active connection
        """
        now = now or utcnow()
        candidates = self.db.query(MarketplaceConnection).filter(
            MarketplaceConnection.tenant_id == tenant_id,
            MarketplaceConnection.marketplace == marketplace,
            MarketplaceConnection.status == ConnectionStatus.ACTIVE.value,
        ).all()

        if not candidates:
            raise NoActiveConnectionError(tenant_id)

        ordered = sorted(candidates, key=_recency_key, reverse=True)

        for connection in ordered:
            if is_access_token_valid(connection, now, self.margin_seconds):
                return self._resolved(tenant_id, connection, "access_valid", len(ordered))

        for connection in ordered:
            if has_refresh_token(connection):
                return self._resolved(tenant_id, connection, "refresh_available", len(ordered))

        return self._resolved(tenant_id, ordered[0], "latest_fallback", len(ordered))

    def _resolved(self, tenant_id, connection, reason, total) -> ResolvedConnection:
        logger.info(
            f"Resolved connection {connection.id} for tenant {tenant_id} "
            f"(reason={reason}, active_candidates={total})"
        )
        return ResolvedConnection(connection=connection, reason=reason)
