"""
OAuth token lifecycle for marketplace connections.

A stored access token is used as-is while it is valid beyond a safety
margin. Otherwise the refresh grant is exchanged. A rejected grant flips the
connection to ``reauth_required`` and raises ``AuthRevokedError``. Network
and server failures during refresh are left to the caller to retry and do
not touch the connection status.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from listing_sync.api.client import MercadoLivreAPIClient
from listing_sync.database.models import ConnectionStatus, MarketplaceConnection
from listing_sync.utils.config import ListingSyncConfig, get_config
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import (
    APIError, AuthRevokedError, ListingSyncError, ValidationError,
)
from listing_sync.utils.logger import get_logger
from listing_sync.utils.transaction import transaction_scope

logger = get_logger(__name__)

# Refresh rejections that mean the grant itself is gone
AUTH_REJECTION_STATUS_CODES = (400, 401, 403)
DEFAULT_EXPIRES_IN_SECONDS = 21600
MAX_ERROR_MESSAGE_LENGTH = 500


@dataclass
class TokenResult:
    token: str
    used_refresh: bool
    expires_at: Optional[datetime]


def is_access_token_valid(connection: MarketplaceConnection, now: Optional[datetime] = None,
                          margin_seconds: int = 60) -> bool:
    """True when the stored access token outlives ``now`` plus the margin."""
    if not connection.access_token or connection.expires_at is None:
        return False
    now = now or utcnow()
    return connection.expires_at > now + timedelta(seconds=margin_seconds)


def has_refresh_token(connection: MarketplaceConnection) -> bool:
    return bool(connection.refresh_token and connection.refresh_token.strip())


class TokenManager:
    """Owns access-token validity and refresh for marketplace connections."""

    def __init__(self, db: Session, api_client: Optional[MercadoLivreAPIClient] = None,
                 config: Optional[ListingSyncConfig] = None):
        self.db = db
        self.config = config or get_config()
        self.api = api_client or MercadoLivreAPIClient(config=self.config.mercadolivre)
        self.margin_seconds = self.config.sync.token_safety_margin_seconds

    def _load(self, connection_id: Any) -> MarketplaceConnection:
        connection = self.db.get(MarketplaceConnection, connection_id)
        if connection is None:
            raise ValidationError("Unknown marketplace connection", field="connection_id", value=connection_id)
        return connection

    def get_valid_token(self, connection_id: Any) -> TokenResult:
        """
        Return a usable access token for the connection.

        No network call is made while the stored token is still valid.

        Raises:
            AuthRevokedError: refresh token missing or rejected
            APIError: transient refresh failure (retryable by the caller)
        """
        connection = self._load(connection_id)

        if is_access_token_valid(connection, margin_seconds=self.margin_seconds):
            return TokenResult(
                token=connection.access_token,
                used_refresh=False,
                expires_at=connection.expires_at,
            )

        logger.info(f"Access token for connection {connection.id} expired or near expiry, refreshing")
        return self._refresh(connection)

    def force_refresh(self, connection_id: Any) -> TokenResult:
        """Refresh regardless of the stored expiry (used after a 401)."""
        return self._refresh(self._load(connection_id))

    def _refresh(self, connection: MarketplaceConnection) -> TokenResult:
        if not has_refresh_token(connection):
            self._mark_reauth(connection, "missing_refresh_token", "No refresh token stored for connection")
            raise AuthRevokedError("Refresh token missing; reconnection required", connection_id=connection.id)

        try:
            payload = self.api.exchange_refresh_token(connection.refresh_token)
        except APIError as e:
            if e.status_code in AUTH_REJECTION_STATUS_CODES:
                logger.error(f"Refresh rejected for connection {connection.id} (status {e.status_code})")
                self._mark_reauth(connection, e.error_code or f"http_{e.status_code}", e.message)
                raise AuthRevokedError(
                    "Refresh token rejected; reconnection required",
                    connection_id=connection.id,
                    status_code=e.status_code,
                )
            logger.warning(f"Transient refresh failure for connection {connection.id}: {e}")
            raise

        access_token = payload.get("access_token")
        if not access_token:
            raise APIError("Token endpoint returned no access_token", endpoint="/oauth/token")

        expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        now = utcnow()

        with transaction_scope(self.db):
            connection.access_token = access_token
            # The provider rotates refresh tokens; keep the old one if none came back
            connection.refresh_token = payload.get("refresh_token") or connection.refresh_token
            connection.expires_at = now + timedelta(seconds=int(expires_in))
            connection.status = ConnectionStatus.ACTIVE.value
            connection.updated_at = now

        logger.info(f"Refreshed token for connection {connection.id}, expires at {connection.expires_at}")
        return TokenResult(token=access_token, used_refresh=True, expires_at=connection.expires_at)

    def _mark_reauth(self, connection: MarketplaceConnection, error_code: str, error_message: str) -> None:
        with transaction_scope(self.db):
            apply_reauth_required(connection, error_code, error_message)

    def mark_connection_reauth_required(self, connection_id: Any, error_code: str,
                                        error_message: str) -> MarketplaceConnection:
        connection = self._load(connection_id)
        self._mark_reauth(connection, error_code, error_message)
        return connection

    def refresh_expiring_tokens(self, window_hours: Optional[int] = None) -> Dict[str, int]:
        """
        Proactively refresh active connections expiring within the window.

        Returns:
            Counters: checked, refreshed, failed, reauth_required
        """
        window_hours = window_hours or self.config.sync.token_refresh_window_hours
        horizon = utcnow() + timedelta(hours=window_hours)

        candidates = self.db.query(MarketplaceConnection).filter(
            MarketplaceConnection.status == ConnectionStatus.ACTIVE.value,
            MarketplaceConnection.refresh_token.isnot(None),
            (MarketplaceConnection.expires_at.is_(None)) | (MarketplaceConnection.expires_at <= horizon),
        ).all()

        stats = {"checked": len(candidates), "refreshed": 0, "failed": 0, "reauth_required": 0}

        for connection in candidates:
            try:
                self._refresh(connection)
                stats["refreshed"] += 1
            except AuthRevokedError:
                stats["reauth_required"] += 1
            except ListingSyncError as e:
                logger.warning(f"Proactive refresh failed for connection {connection.id}: {e}")
                stats["failed"] += 1

        logger.info(f"Proactive token refresh: {stats}")
        return stats


def apply_reauth_required(connection: MarketplaceConnection, error_code: str, error_message: str) -> None:
    """Flag a connection as needing the seller to reconnect."""
    now = utcnow()
    connection.status = ConnectionStatus.REAUTH_REQUIRED.value
    connection.last_error_code = (error_code or "")[:100] or None
    connection.last_error_message = (error_message or "")[:MAX_ERROR_MESSAGE_LENGTH]
    connection.last_error_at = now
    connection.updated_at = now
