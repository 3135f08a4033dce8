"""
Unit tests for the OAuth token lifecycle
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import make_connection
from listing_sync.database.models import ConnectionStatus
from listing_sync.services.token_manager import TokenManager, is_access_token_valid
from listing_sync.utils.dates import utcnow
from listing_sync.utils.exceptions import APIError, AuthRevokedError, ServerError, ValidationError


REFRESH_PAYLOAD = {
    "access_token": "APP_USR-new",
    "refresh_token": "TG-rotated",
    "expires_in": 21600,
}


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def manager(db_session, api, config):
    return TokenManager(db_session, api_client=api, config=config)


class TestGetValidToken:
    """Test token validity and refresh"""

    def test_valid_token_makes_no_call(self, manager, api, connection):
        result = manager.get_valid_token(connection.id)

        assert result.token == "APP_USR-valid"
        assert result.used_refresh is False
        api.exchange_refresh_token.assert_not_called()

    def test_token_inside_margin_is_refreshed(self, db_session, manager, api, tenant):
        """Test a token expiring within the safety margin counts as expired"""
        connection = make_connection(db_session, tenant, expires_at=utcnow() + timedelta(seconds=30))
        api.exchange_refresh_token.return_value = REFRESH_PAYLOAD

        result = manager.get_valid_token(connection.id)

        assert result.used_refresh is True
        api.exchange_refresh_token.assert_called_once_with("TG-refresh")

    def test_refresh_persists_rotated_tokens(self, db_session, manager, api, tenant):
        connection = make_connection(db_session, tenant, expires_at=utcnow() - timedelta(hours=1))
        api.exchange_refresh_token.return_value = REFRESH_PAYLOAD

        result = manager.get_valid_token(connection.id)

        db_session.refresh(connection)
        assert result.token == "APP_USR-new"
        assert connection.access_token == "APP_USR-new"
        assert connection.refresh_token == "TG-rotated"
        assert connection.expires_at > utcnow() + timedelta(hours=5)
        assert connection.status == ConnectionStatus.ACTIVE.value

    def test_refresh_keeps_old_refresh_token(self, db_session, manager, api, tenant):
        connection = make_connection(db_session, tenant, expires_at=None)
        api.exchange_refresh_token.return_value = {"access_token": "APP_USR-new"}

        manager.get_valid_token(connection.id)

        db_session.refresh(connection)
        assert connection.refresh_token == "TG-refresh"

    def test_rejected_refresh_marks_reauth(self, db_session, manager, api, tenant):
        """Test invalid_grant flips the connection to reauth_required"""
        connection = make_connection(db_session, tenant, expires_at=utcnow() - timedelta(hours=1))
        api.exchange_refresh_token.side_effect = APIError(
            "invalid_grant", status_code=400, error_code="invalid_grant"
        )

        with pytest.raises(AuthRevokedError) as exc_info:
            manager.get_valid_token(connection.id)

        db_session.refresh(connection)
        assert exc_info.value.status_code == 400
        assert connection.status == ConnectionStatus.REAUTH_REQUIRED.value
        assert connection.last_error_code == "invalid_grant"
        assert connection.last_error_at is not None

    def test_transient_failure_keeps_status(self, db_session, manager, api, tenant):
        connection = make_connection(db_session, tenant, expires_at=utcnow() - timedelta(hours=1))
        api.exchange_refresh_token.side_effect = ServerError("Server error: 503", status_code=503)

        with pytest.raises(ServerError):
            manager.get_valid_token(connection.id)

        db_session.refresh(connection)
        assert connection.status == ConnectionStatus.ACTIVE.value
        assert connection.last_error_code is None

    def test_missing_refresh_token(self, db_session, manager, api, tenant):
        connection = make_connection(
            db_session, tenant, refresh_token=None, expires_at=utcnow() - timedelta(hours=1)
        )

        with pytest.raises(AuthRevokedError):
            manager.get_valid_token(connection.id)

        db_session.refresh(connection)
        assert connection.status == ConnectionStatus.REAUTH_REQUIRED.value
        assert connection.last_error_code == "missing_refresh_token"
        api.exchange_refresh_token.assert_not_called()

    def test_unknown_connection(self, manager):
        import uuid

        with pytest.raises(ValidationError):
            manager.get_valid_token(uuid.uuid4())


class TestProactiveRefresh:
    """Test the scheduled refresh of expiring connections"""

    def test_only_expiring_active_connections(self, db_session, manager, api, tenant):
        make_connection(db_session, tenant, expires_at=utcnow() + timedelta(hours=1))
        make_connection(db_session, tenant, expires_at=utcnow() + timedelta(hours=10))
        make_connection(
            db_session, tenant, expires_at=utcnow() - timedelta(hours=1),
            status=ConnectionStatus.REAUTH_REQUIRED.value,
        )
        api.exchange_refresh_token.return_value = REFRESH_PAYLOAD

        stats = manager.refresh_expiring_tokens()

        assert stats == {"checked": 1, "refreshed": 1, "failed": 0, "reauth_required": 0}

    def test_counts_failures(self, db_session, manager, api, tenant):
        make_connection(db_session, tenant, expires_at=utcnow() + timedelta(minutes=30))
        make_connection(db_session, tenant, expires_at=utcnow() + timedelta(minutes=40))
        api.exchange_refresh_token.side_effect = [
            APIError("invalid_grant", status_code=400),
            ServerError("Server error: 500", status_code=500),
        ]

        stats = manager.refresh_expiring_tokens(window_hours=1)

        assert stats["checked"] == 2
        assert stats["reauth_required"] == 1
        assert stats["failed"] == 1


class TestValidity:

    def test_missing_expiry_is_invalid(self, connection):
        connection.expires_at = None
        assert is_access_token_valid(connection) is False

    def test_margin(self, connection):
        now = utcnow()
        connection.expires_at = now + timedelta(seconds=90)

        assert is_access_token_valid(connection, now, margin_seconds=60) is True
        assert is_access_token_valid(connection, now, margin_seconds=120) is False
