from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from careiq_calendar.database.models import CalendarIntegration
from careiq_calendar.exceptions import IntegrationInactive, IntegrationNotFound, RefreshFailed, RefreshTokenMissing
from careiq_calendar.models.credentials import BasicAuthCredentials, OAuthCredentials, TokenSet
from careiq_calendar.services.credential_manager import CredentialManager
from conftest import USER_ID, add_integration

NOW = datetime(2030, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def flow():
    flow = MagicMock()
    flow.refresh.return_value = TokenSet(
        access_token='fresh-access',
        refresh_token='rotated-refresh',
        expires_at=NOW + timedelta(hours=1),
    )
    return flow


@pytest.fixture
def manager(session, config, flow):
    return CredentialManager(session, config, oauth_flows={'google': flow, 'outlook': flow})


def test_missing_integration(manager):
    with pytest.raises(IntegrationNotFound):
        manager.get_credentials(USER_ID, 'google')


def test_inactive_integration(session, manager):
    add_integration(session, is_active=False)
    with pytest.raises(IntegrationInactive):
        manager.get_credentials(USER_ID, 'google')


def test_oauth_credentials(session, manager):
    integration = add_integration(session, provider='outlook')
    credentials = manager.get_credentials(USER_ID, 'outlook')

    assert isinstance(credentials, OAuthCredentials)
    assert credentials.kind == 'oauth'
    assert credentials.integration_id == integration.id
    assert credentials.access_token == 'access-token'


def test_caldav_credentials_use_default_server(session, manager):
    add_integration(session, provider='apple_caldav')
    credentials = manager.get_credentials(USER_ID, 'apple_caldav')

    assert isinstance(credentials, BasicAuthCredentials)
    assert credentials.server_url == 'https://caldav.icloud.com'
    assert credentials.username == 'nurse@icloud.com'
    assert manager.ensure_fresh(credentials) is credentials


def test_fresh_token_is_not_refreshed(session, manager, flow):
    add_integration(session, expires_at=NOW + timedelta(minutes=10))
    credentials = manager.get_credentials(USER_ID, 'google')

    assert manager.ensure_fresh(credentials, now=NOW) is credentials
    flow.refresh.assert_not_called()


def test_expired_token_is_refreshed_and_written_back(session, manager, flow):
    integration = add_integration(session, expires_at=NOW - timedelta(seconds=1))
    credentials = manager.get_credentials(USER_ID, 'google')

    refreshed = manager.ensure_fresh(credentials, now=NOW)

    flow.refresh.assert_called_once_with('refresh-token')
    assert refreshed.access_token == 'fresh-access'
    assert refreshed.refresh_token == 'rotated-refresh'
    session.expire_all()
    stored = session.get(CalendarIntegration, integration.id)
    assert stored.access_token == 'fresh-access'
    assert stored.refresh_token == 'rotated-refresh'
    assert stored.expires_at == NOW + timedelta(hours=1)

    # The stored expiry is now in the future
    assert manager.ensure_fresh(manager.get_credentials(USER_ID, 'google'), now=NOW).access_token == 'fresh-access'
    assert flow.refresh.call_count == 1


def test_refresh_keeps_old_refresh_token_when_none_returned(session, manager, flow):
    integration = add_integration(session, expires_at=NOW - timedelta(hours=1))
    flow.refresh.return_value = TokenSet(access_token='fresh-access', expires_at=NOW + timedelta(hours=1))

    manager.ensure_fresh(manager.get_credentials(USER_ID, 'google'), now=NOW)

    session.expire_all()
    assert session.get(CalendarIntegration, integration.id).refresh_token == 'refresh-token'


def test_expired_without_refresh_token(session, manager):
    add_integration(session, expires_at=NOW - timedelta(hours=1), refresh_token=None)
    credentials = manager.get_credentials(USER_ID, 'google')

    with pytest.raises(RefreshTokenMissing):
        manager.ensure_fresh(credentials, now=NOW)


def test_missing_access_token_forces_refresh(session, manager, flow):
    add_integration(session, access_token=None, expires_at=None)
    credentials = manager.get_credentials(USER_ID, 'google')

    assert manager.ensure_fresh(credentials, now=NOW).access_token == 'fresh-access'


def test_no_tokens_at_all(session, manager):
    add_integration(session, access_token=None, refresh_token=None)
    with pytest.raises(RefreshTokenMissing):
        manager.get_credentials(USER_ID, 'google')


def test_rejected_refresh_propagates(session, manager, flow):
    add_integration(session, expires_at=NOW - timedelta(hours=1))
    flow.refresh.side_effect = RefreshFailed('invalid_grant', provider='google')

    with pytest.raises(RefreshFailed):
        manager.ensure_fresh(manager.get_credentials(USER_ID, 'google'), now=NOW)
