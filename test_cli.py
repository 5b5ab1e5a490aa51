from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from careiq_calendar.cli import main as cli_main
from careiq_calendar.config.manager import ConfigManager
from careiq_calendar.database.connection import DatabaseManager
from conftest import add_integration


@pytest.fixture
def runner(config, tmp_path, monkeypatch):
    config.set('app.database_url', f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(cli_main, 'config_manager', config)
    return CliRunner()


def invoke(runner, *args, **kwargs):
    return runner.invoke(cli_main.cli, ['--user', 'user-1', *args], **kwargs)


def test_init_db(runner, tmp_path):
    result = invoke(runner, 'init-db')

    assert result.exit_code == 0
    assert 'Database ready' in result.output
    assert (tmp_path / 'cli.db').exists()


def test_connect_caldav_then_list(runner):
    result = invoke(runner, 'connect-caldav', '--username', 'nurse@icloud.com', '--password', 'app-password')
    assert result.exit_code == 0
    assert 'Connected iCloud calendar' in result.output

    listed = invoke(runner, 'integrations')
    assert listed.exit_code == 0
    assert 'apple_caldav' in listed.output
    assert 'never' in listed.output


def test_no_integrations(runner):
    result = invoke(runner, 'integrations')
    assert 'No calendars connected' in result.output


def test_sync_without_integration_fails(runner):
    result = invoke(runner, 'sync', 'outlook')

    assert result.exit_code == 1
    assert 'No outlook calendar integration' in result.output


def test_no_conflicts(runner):
    result = invoke(runner, 'conflicts')
    assert 'No pending conflicts' in result.output


def test_resolve_unknown_conflict(runner):
    result = invoke(runner, 'resolve', 'missing', 'ignored')

    assert result.exit_code == 1
    assert 'Conflict missing not found' in result.output


def test_disconnect_can_be_cancelled(runner):
    result = invoke(runner, 'disconnect', 'google', input='n\n')
    assert result.exit_code == 0
    assert 'Disconnected' not in result.output


def test_unknown_provider_is_rejected(runner):
    result = invoke(runner, 'sync', 'yahoo')
    assert result.exit_code == 2


def test_times_are_shown_in_configured_zone(runner, config):
    config.set('app.timezone', 'America/New_York')
    db = DatabaseManager(config.get('app.database_url'))
    db.init_database()
    session = db.get_session()
    add_integration(session, display_name='Work', last_sync_at=datetime(2030, 3, 4, 14, 0, tzinfo=timezone.utc))
    session.close()

    result = invoke(runner, 'integrations')

    assert result.exit_code == 0
    assert 'Mar 04 09:00' in result.output


def test_unknown_timezone_falls_back_to_utc(config, tmp_path, monkeypatch):
    monkeypatch.setenv('TIMEZONE', 'Mars/Olympus_Mons')
    assert ConfigManager(env_file=str(tmp_path / 'missing.env')).get('app.timezone') == 'UTC'
