import os

import pytest

from careiq_calendar.database import connection


@pytest.fixture
def home(tmp_path, monkeypatch, config):
    monkeypatch.setenv('HOME', str(tmp_path))
    monkeypatch.setattr(connection, '_db_manager', None)
    return tmp_path


def test_service_database_defaults_to_configured_location(home):
    manager = connection.get_db_manager()
    try:
        expected = os.path.join(str(home), '.careiq', 'calendar_sync.db')
        assert manager.database_url == f'sqlite:///{expected}'
        assert os.path.exists(expected)
    finally:
        manager.engine.dispose()


def test_service_database_honours_database_url(home, monkeypatch):
    url = f"sqlite:///{home / 'shared.db'}"
    monkeypatch.setenv('DATABASE_URL', url)

    manager = connection.get_db_manager()
    try:
        assert manager.database_url == url
        assert connection.get_db_manager() is manager
    finally:
        manager.engine.dispose()


def test_bare_path_is_sqlite(tmp_path):
    manager = connection.DatabaseManager(str(tmp_path / 'events.db'))
    assert manager.database_url == f"sqlite:///{tmp_path / 'events.db'}"
