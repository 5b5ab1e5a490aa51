from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from .base import Base
from . import models  # noqa: F401  registers tables on Base.metadata
from ..config.manager import ConfigManager
import logging

logger = logging.getLogger(__name__)


class DatabaseManager:
    def __init__(self, database_url: str = None):
        if database_url is None:
            database_url = ConfigManager().get('app.database_url')
        if '://' not in database_url:
            # Bare filesystem path
            database_url = f'sqlite:///{database_url}'

        self.database_url = database_url

        if database_url.startswith('sqlite'):
            self.engine = create_engine(
                database_url,
                connect_args={'check_same_thread': False},
            )

            @event.listens_for(self.engine, 'connect')
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute('PRAGMA foreign_keys=ON')
                cursor.close()
        else:
            self.engine = create_engine(
                database_url,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_recycle=1800,
                pool_pre_ping=True,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    def init_database(self):
        """Create all tables"""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    def drop_database(self):
        Base.metadata.drop_all(bind=self.engine)

    def get_session(self):
        return self.SessionLocal()


_db_manager = None


def get_db_manager() -> DatabaseManager:
    """Process-wide database manager, created on first use"""
    global _db_manager
    if _db_manager is None:
        # Same location the CLI uses
        config = ConfigManager()
        config.ensure_directories()
        _db_manager = DatabaseManager(config.get('app.database_url'))
        _db_manager.init_database()
    return _db_manager


def get_db():
    """FastAPI dependency that provides a database session"""
    db = get_db_manager().get_session()
    try:
        yield db
    finally:
        db.close()
