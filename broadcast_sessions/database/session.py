"""Database session management."""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from broadcast_sessions.utils.config import load_config
from broadcast_sessions.utils.logger import setup_worker_logger


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for ``url``.

    In-memory SQLite gets a single shared connection so every session sees the
    same database; file SQLite gets foreign keys switched on.
    """
    if url.startswith('sqlite'):
        kwargs: Dict[str, Any] = {'connect_args': {'check_same_thread': False}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, 'connect')
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

        return engine

    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(url: str, echo: bool = False, create_schema: bool = True) -> sessionmaker:
    """Build a sessionmaker bound to a fresh engine (used by tests and tools)."""
    engine = build_engine(url, echo=echo)
    if create_schema:
        from .models import Base
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def session_context(factory: sessionmaker) -> Callable:
    """Wrap a sessionmaker into a ``get_session``-style context manager factory."""
    @contextmanager
    def _session_scope():
        session = factory()
        try:
            yield session
        finally:
            session.close()
    return _session_scope


class DatabaseManager:
    """Database session manager that owns the engine and session factory."""

    _instance = None

    def __new__(cls):
        """Ensure singleton pattern for session manager."""
        if cls._instance is None:
            cls._instance = super(DatabaseManager, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.logger = setup_worker_logger('database')
        self.config = load_config().get('database', {})
        url = self.config.get('url') or 'sqlite:///data/broadcast_sessions.db'

        self._ensure_sqlite_dir(url)
        self.logger.info(f"Creating database engine for {self._safe_url(url)}")
        try:
            self._engine = build_engine(url, echo=bool(self.config.get('echo', False)))
        except Exception as e:
            self.logger.error(f"Failed to create database engine: {str(e)}")
            raise

        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.logger.info("Successfully tested database connection")
        except Exception as e:
            self.logger.error(f"Failed to test database connection: {str(e)}")
            raise

        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._initialized = True

    @staticmethod
    def _safe_url(url: str) -> str:
        if '@' in url and '://' in url:
            scheme, rest = url.split('://', 1)
            return f"{scheme}://****@{rest.split('@', 1)[1]}"
        return url

    @staticmethod
    def _ensure_sqlite_dir(url: str):
        prefix = 'sqlite:///'
        if url.startswith(prefix) and url not in ('sqlite:///:memory:',):
            from pathlib import Path
            from broadcast_sessions.utils.paths import ensure_dir
            ensure_dir(Path(url[len(prefix):]).parent)

    @property
    def engine(self) -> Engine:
        return self._engine

    def get_session(self):
        """Get a new ORM session."""
        return self._session_factory()

    def dispose(self):
        if self._engine is not None:
            self.logger.info("Disposing database engine and connection pool")
            self._engine.dispose()


# Global session manager instance (lazy initialized)
_manager: Optional[DatabaseManager] = None


def _get_manager() -> DatabaseManager:
    global _manager
    if _manager is None:
        _manager = DatabaseManager()
    return _manager


def get_engine() -> Engine:
    """Get the SQLAlchemy engine."""
    return _get_manager().engine


@contextmanager
def get_session():
    """Context manager for database sessions."""
    session = _get_manager().get_session()
    try:
        yield session
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None):
    """Initialize the database schema."""
    logger = setup_worker_logger('database')
    try:
        from .models import Base
        Base.metadata.create_all(engine or get_engine())
        logger.info("Successfully initialized database schema")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
