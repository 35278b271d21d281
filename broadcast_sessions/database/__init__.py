"""
Database initialization module.
All database access should go through get_session() or an injected session factory.
"""

from .session import (
    DatabaseManager,
    build_engine,
    create_session_factory,
    get_engine,
    get_session,
    init_db,
    session_context,
)
from .models import Base
from .event_store import EventStore
from .settings_store import SettingsStore
from .job_state import JobStateStore

__all__ = [
    'DatabaseManager',
    'build_engine',
    'create_session_factory',
    'get_engine',
    'get_session',
    'init_db',
    'session_context',
    'Base',
    'EventStore',
    'SettingsStore',
    'JobStateStore',
]
