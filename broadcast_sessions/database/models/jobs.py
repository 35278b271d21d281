"""
Job state persistence model.

Stores background job configuration and running state across process
restarts so a restart restores the exact running/paused configuration.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON

from .base import Base, utcnow


class JobState(Base):
    """
    Attributes:
        job_name: Unique identifier for the job (e.g. 'finalize-sessions')
        is_running: Whether the job should be running (restored on startup)
        is_paused: Whether ticks are being skipped
        config: Job-specific configuration as JSON
        stats: Job counters for continuity across restarts
    """
    __tablename__ = 'job_state'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(50), unique=True, nullable=False)
    is_running = Column(Boolean, default=False, nullable=False)
    is_paused = Column(Boolean, default=False, nullable=False)
    config = Column(JSON, default=dict)
    stats = Column(JSON, default=dict)
    last_started_at = Column(DateTime(timezone=True))
    last_stopped_at = Column(DateTime(timezone=True))
    last_run_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
