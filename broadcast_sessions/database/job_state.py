"""
Job state persistence.

Background jobs store their configuration, running/paused flags and counters
in ``job_state`` so a process restart resumes the same schedule.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .models import JobState, utcnow
from .session import get_session

logger = logging.getLogger(__name__)


class JobStateStore:
    """Read/write access to one row per job in ``job_state``."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self.session_factory = session_factory or get_session

    def load_state(self, job_name: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as session:
            row = session.query(JobState).filter_by(job_name=job_name).first()
            if row is None:
                return None
            return {
                'job_name': row.job_name,
                'is_running': bool(row.is_running),
                'is_paused': bool(row.is_paused),
                'config': dict(row.config or {}),
                'stats': dict(row.stats or {}),
                'last_started_at': row.last_started_at,
                'last_stopped_at': row.last_stopped_at,
                'last_run_at': row.last_run_at,
            }

    def ensure_job_state(self, job_name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Create the row with ``config`` when missing; return the stored state."""
        with self.session_factory() as session:
            row = session.query(JobState).filter_by(job_name=job_name).first()
            if row is None:
                row = JobState(job_name=job_name, config=dict(config), stats={})
                session.add(row)
                session.commit()
                logger.info(f"Created job state for {job_name}")
        return self.load_state(job_name)

    def save_running_state(self, job_name: str, is_running: bool, is_paused: bool):
        with self.session_factory() as session:
            row = self._get_or_create(session, job_name)
            now = utcnow()
            if is_running and not row.is_running:
                row.last_started_at = now
            if not is_running and row.is_running:
                row.last_stopped_at = now
            row.is_running = is_running
            row.is_paused = is_paused
            session.commit()

    def save_config(self, job_name: str, config: Dict[str, Any]):
        with self.session_factory() as session:
            row = self._get_or_create(session, job_name)
            row.config = dict(config)
            session.commit()

    def save_stats(self, job_name: str, stats: Dict[str, Any]):
        with self.session_factory() as session:
            row = self._get_or_create(session, job_name)
            row.stats = dict(stats)
            row.last_run_at = utcnow()
            session.commit()

    @staticmethod
    def _get_or_create(session, job_name: str) -> JobState:
        row = session.query(JobState).filter_by(job_name=job_name).first()
        if row is None:
            row = JobState(job_name=job_name, config={}, stats={})
            session.add(row)
        return row
