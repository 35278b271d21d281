"""
Full rebuild and incremental maintenance of segments and sessions.

A rebuild discards every segment and session and reconstructs them from the
event log; on an unchanged log it is idempotent. Incremental maintenance
only adds segments for new events and extends live sessions.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from broadcast_sessions.database.models import BroadcastSegment, EventLog
from broadcast_sessions.database.session import get_session
from broadcast_sessions.database.settings_store import SettingsStore
from .rollups import RollupAggregator, RollupResult
from .segment_builder import SegmentBuilder
from .session_stitcher import SessionStitcher

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    segments: int
    sessions: int
    events_linked: int
    explicit_segments: int = 0
    implicit_segments: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MaintenanceResult:
    segments_created: int = 0
    events_linked: int = 0
    sessions_touched: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionRebuilder:
    """Runs the segment -> session -> rollup pipeline inside one database session."""

    def __init__(self, session: Session, config: Optional[Dict[str, Any]] = None):
        self.session = session
        self.settings = SettingsStore(session, config)
        self.builder = SegmentBuilder(session, config)
        self.stitcher = SessionStitcher(session, self.settings)
        self.rollups = RollupAggregator(session)

    def rebuild(self, from_date: Optional[datetime] = None) -> RebuildResult:
        logger.info(f"Starting session rebuild{f' from {from_date.isoformat()}' if from_date else ''}")

        cleared_segments = self.builder.clear_all()
        cleared_sessions = self.stitcher.clear_all()
        logger.info(f"Cleared {cleared_segments} segments and {cleared_sessions} sessions")

        explicit = self.builder.build_explicit_segments(since=from_date)
        self.builder.assign_events_to_segments()

        implicit = self.builder.build_implicit_segments()
        if implicit:
            self.builder.assign_events_to_segments()

        segments = self.builder.get_all()
        result = self.stitcher.stitch_segments(segments)
        self.stitcher.apply_assignments(result.assignments)
        linked = self.stitcher.propagate_session_ids_to_events()

        for record in result.sessions:
            self.rollups.compute_and_update_session(record.id)

        rebuild_result = RebuildResult(
            segments=len(segments),
            sessions=len(result.sessions),
            events_linked=linked,
            explicit_segments=len(explicit),
            implicit_segments=len(implicit),
        )
        logger.info(
            f"Session rebuild complete: {rebuild_result.segments} segments, "
            f"{rebuild_result.sessions} sessions, {rebuild_result.events_linked} events linked"
        )
        return rebuild_result

    def recompute(self, session_id: int) -> RollupResult:
        return self.rollups.compute_and_update_session(session_id)

    def process_new_events(self) -> MaintenanceResult:
        """Fold events that arrived since the last run into segments and sessions."""
        result = MaintenanceResult()

        extended = self.builder.extend_explicit_segments()
        linked = self.builder.assign_events_to_segments()
        implicit = self.builder.build_implicit_segments()
        if implicit:
            linked += self.builder.assign_events_to_segments()
        result.segments_created = len([s for s in extended if s.session_id is None]) + len(implicit)
        result.events_linked = linked

        touched = {s.session_id for s in extended if s.session_id is not None}
        touched.update(record.id for record in self.stitcher.attach_unstitched_segments())
        touched.update(
            session_id for (session_id,) in self.session.query(BroadcastSegment.session_id)
            .join(EventLog, EventLog.segment_id == BroadcastSegment.id)
            .filter(EventLog.session_id.is_(None), BroadcastSegment.session_id.isnot(None))
            .distinct()
            .all()
        )

        self.stitcher.propagate_session_ids_to_events()
        for session_id in sorted(touched):
            self.stitcher.refresh_session(session_id)
            self.rollups.compute_and_update_session(session_id)

        result.sessions_touched = sorted(touched)
        if result.segments_created or result.sessions_touched:
            logger.info(
                f"Processed new events: {result.segments_created} segments created, "
                f"{result.events_linked} events linked, {len(result.sessions_touched)} sessions updated"
            )
        return result


def rebuild(from_date: Optional[datetime] = None, session_factory: Optional[Callable] = None,
            config: Optional[Dict[str, Any]] = None) -> RebuildResult:
    """Run a full rebuild in its own transaction."""
    session_factory = session_factory or get_session
    with session_factory() as session:
        try:
            result = SessionRebuilder(session, config).rebuild(from_date)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise


def recompute(session_id: int, session_factory: Optional[Callable] = None) -> RollupResult:
    session_factory = session_factory or get_session
    with session_factory() as session:
        result = RollupAggregator(session).compute_and_update_session(session_id)
        session.commit()
        return result


def process_new_events(session_factory: Optional[Callable] = None,
                       config: Optional[Dict[str, Any]] = None) -> MaintenanceResult:
    session_factory = session_factory or get_session
    with session_factory() as session:
        try:
            result = SessionRebuilder(session, config).process_new_events()
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
