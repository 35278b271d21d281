"""
Session stitcher.

Two adjacent segments A and B belong to the same session when A is still
open or when ``B.started_at - A.ended_at <= merge_gap``. Stitching repeats
against the accumulated session end, so a chain of short gaps becomes one
session.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from broadcast_sessions.database.event_store import EventStore
from broadcast_sessions.database.models import (
    BroadcastSegment,
    BroadcastSession,
    EventLog,
    SessionStatus,
    as_utc,
)
from broadcast_sessions.database.settings_store import SettingsStore
from broadcast_sessions.utils.errors import SessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class SessionGroup:
    """Segments that will become one session."""
    started_at: datetime
    ended_at: Optional[datetime]
    segment_ids: List[int] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def last_event_at(self) -> datetime:
        return self.ended_at or self.started_at


@dataclass
class StitchResult:
    sessions: List[BroadcastSession]
    assignments: List[Tuple[int, int]]  # (segment_id, session_id)


def group_segments(segments: Sequence[BroadcastSegment], merge_gap: timedelta) -> List[SessionGroup]:
    """Group segments into sessions under the merge-gap rule (pure)."""
    groups: List[SessionGroup] = []
    current: Optional[SessionGroup] = None

    for segment in sorted(segments, key=lambda s: (as_utc(s.started_at), s.id or 0)):
        start = as_utc(segment.started_at)
        end = as_utc(segment.ended_at)

        if current is None:
            current = SessionGroup(started_at=start, ended_at=end, segment_ids=[segment.id])
            continue

        if current.is_open or start - current.ended_at <= merge_gap:
            if end is None:
                current.ended_at = None
            elif current.is_open:
                current.ended_at = end
            else:
                current.ended_at = max(current.ended_at, end)
            current.segment_ids.append(segment.id)
        else:
            groups.append(current)
            current = SessionGroup(started_at=start, ended_at=end, segment_ids=[segment.id])

    if current is not None:
        groups.append(current)
    return groups


class SessionStitcher:
    def __init__(self, session: Session, settings: Optional[SettingsStore] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.session = session
        self.settings = settings or SettingsStore(session, config)
        self.events = EventStore(session)

    def stitch_segments(self, segments: Sequence[BroadcastSegment]) -> StitchResult:
        """Create one session per segment group and return the segment assignments."""
        merge_gap_minutes = self.settings.get_merge_gap_minutes()
        delay = timedelta(minutes=self.settings.get_finalize_delay_minutes())

        logger.info(f"Stitching {len(segments)} segments with {merge_gap_minutes} minute merge gap")
        groups = group_segments(segments, timedelta(minutes=merge_gap_minutes))
        logger.info(f"Stitched {len(segments)} segments into {len(groups)} sessions")

        sessions = []
        assignments = []
        for group in groups:
            if group.is_open:
                status, finalize_at = SessionStatus.ACTIVE, None
            else:
                status, finalize_at = SessionStatus.PENDING_FINALIZE, group.last_event_at + delay

            record = BroadcastSession(
                started_at=group.started_at,
                ended_at=group.ended_at,
                last_event_at=group.last_event_at,
                finalize_at=finalize_at,
                status=status.value,
            )
            self.session.add(record)
            self.session.flush()
            sessions.append(record)
            assignments.extend((segment_id, record.id) for segment_id in group.segment_ids)

        return StitchResult(sessions=sessions, assignments=assignments)

    def apply_assignments(self, assignments: Sequence[Tuple[int, int]]):
        for segment_id, session_id in assignments:
            segment = self.session.get(BroadcastSegment, segment_id)
            if segment is not None:
                segment.session_id = session_id
        self.session.flush()
        logger.info(f"Applied {len(assignments)} segment-session assignments")

    def propagate_session_ids_to_events(self) -> int:
        """Copy session ids from segments to events, then re-derive last_event_at/finalize_at."""
        count = self.events.propagate_session_links()
        logger.info(f"Propagated session_id to {count} events")

        delay = timedelta(minutes=self.settings.get_finalize_delay_minutes())
        latest = dict(
            self.session.query(EventLog.session_id, func.max(EventLog.timestamp))
            .filter(EventLog.session_id.isnot(None))
            .group_by(EventLog.session_id)
            .all()
        )
        for record in self.session.query(BroadcastSession).all():
            last_event_at = latest.get(record.id)
            if last_event_at is not None:
                record.last_event_at = as_utc(last_event_at)
            if record.ended_at is not None:
                self._push_finalize_at(record, as_utc(record.last_event_at) + delay)
        self.session.flush()
        return count

    @staticmethod
    def _push_finalize_at(record: BroadcastSession, candidate: datetime):
        current = as_utc(record.finalize_at)
        if current is None or candidate > current:
            record.finalize_at = candidate

    def attach_unstitched_segments(self) -> List[BroadcastSession]:
        """Attach segments without a session to the latest live session or to new ones.

        Returns every session that was created or extended.
        """
        merge_gap = timedelta(minutes=self.settings.get_merge_gap_minutes())
        delay = timedelta(minutes=self.settings.get_finalize_delay_minutes())
        touched: Dict[int, BroadcastSession] = {}

        pending = self.session.query(BroadcastSegment).filter(
            BroadcastSegment.session_id.is_(None)
        ).order_by(BroadcastSegment.started_at, BroadcastSegment.id).all()

        for segment in pending:
            target = self.session.query(BroadcastSession).filter(
                BroadcastSession.status != SessionStatus.FINALIZED.value,
                BroadcastSession.started_at <= segment.started_at,
            ).order_by(BroadcastSession.started_at.desc(), BroadcastSession.id.desc()).first()

            if target is not None and (
                target.ended_at is None or segment.start - as_utc(target.ended_at) <= merge_gap
            ):
                segment.session_id = target.id
                self.session.flush()
                logger.info(f"Attached segment {segment.id} to session {target.id}")
                self.refresh_session(target.id)
            else:
                target = BroadcastSession(
                    started_at=segment.start,
                    ended_at=segment.end,
                    last_event_at=segment.end or segment.start,
                    finalize_at=None if segment.is_open else (segment.end + delay),
                    status=(SessionStatus.ACTIVE if segment.is_open else SessionStatus.PENDING_FINALIZE).value,
                )
                self.session.add(target)
                self.session.flush()
                segment.session_id = target.id
                self.session.flush()
                logger.info(f"Created session {target.id} for segment {segment.id}")
            touched[target.id] = target

        return list(touched.values())

    def refresh_session(self, session_id: int) -> BroadcastSession:
        """Re-derive bounds, last_event_at and finalize_at from a session's segments and events.

        Status only moves forward. While the last segment is open the session
        has no finalize_at, so the finalize job cannot claim it.
        """
        record = self.session.get(BroadcastSession, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)

        segments = self.session.query(BroadcastSegment).filter(
            BroadcastSegment.session_id == session_id
        ).order_by(BroadcastSegment.started_at, BroadcastSegment.id).all()
        if segments:
            record.started_at = min(s.start for s in segments)
            last = segments[-1]
            if last.is_open:
                record.ended_at = None
            else:
                record.ended_at = max(s.end for s in segments if s.end is not None)

        segment_ids = self.session.query(BroadcastSegment.id).filter(
            BroadcastSegment.session_id == session_id
        )
        latest = self.session.query(func.max(EventLog.timestamp)).filter(
            or_(EventLog.session_id == session_id, EventLog.segment_id.in_(segment_ids))
        ).scalar()
        if latest is not None:
            record.last_event_at = as_utc(latest)
        else:
            record.last_event_at = as_utc(record.ended_at) or as_utc(record.started_at)

        status = SessionStatus(record.status)
        if record.ended_at is None:
            record.finalize_at = None
        else:
            delay = timedelta(minutes=self.settings.get_finalize_delay_minutes())
            self._push_finalize_at(record, as_utc(record.last_event_at) + delay)
            if status == SessionStatus.ACTIVE:
                record.status = SessionStatus.PENDING_FINALIZE.value
                logger.info(f"Session {session_id} ended, finalizes at {as_utc(record.finalize_at).isoformat()}")

        self.session.flush()
        return record

    def clear_all(self) -> int:
        """Unlink segments and events from sessions and delete every session."""
        self.session.flush()
        self.session.query(BroadcastSegment).update({BroadcastSegment.session_id: None}, synchronize_session=False)
        self.events.clear_session_links()
        count = self.session.query(BroadcastSession).delete(synchronize_session=False)
        self.session.flush()
        self.session.expire_all()
        logger.info(f"Cleared {count} sessions")
        return count

    def get_by_id(self, session_id: int) -> BroadcastSession:
        record = self.session.get(BroadcastSession, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def list_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SessionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Tuple[List[BroadcastSession], int]:
        """Sessions newest first, with the total count before paging."""
        query = self.session.query(BroadcastSession)
        if status is not None:
            query = query.filter(BroadcastSession.status == SessionStatus(status).value)
        if start_date is not None:
            query = query.filter(BroadcastSession.started_at >= start_date)
        if end_date is not None:
            query = query.filter(BroadcastSession.started_at <= end_date)
        total = query.count()
        sessions = query.order_by(BroadcastSession.started_at.desc()).offset(offset).limit(limit).all()
        return sessions, total
