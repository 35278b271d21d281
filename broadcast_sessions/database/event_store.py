"""
Event store access for the session pipeline.

The event log is append-only from the pipeline's point of view: the only
writes the pipeline makes are the segment/session linkage columns.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import BroadcastSegment, EventLog, EventMethod


class EventStore:
    """Queries and linkage writes against ``event_logs``.

    All queries return events ordered by ``(timestamp, id)``.
    """

    def __init__(self, session: Session):
        self.session = session

    def query_events(
        self,
        methods: Optional[Iterable[EventMethod]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        segment_id: Optional[int] = None,
        session_id: Optional[int] = None,
        unassigned: bool = False,
    ) -> List[EventLog]:
        """Return events filtered by kind, inclusive time range and linkage."""
        query = self.session.query(EventLog)
        if methods is not None:
            query = query.filter(EventLog.method.in_([EventMethod(m).value for m in methods]))
        if start is not None:
            query = query.filter(EventLog.timestamp >= start)
        if end is not None:
            query = query.filter(EventLog.timestamp <= end)
        if segment_id is not None:
            query = query.filter(EventLog.segment_id == segment_id)
        if session_id is not None:
            query = query.filter(EventLog.session_id == session_id)
        if unassigned:
            query = query.filter(EventLog.segment_id.is_(None))
        return query.order_by(EventLog.timestamp, EventLog.id).all()

    def query_session_events(self, session_id: int) -> List[EventLog]:
        """Events linked to a session directly or through one of its segments."""
        segment_ids = self.session.query(BroadcastSegment.id).filter(
            BroadcastSegment.session_id == session_id
        )
        return self.session.query(EventLog).filter(
            or_(
                EventLog.session_id == session_id,
                EventLog.segment_id.in_(segment_ids),
            )
        ).order_by(EventLog.timestamp, EventLog.id).all()

    def _bulk_update(self, query, values: dict) -> int:
        self.session.flush()
        count = query.update(values, synchronize_session=False)
        self.session.expire_all()
        return count

    def write_segment_link(self, event_ids: Sequence[int], segment_id: int) -> int:
        if not event_ids:
            return 0
        query = self.session.query(EventLog).filter(EventLog.id.in_(list(event_ids)))
        return self._bulk_update(query, {EventLog.segment_id: segment_id})

    def write_session_link(self, event_ids: Sequence[int], session_id: int) -> int:
        if not event_ids:
            return 0
        query = self.session.query(EventLog).filter(EventLog.id.in_(list(event_ids)))
        return self._bulk_update(query, {EventLog.session_id: session_id})

    def link_range_to_segment(self, segment_id: int, start: datetime, end: Optional[datetime]) -> int:
        """Link every unassigned event with ``start <= timestamp <= end`` (end None = unbounded)."""
        query = self.session.query(EventLog).filter(
            EventLog.segment_id.is_(None),
            EventLog.timestamp >= start,
        )
        if end is not None:
            query = query.filter(EventLog.timestamp <= end)
        return self._bulk_update(query, {EventLog.segment_id: segment_id})

    def release_after(self, segment_id: int, end: datetime) -> int:
        """Unlink events past ``end`` from a segment that was just closed in place."""
        query = self.session.query(EventLog).filter(
            EventLog.segment_id == segment_id,
            EventLog.timestamp > end,
        )
        return self._bulk_update(query, {EventLog.segment_id: None, EventLog.session_id: None})

    def propagate_session_links(self) -> int:
        """Copy ``session_id`` from each event's segment to events missing one."""
        pairs = self.session.query(BroadcastSegment.id, BroadcastSegment.session_id).filter(
            BroadcastSegment.session_id.isnot(None)
        ).all()
        updated = 0
        for segment_id, session_id in pairs:
            query = self.session.query(EventLog).filter(
                EventLog.segment_id == segment_id,
                EventLog.session_id.is_(None),
            )
            updated += self._bulk_update(query, {EventLog.session_id: session_id})
        return updated

    def clear_links(self) -> int:
        """Clear segment and session linkage on every event (full rebuild only)."""
        query = self.session.query(EventLog).filter(
            or_(EventLog.segment_id.isnot(None), EventLog.session_id.isnot(None))
        )
        return self._bulk_update(query, {EventLog.segment_id: None, EventLog.session_id: None})

    def clear_session_links(self) -> int:
        query = self.session.query(EventLog).filter(EventLog.session_id.isnot(None))
        return self._bulk_update(query, {EventLog.session_id: None})

    def append(
        self,
        method: EventMethod,
        timestamp: datetime,
        username: Optional[str] = None,
        raw_event: Optional[dict] = None,
    ) -> EventLog:
        """Append one event. The feed poller owns ingestion; tools and tests use this."""
        event = EventLog(
            timestamp=timestamp,
            method=EventMethod(method).value,
            username=username,
            raw_event=raw_event or {},
        )
        self.session.add(event)
        self.session.flush()
        return event

    def get_chat_transcript_rows(self, session_id: int, limit: int = 1000) -> List[Tuple[str, str]]:
        """Return up to ``limit`` (username, message) pairs for a session's chat."""
        rows = []
        for event in self.query_session_events(session_id):
            if event.method != EventMethod.CHAT.value:
                continue
            text = event.chat_text
            if not text:
                continue
            rows.append((event.viewer or 'unknown', text))
            if len(rows) >= limit:
                break
        return rows
