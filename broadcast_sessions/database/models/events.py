"""
Event log model.

Contains:
- EventLog: one row per platform event, appended by the events feed poller
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Index

from .base import Base, EventMethod, as_utc, utcnow


class EventLog(Base):
    """
    A single timestamped platform event.

    The session pipeline only reads these rows and writes the two linkage
    columns. Ordering is (timestamp, id); the autoincrement id breaks ties.

    Attributes:
        id: Primary key
        timestamp: When the platform emitted the event (UTC)
        method: Wire name of the event kind (see EventMethod)
        username: Acting viewer, when the event has one
        raw_event: Original JSON payload
        segment_id: Segment this event belongs to (set by the segment builder)
        session_id: Session this event belongs to (copied from its segment)
    """
    __tablename__ = 'event_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    method = Column(String(50), nullable=False)
    username = Column(String(255))
    raw_event = Column(JSON, nullable=False, default=dict)
    segment_id = Column(Integer, ForeignKey('broadcast_segments.id', ondelete='SET NULL'))
    session_id = Column(Integer, ForeignKey('broadcast_sessions.id', ondelete='SET NULL'))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_event_logs_timestamp', 'timestamp', 'id'),
        Index('idx_event_logs_method', 'method'),
        Index('idx_event_logs_segment_id', 'segment_id'),
        Index('idx_event_logs_session_method', 'session_id', 'method'),
    )

    @property
    def kind(self) -> EventMethod:
        return EventMethod(self.method)

    @property
    def at(self):
        return as_utc(self.timestamp)

    @property
    def payload(self) -> dict:
        return self.raw_event or {}

    @property
    def viewer(self):
        """Viewer identity: username column, else the payload's user block."""
        if self.username:
            return self.username
        user = self.payload.get('user') or {}
        return user.get('username')

    @property
    def tip_tokens(self) -> int:
        tip = self.payload.get('tip') or {}
        try:
            return int(tip.get('tokens') or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def viewer_count(self):
        """Embedded viewer-count sample, or None when the event carries none."""
        value = self.payload.get('viewer_count')
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def chat_text(self):
        message = self.payload.get('message') or {}
        return message.get('message')

    def __repr__(self):
        return f"<EventLog {self.id} {self.method} @ {self.timestamp}>"
