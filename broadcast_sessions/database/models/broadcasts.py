"""
Broadcast reconstruction models.

Contains:
- BroadcastSegment: one candidate contiguous broadcast interval
- BroadcastSession: one or more segments merged under the merge-gap rule
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, JSON, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from .base import Base, SegmentSource, SessionStatus, SummaryStatus, as_utc, utcnow


class BroadcastSession(Base):
    """
    The externally reported unit of a broadcast.

    Attributes:
        id: Primary key
        started_at: Start of the first constituent segment
        ended_at: End of the last segment; NULL while that segment is open
        last_event_at: Latest event timestamp linked to the session
        finalize_at: When the finalize job may claim the session
        status: 'active' -> 'pending_finalize' -> 'finalized'

    Rollups (overwritten by the rollup aggregator):
        total_tokens, followers_gained, peak_viewers, avg_viewers, unique_visitors

    Summary (written only by the finalize job or an explicit regenerate):
        ai_summary, ai_summary_status, ai_summary_generated_at, ai_summary_tokens_used

    Metadata:
        notes, tags: operator supplied
    """
    __tablename__ = 'broadcast_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True))
    last_event_at = Column(DateTime(timezone=True), nullable=False)
    finalize_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE.value)

    total_tokens = Column(Integer, default=0, nullable=False)
    followers_gained = Column(Integer, default=0, nullable=False)
    peak_viewers = Column(Integer, default=0, nullable=False)
    avg_viewers = Column(Float, default=0.0, nullable=False)
    unique_visitors = Column(Integer, default=0, nullable=False)

    ai_summary = Column(Text)
    ai_summary_status = Column(String(20), nullable=False, default=SummaryStatus.PENDING.value)
    ai_summary_generated_at = Column(DateTime(timezone=True))
    ai_summary_tokens_used = Column(Integer)

    notes = Column(Text)
    tags = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    segments = relationship(
        'BroadcastSegment',
        back_populates='session',
        order_by='BroadcastSegment.started_at',
    )

    __table_args__ = (
        Index('idx_sessions_started_at', 'started_at'),
        Index('idx_sessions_status_finalize_at', 'status', 'finalize_at'),
    )

    @property
    def duration_minutes(self):
        if self.ended_at is None:
            return None
        return (as_utc(self.ended_at) - as_utc(self.started_at)).total_seconds() / 60

    def to_dict(self) -> dict:
        def iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'started_at': iso(self.started_at),
            'ended_at': iso(self.ended_at),
            'last_event_at': iso(self.last_event_at),
            'finalize_at': iso(self.finalize_at),
            'status': self.status,
            'duration_minutes': self.duration_minutes,
            'total_tokens': self.total_tokens,
            'followers_gained': self.followers_gained,
            'peak_viewers': self.peak_viewers,
            'avg_viewers': self.avg_viewers,
            'unique_visitors': self.unique_visitors,
            'ai_summary': self.ai_summary,
            'ai_summary_status': self.ai_summary_status,
            'ai_summary_generated_at': iso(self.ai_summary_generated_at),
            'notes': self.notes,
            'tags': list(self.tags or []),
        }


class BroadcastSegment(Base):
    """
    A candidate broadcast interval built from the event log.

    Attributes:
        id: Primary key
        started_at: Interval start
        ended_at: Interval end; NULL means the broadcast is still in progress
        session_id: Owning session (NULL until stitched)
        source: 'explicit', 'implicit' or 'manual'
        start_event_id: Event that opened the interval, for debugging
        end_event_id: Event that closed the interval, if any
    """
    __tablename__ = 'broadcast_segments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True))
    session_id = Column(Integer, ForeignKey('broadcast_sessions.id', ondelete='SET NULL'))
    source = Column(String(20), nullable=False, default=SegmentSource.EXPLICIT.value)
    start_event_id = Column(Integer)
    end_event_id = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    session = relationship('BroadcastSession', back_populates='segments')

    __table_args__ = (
        Index('idx_segments_started_at', 'started_at'),
        Index('idx_segments_session_id', 'session_id'),
    )

    @property
    def start(self):
        return as_utc(self.started_at)

    @property
    def end(self):
        return as_utc(self.ended_at)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'started_at': self.start.isoformat(),
            'ended_at': self.end.isoformat() if self.end else None,
            'session_id': self.session_id,
            'source': self.source,
            'start_event_id': self.start_event_id,
            'end_event_id': self.end_event_id,
        }

    def __repr__(self):
        return f"<BroadcastSegment {self.id} {self.started_at} -> {self.ended_at} ({self.source})>"
