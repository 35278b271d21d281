"""
Shared builders for tests: in-memory databases, fixed timestamps and events.
"""

import copy
from datetime import datetime, timedelta, timezone

from broadcast_sessions.database.models import (
    BroadcastSegment,
    BroadcastSession,
    EventLog,
    EventMethod,
    SegmentSource,
    SessionStatus,
)
from broadcast_sessions.database.session import create_session_factory, session_context
from broadcast_sessions.services.summarizer import SummaryError, SummaryResult
from broadcast_sessions.utils.config import DEFAULT_CONFIG

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_config(**sessions):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config['sessions'].update(sessions)
    return config


def at(hours=0, minutes=0, seconds=0):
    return BASE + timedelta(hours=hours, minutes=minutes, seconds=seconds)


def memory_db():
    """Return (sessionmaker, get_session-style context factory) for a fresh in-memory database."""
    factory = create_session_factory('sqlite://')
    return factory, session_context(factory)


def add_event(session, method, when, username=None, **payload):
    event = EventLog(
        timestamp=when,
        method=EventMethod(method).value,
        username=username,
        raw_event=payload,
    )
    session.add(event)
    session.flush()
    return event


def add_tip(session, when, tokens, username='tipper'):
    return add_event(session, EventMethod.TIP, when, username, tip={'tokens': tokens})


def add_chat(session, when, text='hi', username='viewer'):
    return add_event(session, EventMethod.CHAT, when, username, message={'message': text})


def add_segment(session, start, end, source=SegmentSource.EXPLICIT, session_id=None):
    segment = BroadcastSegment(started_at=start, ended_at=end, source=source.value, session_id=session_id)
    session.add(segment)
    session.flush()
    return segment


def add_session(session, start, end, status=SessionStatus.PENDING_FINALIZE, finalize_at=None,
                last_event_at=None, **fields):
    record = BroadcastSession(
        started_at=start,
        ended_at=end,
        last_event_at=last_event_at or end or start,
        finalize_at=finalize_at,
        status=SessionStatus(status).value,
        **fields
    )
    session.add(record)
    session.flush()
    return record


class FakeSummarizer:
    """Stands in for SummaryService; records every transcript it is given."""

    def __init__(self, available=True, fail=False, text='Great stream', tokens=42):
        self.available = available
        self.fail = fail
        self.text = text
        self.tokens = tokens
        self.calls = []

    def is_available(self):
        return self.available

    async def generate_preview(self, transcript):
        self.calls.append(transcript)
        if self.fail:
            raise SummaryError("service unavailable")
        return SummaryResult(summary_text=self.text, tokens_used=self.tokens)
