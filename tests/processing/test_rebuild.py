"""
Tests for full rebuilds and incremental maintenance.
"""

from broadcast_sessions.database.models import (
    BroadcastSegment,
    BroadcastSession,
    EventLog,
    EventMethod,
    SessionStatus,
    as_utc,
)
from broadcast_sessions.database.settings_store import MERGE_GAP_KEY, SettingsStore
from broadcast_sessions.processing.rebuild import SessionRebuilder, rebuild
from tests.factories import add_chat, add_event, add_tip, at, make_config, memory_db


def boundaries(session):
    return [
        (as_utc(s.started_at), as_utc(s.ended_at), s.source)
        for s in session.query(BroadcastSegment).order_by(BroadcastSegment.started_at).all()
    ]


def session_bounds(session):
    return [
        (as_utc(s.started_at), as_utc(s.ended_at), s.status, s.total_tokens)
        for s in session.query(BroadcastSession).order_by(BroadcastSession.started_at).all()
    ]


def seed_mixed_log(session):
    """Explicit pairs, a double start, a lone stop, an orphan activity block and a live broadcast."""
    add_event(session, EventMethod.START, at(0))
    add_chat(session, at(0, 5))
    add_tip(session, at(0, 10), 10)
    add_event(session, EventMethod.STOP, at(0, 30))

    add_event(session, EventMethod.START, at(0, 40))
    add_event(session, EventMethod.START, at(0, 50))
    add_chat(session, at(0, 55))
    add_event(session, EventMethod.STOP, at(1))

    add_event(session, EventMethod.STOP, at(3))

    for m in (0, 4, 8, 12, 16, 20):
        add_chat(session, at(5, m), username=f'u{m}')

    add_event(session, EventMethod.START, at(9))
    add_chat(session, at(9, 5))


class TestRebuild:
    """Tests for SessionRebuilder.rebuild."""

    def setup_method(self):
        self.factory, self.scope = memory_db()
        self.session = self.factory()
        self.config = make_config()
        self.rebuilder = SessionRebuilder(self.session, self.config)

    def teardown_method(self):
        self.session.close()

    def test_scenario_merges_two_segments_into_one_session(self):
        """Two segments ten minutes apart with a 15 minute gap form one session with the tip total."""
        SettingsStore(self.session, self.config).set(MERGE_GAP_KEY, 15)
        add_event(self.session, EventMethod.START, at(0))
        add_chat(self.session, at(0, 5))
        add_tip(self.session, at(0, 10), 10)
        add_event(self.session, EventMethod.STOP, at(0, 30))
        add_event(self.session, EventMethod.START, at(0, 40))
        add_event(self.session, EventMethod.STOP, at(1))

        result = self.rebuilder.rebuild()

        assert result.segments == 2
        assert result.sessions == 1
        record = self.session.query(BroadcastSession).one()
        assert as_utc(record.started_at) == at(0)
        assert as_utc(record.ended_at) == at(1)
        assert record.total_tokens == 10
        assert record.status == SessionStatus.PENDING_FINALIZE.value

    def test_rebuild_is_idempotent(self):
        seed_mixed_log(self.session)

        first = self.rebuilder.rebuild()
        first_segments = boundaries(self.session)
        first_sessions = session_bounds(self.session)
        second = self.rebuilder.rebuild()

        assert first == second
        assert boundaries(self.session) == first_segments
        assert session_bounds(self.session) == first_sessions

    def test_segments_do_not_overlap(self):
        seed_mixed_log(self.session)
        self.rebuilder.rebuild()

        segments = self.session.query(BroadcastSegment).order_by(BroadcastSegment.started_at).all()
        assert len(segments) == 5
        for current, following in zip(segments, segments[1:]):
            assert current.end is not None
            assert current.end <= following.start
        assert sum(1 for s in segments if s.is_open) == 1

    def test_activity_inside_segments_is_linked(self):
        """Every event inside a segment's bounds carries that segment and its session."""
        seed_mixed_log(self.session)
        self.rebuilder.rebuild()

        for segment in self.session.query(BroadcastSegment).all():
            query = self.session.query(EventLog).filter(EventLog.timestamp >= segment.started_at)
            if segment.ended_at is not None:
                query = query.filter(EventLog.timestamp <= segment.ended_at)
            for event in query.all():
                assert event.segment_id is not None
                assert event.session_id is not None

        lone_stop = self.session.query(EventLog).filter(EventLog.timestamp == at(3)).one()
        assert lone_stop.segment_id is None

    def test_open_segment_gives_active_session(self):
        seed_mixed_log(self.session)
        self.rebuilder.rebuild()

        active = self.session.query(BroadcastSession).filter_by(status=SessionStatus.ACTIVE.value).all()
        assert len(active) == 1
        assert active[0].ended_at is None
        assert active[0].finalize_at is None

    def test_from_date_limits_explicit_markers(self):
        add_event(self.session, EventMethod.START, at(0))
        add_event(self.session, EventMethod.STOP, at(0, 30))
        add_event(self.session, EventMethod.START, at(2))
        add_event(self.session, EventMethod.STOP, at(2, 30))

        result = self.rebuilder.rebuild(from_date=at(1))

        assert result.explicit_segments == 1
        assert boundaries(self.session)[0][0] == at(2)

    def test_module_rebuild_commits(self):
        add_event(self.session, EventMethod.START, at(0))
        add_event(self.session, EventMethod.STOP, at(1))
        self.session.commit()

        result = rebuild(session_factory=self.scope, config=self.config)

        assert result.sessions == 1
        with self.scope() as other:
            assert other.query(BroadcastSession).count() == 1


class TestProcessNewEvents:
    """Tests for incremental maintenance."""

    def setup_method(self):
        self.factory, _ = memory_db()
        self.session = self.factory()
        self.rebuilder = SessionRebuilder(self.session, make_config())

    def teardown_method(self):
        self.session.close()

    def test_stop_arrival_closes_live_session(self):
        """A stop for the live broadcast ends its session and schedules finalization."""
        add_event(self.session, EventMethod.START, at(0))
        add_chat(self.session, at(0, 5))
        self.rebuilder.rebuild()
        live = self.session.query(BroadcastSession).one()
        assert live.status == SessionStatus.ACTIVE.value

        add_tip(self.session, at(0, 20), 40)
        add_event(self.session, EventMethod.STOP, at(0, 45))
        result = self.rebuilder.process_new_events()

        record = self.session.get(BroadcastSession, live.id)
        assert result.sessions_touched == [live.id]
        assert record.status == SessionStatus.PENDING_FINALIZE.value
        assert as_utc(record.ended_at) == at(0, 45)
        assert as_utc(record.finalize_at) == at(1, 15)
        assert record.total_tokens == 40

    def test_new_broadcast_within_gap_joins_pending_session(self):
        add_event(self.session, EventMethod.START, at(0))
        add_event(self.session, EventMethod.STOP, at(1))
        self.rebuilder.rebuild()
        existing = self.session.query(BroadcastSession).one()

        add_event(self.session, EventMethod.START, at(1, 10))
        add_tip(self.session, at(1, 15), 5)
        add_event(self.session, EventMethod.STOP, at(1, 40))
        result = self.rebuilder.process_new_events()

        assert result.segments_created == 1
        assert self.session.query(BroadcastSession).count() == 1
        record = self.session.get(BroadcastSession, existing.id)
        assert as_utc(record.ended_at) == at(1, 40)
        assert record.status == SessionStatus.PENDING_FINALIZE.value
        assert as_utc(record.finalize_at) == at(2, 10)
        assert record.total_tokens == 5

    def test_nothing_new(self):
        add_event(self.session, EventMethod.START, at(0))
        add_event(self.session, EventMethod.STOP, at(1))
        self.rebuilder.rebuild()

        result = self.rebuilder.process_new_events()

        assert result.segments_created == 0
        assert result.sessions_touched == []
