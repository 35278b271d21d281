"""
Tests for per-session rollups.
"""

import pytest

from broadcast_sessions.database.models import BroadcastSession, EventLog, EventMethod
from broadcast_sessions.processing.rollups import (
    RollupAggregator,
    compute_rollups_from_events,
    occupancy_metrics,
)
from broadcast_sessions.utils.errors import SessionNotFoundError, UnknownEventKindError
from tests.factories import add_event, add_segment, add_session, add_tip, at, memory_db


def event(method, when, username=None, **payload):
    return EventLog(timestamp=when, method=EventMethod(method).value, username=username, raw_event=payload)


class TestComputeRollupsFromEvents:
    """Tests for the pure rollup computation."""

    def test_tokens_followers_and_visitors(self):
        events = [
            event(EventMethod.TIP, at(0, 1), 'a', tip={'tokens': 10}),
            event(EventMethod.TIP, at(0, 2), 'b', tip={'tokens': 25}),
            event(EventMethod.FOLLOW, at(0, 3), 'c'),
            event(EventMethod.FOLLOW, at(0, 4), 'd'),
            event(EventMethod.FOLLOW, at(0, 5), 'e'),
            event(EventMethod.UNFOLLOW, at(0, 6), 'c'),
            event(EventMethod.ENTER, at(0, 7), 'alice'),
            event(EventMethod.ENTER, at(0, 8), 'bob'),
            event(EventMethod.ENTER, at(0, 9), 'alice'),
            event(EventMethod.CHAT, at(0, 10), 'alice', message={'message': 'hello'}),
        ]

        result = compute_rollups_from_events(events)

        assert result.total_tokens == 35
        assert result.followers_gained == 2
        assert result.unique_visitors == 2

    def test_unfollows_can_make_follower_delta_negative(self):
        events = [event(EventMethod.UNFOLLOW, at(0, m), f'u{m}') for m in range(3)]
        assert compute_rollups_from_events(events).followers_gained == -3

    def test_identity_falls_back_to_payload_user(self):
        events = [
            event(EventMethod.ENTER, at(0, 1), user={'username': 'carol'}),
            event(EventMethod.ENTER, at(0, 2), user={'username': 'dave'}),
        ]
        assert compute_rollups_from_events(events).unique_visitors == 2

    def test_viewer_samples_exclude_events_without_sample(self):
        """Peak and average come from embedded samples; events without one are not zeros."""
        events = [
            event(EventMethod.CHAT, at(0, 1), 'a', viewer_count=10),
            event(EventMethod.CHAT, at(0, 2), 'b'),
            event(EventMethod.TIP, at(0, 3), 'c', tip={'tokens': 1}, viewer_count=20),
            event(EventMethod.ENTER, at(0, 4), 'd', viewer_count=30),
        ]

        result = compute_rollups_from_events(events)

        assert result.peak_viewers == 30
        assert result.avg_viewers == pytest.approx(20.0)

    def test_occupancy_fallback_without_samples(self):
        """Without samples, viewers are rebuilt from enter/leave occupancy."""
        events = [
            event(EventMethod.ENTER, at(0, 0), 'a'),
            event(EventMethod.ENTER, at(0, 10), 'b'),
            event(EventMethod.LEAVE, at(0, 20), 'a'),
        ]

        result = compute_rollups_from_events(events)

        assert result.peak_viewers == 2
        assert result.avg_viewers == pytest.approx(1.5)

    def test_occupancy_single_instant_uses_peak(self):
        transitions = [(at(0), EventMethod.ENTER, 'a')]
        assert occupancy_metrics(transitions) == (1, 1.0)

    def test_no_events(self):
        result = compute_rollups_from_events([])
        assert result.to_dict() == {
            'total_tokens': 0,
            'followers_gained': 0,
            'peak_viewers': 0,
            'avg_viewers': 0.0,
            'unique_visitors': 0,
        }

    def test_unknown_kind_raises(self):
        bogus = EventLog(timestamp=at(0), method='mysteryEvent', raw_event={})
        with pytest.raises(UnknownEventKindError):
            compute_rollups_from_events([bogus])

    def test_deterministic(self):
        events = [
            event(EventMethod.TIP, at(0, 1), 'a', tip={'tokens': 7}),
            event(EventMethod.ENTER, at(0, 2), 'a'),
            event(EventMethod.LEAVE, at(0, 9), 'a'),
        ]
        assert compute_rollups_from_events(events) == compute_rollups_from_events(events)


class TestRollupAggregator:
    """Tests for storing rollups on sessions."""

    def setup_method(self):
        self.factory, _ = memory_db()
        self.session = self.factory()
        self.aggregator = RollupAggregator(self.session)

    def teardown_method(self):
        self.session.close()

    def test_includes_events_linked_only_through_segment(self):
        record = add_session(self.session, at(0), at(1))
        segment = add_segment(self.session, at(0), at(1), session_id=record.id)
        direct = add_tip(self.session, at(0, 10), 10)
        direct.session_id = record.id
        via_segment = add_tip(self.session, at(0, 20), 5)
        via_segment.segment_id = segment.id
        add_tip(self.session, at(3), 100)
        self.session.flush()

        result = self.aggregator.compute_rollups(record.id)

        assert result.total_tokens == 15

    def test_update_overwrites_stored_values(self):
        record = add_session(self.session, at(0), at(1), total_tokens=999, followers_gained=50)
        tip = add_tip(self.session, at(0, 10), 10)
        tip.session_id = record.id
        self.session.flush()

        self.aggregator.compute_and_update_session(record.id)
        self.aggregator.compute_and_update_session(record.id)

        stored = self.session.get(BroadcastSession, record.id)
        assert stored.total_tokens == 10
        assert stored.followers_gained == 0

    def test_missing_session_raises(self):
        with pytest.raises(SessionNotFoundError):
            self.aggregator.compute_rollups(12345)

    def test_compute_all_and_aggregate_stats(self):
        first = add_session(self.session, at(0), at(1))
        second = add_session(self.session, at(5), at(5, 30))
        for record, tokens in ((first, 10), (second, 20)):
            tip = add_tip(self.session, record.started_at, tokens)
            tip.session_id = record.id
        follow = add_event(self.session, EventMethod.FOLLOW, at(5, 10), 'fan')
        follow.session_id = second.id
        self.session.flush()

        assert self.aggregator.compute_all_rollups() == 2
        stats = self.aggregator.get_aggregate_stats()

        assert stats['total_sessions'] == 2
        assert stats['total_tokens'] == 30
        assert stats['total_followers'] == 1
        assert stats['total_minutes'] == pytest.approx(90.0)

        later = self.aggregator.get_aggregate_stats(start_date=at(2))
        assert later['total_sessions'] == 1
        assert later['total_tokens'] == 20
