"""
Tests for the segment builder.
"""

import logging
from datetime import timedelta
from types import SimpleNamespace

from broadcast_sessions.database.models import BroadcastSegment, EventLog, EventMethod, SegmentSource, as_utc
from broadcast_sessions.processing.segment_builder import SegmentBuilder, SegmentSpec, pair_markers, partition_blocks
from tests.factories import add_chat, add_event, add_segment, add_tip, at, make_config, memory_db


def marker(event_id, method, when):
    return SimpleNamespace(id=event_id, method=method.value, at=when)


class TestPairMarkers:
    """Tests for the start/stop pairing state machine."""

    def test_start_stop_pair(self):
        """A start followed by a stop yields one closed segment."""
        specs = pair_markers([marker(1, EventMethod.START, at(0)), marker(2, EventMethod.STOP, at(0, 30))])
        assert len(specs) == 1
        assert specs[0].started_at == at(0)
        assert specs[0].ended_at == at(0, 30)
        assert specs[0].start_event_id == 1
        assert specs[0].end_event_id == 2

    def test_double_start_closes_at_new_start(self, caplog):
        """A start while open closes the open segment at the new start without an end event."""
        with caplog.at_level(logging.WARNING):
            specs = pair_markers([
                marker(1, EventMethod.START, at(0)),
                marker(2, EventMethod.START, at(0, 20)),
                marker(3, EventMethod.STOP, at(0, 50)),
            ])
        assert [(s.started_at, s.ended_at, s.end_event_id) for s in specs] == [
            (at(0), at(0, 20), None),
            (at(0, 20), at(0, 50), 3),
        ]
        assert any("is open" in r.message for r in caplog.records)

    def test_unmatched_stop_is_discarded(self, caplog):
        """A stop with nothing open produces no segment and a warning."""
        with caplog.at_level(logging.WARNING):
            specs = pair_markers([marker(1, EventMethod.STOP, at(12))])
        assert specs == []
        assert any("no matching start" in r.message for r in caplog.records)

    def test_trailing_start_stays_open(self):
        """A start left open after the scan yields one open segment."""
        specs = pair_markers([
            marker(1, EventMethod.START, at(0)),
            marker(2, EventMethod.STOP, at(1)),
            marker(3, EventMethod.START, at(2)),
        ])
        assert len(specs) == 2
        assert specs[-1].is_open
        assert sum(1 for s in specs if s.is_open) == 1

    def test_seeded_open_segment_is_closed_in_place(self):
        """Pairing continues an existing open segment and keeps its row id."""
        seed = SegmentSpec(started_at=at(0), ended_at=None, start_event_id=1, segment_id=7)
        specs = pair_markers([marker(5, EventMethod.STOP, at(1))], open_segment=seed)
        assert len(specs) == 1
        assert specs[0].segment_id == 7
        assert specs[0].ended_at == at(1)
        assert specs[0].end_event_id == 5


class TestPartitionBlocks:
    """Tests for gap-based block partitioning."""

    def test_seventh_chat_after_long_gap_starts_new_block(self):
        """Six close chats form one block; a chat 40 minutes later starts another."""
        times = [at(0, m) for m in (0, 5, 12, 20, 28, 35)] + [at(0, 75)]
        blocks = partition_blocks(times, timedelta(minutes=30), key=lambda t: t)
        assert [len(b) for b in blocks] == [6, 1]

    def test_gap_equal_to_threshold_does_not_split(self):
        """Only gaps strictly greater than the threshold split blocks."""
        times = [at(0), at(0, 30), at(1, 0, 1)]
        blocks = partition_blocks(times, timedelta(minutes=30), key=lambda t: t)
        assert [len(b) for b in blocks] == [2, 1]

    def test_empty_input(self):
        assert partition_blocks([], timedelta(minutes=30)) == []


class TestSegmentBuilder:
    """Tests for SegmentBuilder against an in-memory database."""

    def setup_method(self):
        """Set up a fresh database and builder."""
        self.factory, _ = memory_db()
        self.session = self.factory()
        self.builder = SegmentBuilder(self.session, make_config())

    def teardown_method(self):
        self.session.close()

    def test_lone_stop_creates_no_segment(self, caplog):
        """A lone stop is discarded with a logged anomaly."""
        add_event(self.session, EventMethod.STOP, at(12))
        with caplog.at_level(logging.WARNING):
            segments = self.builder.build_explicit_segments()
        assert segments == []
        assert self.session.query(BroadcastSegment).count() == 0
        assert any("no matching start" in r.message for r in caplog.records)

    def test_explicit_segment_from_markers(self):
        """start, chat, tip, stop becomes one segment spanning start to stop."""
        start = add_event(self.session, EventMethod.START, at(0))
        add_chat(self.session, at(0, 5))
        add_tip(self.session, at(0, 10), 10)
        stop = add_event(self.session, EventMethod.STOP, at(0, 30))

        segments = self.builder.build_explicit_segments()

        assert len(segments) == 1
        segment = segments[0]
        assert segment.start == at(0)
        assert segment.end == at(0, 30)
        assert segment.source == SegmentSource.EXPLICIT.value
        assert segment.start_event_id == start.id
        assert segment.end_event_id == stop.id

    def test_since_filters_markers(self):
        """Markers before ``since`` are ignored."""
        for minutes, method in ((0, EventMethod.START), (10, EventMethod.STOP),
                                (60, EventMethod.START), (70, EventMethod.STOP)):
            add_event(self.session, method, at(0, minutes))

        segments = self.builder.build_explicit_segments(since=at(0, 30))

        assert [(s.start, s.end) for s in segments] == [(at(1), at(1, 10))]

    def test_implicit_segment_from_dense_block(self):
        """Six chats become an implicit segment; a lone chat 40 minutes later does not."""
        chats = [add_chat(self.session, at(1, m)) for m in (0, 5, 10, 15, 20, 25)]
        late = add_chat(self.session, at(2, 5))

        segments = self.builder.build_implicit_segments()
        self.builder.assign_events_to_segments()

        assert len(segments) == 1
        assert segments[0].start == at(1, 0)
        assert segments[0].end == at(1, 25)
        assert segments[0].source == SegmentSource.IMPLICIT.value
        assert all(self.session.get(EventLog, c.id).segment_id == segments[0].id for c in chats)
        assert self.session.get(EventLog, late.id).segment_id is None

    def test_small_block_is_discarded(self):
        """Blocks with fewer than five events produce no segment."""
        for m in (0, 5, 10, 15):
            add_chat(self.session, at(3, m))
        assert self.builder.build_implicit_segments() == []

    def test_implicit_segment_ends_at_lookahead_stop(self):
        """The latest unassigned stop within the lookahead window closes the block."""
        for m in (0, 2, 4, 6, 8):
            add_chat(self.session, at(4, m))
        stop = add_event(self.session, EventMethod.STOP, at(4, 11))

        segments = self.builder.build_implicit_segments()

        assert len(segments) == 1
        assert segments[0].end == at(4, 11)
        assert segments[0].end_event_id == stop.id

    def test_implicit_block_overlapping_segment_is_skipped(self):
        """A block that overlaps an existing segment is not turned into a segment."""
        add_segment(self.session, at(5, 18), at(5, 40))
        for m in (0, 5, 10, 15, 20):
            add_chat(self.session, at(5, m))

        assert self.builder.build_implicit_segments() == []
        assert self.session.query(BroadcastSegment).count() == 1

    def test_implicit_rerun_creates_no_duplicates(self):
        """Running the implicit pass twice creates the segment once."""
        for m in (0, 5, 10, 15, 20):
            add_chat(self.session, at(6, m))

        first = self.builder.build_implicit_segments()
        second = self.builder.build_implicit_segments()

        assert len(first) == 1
        assert second == []

    def test_boundary_event_goes_to_segment_starting_there(self):
        """Events on a shared boundary belong to the later segment; ends are inclusive."""
        first = add_segment(self.session, at(0), at(0, 30))
        second = add_segment(self.session, at(0, 30), at(1))
        open_segment = add_segment(self.session, at(2), None)
        inside = add_chat(self.session, at(0, 10))
        boundary = add_chat(self.session, at(0, 30))
        end_of_second = add_chat(self.session, at(1))
        outside = add_chat(self.session, at(1, 30))
        live = add_chat(self.session, at(3))

        assigned = self.builder.assign_events_to_segments()

        assert assigned == 4
        assert self.session.get(EventLog, inside.id).segment_id == first.id
        assert self.session.get(EventLog, boundary.id).segment_id == second.id
        assert self.session.get(EventLog, end_of_second.id).segment_id == second.id
        assert self.session.get(EventLog, outside.id).segment_id is None
        assert self.session.get(EventLog, live.id).segment_id == open_segment.id

    def test_clear_all_unlinks_and_deletes(self):
        add_event(self.session, EventMethod.START, at(0))
        add_chat(self.session, at(0, 5))
        add_event(self.session, EventMethod.STOP, at(0, 10))
        self.builder.build_explicit_segments()
        self.builder.assign_events_to_segments()

        cleared = self.builder.clear_all()

        assert cleared == 1
        assert self.session.query(BroadcastSegment).count() == 0
        assert self.session.query(EventLog).filter(EventLog.segment_id.isnot(None)).count() == 0


class TestExtendExplicitSegments:
    """Tests for incremental pairing of newly arrived markers."""

    def setup_method(self):
        self.factory, _ = memory_db()
        self.session = self.factory()
        self.builder = SegmentBuilder(self.session, make_config())

    def teardown_method(self):
        self.session.close()

    def test_new_markers_close_open_segment_and_open_another(self):
        """A stop closes the open segment in place and a later start opens a new one."""
        add_event(self.session, EventMethod.START, at(0))
        add_chat(self.session, at(0, 5))
        (open_segment,) = self.builder.build_explicit_segments()
        self.builder.assign_events_to_segments()

        stop = add_event(self.session, EventMethod.STOP, at(0, 20))
        add_event(self.session, EventMethod.START, at(0, 40))
        add_chat(self.session, at(0, 45))

        changed = self.builder.extend_explicit_segments()

        assert len(changed) == 2
        closed = self.session.get(BroadcastSegment, open_segment.id)
        assert closed.end == at(0, 20)
        assert closed.end_event_id == stop.id
        segments = self.builder.get_all()
        assert len(segments) == 2
        assert segments[-1].is_open
        assert segments[-1].start == at(0, 40)

    def test_closing_releases_events_past_the_new_end(self):
        """Events linked to the open segment after its new end are released for relinking."""
        add_event(self.session, EventMethod.START, at(0))
        (open_segment,) = self.builder.build_explicit_segments()
        before = add_chat(self.session, at(0, 5))
        add_event(self.session, EventMethod.STOP, at(0, 20))
        after = add_chat(self.session, at(0, 25))
        self.builder.assign_events_to_segments()
        assert self.session.get(EventLog, after.id).segment_id == open_segment.id

        self.builder.extend_explicit_segments()

        assert self.session.get(EventLog, before.id).segment_id == open_segment.id
        assert self.session.get(EventLog, after.id).segment_id is None

    def test_nothing_new_is_a_no_op(self):
        add_event(self.session, EventMethod.START, at(0))
        add_event(self.session, EventMethod.STOP, at(1))
        self.builder.build_explicit_segments()
        self.builder.assign_events_to_segments()

        assert self.builder.extend_explicit_segments() == []
        assert as_utc(self.builder.get_all()[0].ended_at) == at(1)
