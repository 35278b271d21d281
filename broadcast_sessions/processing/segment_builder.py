"""
Segment builder.

Turns the raw event log into non-overlapping broadcast segments:

1. Explicit segments from broadcastStart/broadcastStop pairs
2. Implicit segments from dense blocks of activity no explicit segment covers
3. Linking every event to the segment that contains it
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from broadcast_sessions.database.event_store import EventStore
from broadcast_sessions.database.models import (
    BroadcastSegment,
    EventLog,
    EventMethod,
    SegmentSource,
    as_utc,
)
from broadcast_sessions.utils.config import get_sessions_config

logger = logging.getLogger(__name__)


@dataclass
class SegmentSpec:
    """A segment before it is written. ``segment_id`` marks an existing row."""
    started_at: datetime
    ended_at: Optional[datetime]
    start_event_id: Optional[int]
    end_event_id: Optional[int] = None
    segment_id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


def pair_markers(markers: Iterable[EventLog], open_segment: Optional[SegmentSpec] = None) -> List[SegmentSpec]:
    """Pair start/stop markers (already in ``(timestamp, id)`` order) into segments.

    At most one segment is open at a time. A start while open closes the open
    segment at the new start. A stop with nothing open is discarded. Both
    anomalies are logged and never fatal.
    """
    current = open_segment
    segments: List[SegmentSpec] = []

    for event in markers:
        if event.method == EventMethod.START.value:
            if current is not None:
                logger.warning(
                    f"broadcastStart at {event.at.isoformat()} while segment started at "
                    f"{as_utc(current.started_at).isoformat()} is open, closing it at the new start"
                )
                current.ended_at = event.at
                current.end_event_id = None
                segments.append(current)
            current = SegmentSpec(started_at=event.at, ended_at=None, start_event_id=event.id)
        elif event.method == EventMethod.STOP.value:
            if current is None:
                logger.warning(f"Discarding broadcastStop at {event.at.isoformat()} with no matching start")
                continue
            current.ended_at = event.at
            current.end_event_id = event.id
            segments.append(current)
            current = None

    if current is not None:
        logger.info(f"Active segment detected, started at {as_utc(current.started_at).isoformat()}")
        segments.append(current)

    return segments


def partition_blocks(
    items: List[Any],
    gap: timedelta,
    key: Callable[[Any], datetime] = lambda e: e.at,
) -> List[List[Any]]:
    """Split time-ordered items into blocks wherever consecutive items are more than ``gap`` apart."""
    blocks: List[List[Any]] = []
    previous = None
    for item in items:
        ts = key(item)
        if previous is None or ts - previous > gap:
            blocks.append([])
        blocks[-1].append(item)
        previous = ts
    return blocks


class SegmentBuilder:
    """Builds and links ``broadcast_segments`` rows for one database session."""

    def __init__(self, session: Session, config: Optional[Dict[str, Any]] = None):
        self.session = session
        self.events = EventStore(session)
        sessions_config = get_sessions_config(config)
        self.block_gap = timedelta(minutes=sessions_config.get('implicit_block_gap_minutes', 30))
        self.min_block_events = int(sessions_config.get('implicit_min_events', 5))
        self.stop_lookahead = timedelta(minutes=sessions_config.get('implicit_stop_lookahead_minutes', 5))

    def _write(self, specs: List[SegmentSpec], source: SegmentSource) -> List[BroadcastSegment]:
        segments = []
        for spec in specs:
            if spec.segment_id is not None:
                segment = self.session.get(BroadcastSegment, spec.segment_id)
                segment.ended_at = spec.ended_at
                segment.end_event_id = spec.end_event_id
                if spec.ended_at is not None:
                    self.session.flush()
                    released = self.events.release_after(segment.id, spec.ended_at)
                    if released:
                        logger.info(f"Released {released} events past the new end of segment {segment.id}")
            else:
                segment = BroadcastSegment(
                    started_at=spec.started_at,
                    ended_at=spec.ended_at,
                    source=source.value,
                    start_event_id=spec.start_event_id,
                    end_event_id=spec.end_event_id,
                )
                self.session.add(segment)
            segments.append(segment)
        self.session.flush()
        return segments

    def build_explicit_segments(self, since: Optional[datetime] = None) -> List[BroadcastSegment]:
        """Create segments from every start/stop marker (optionally only those at or after ``since``)."""
        logger.info(f"Building segments from events{f' since {since.isoformat()}' if since else ''}")
        markers = self.events.query_events(methods=EventMethod.markers(), start=since)
        logger.info(f"Found {len(markers)} broadcast start/stop events")
        if not markers:
            return []
        segments = self._write(pair_markers(markers), SegmentSource.EXPLICIT)
        logger.info(f"Saved {len(segments)} explicit segments")
        return segments

    def extend_explicit_segments(self) -> List[BroadcastSegment]:
        """Pair markers that arrived after the last segment boundary, continuing the open segment."""
        latest = self.session.query(BroadcastSegment).order_by(
            BroadcastSegment.started_at.desc(), BroadcastSegment.id.desc()
        ).first()

        open_spec = None
        since = None
        if latest is not None:
            since = latest.end or latest.start
            if latest.is_open:
                open_spec = SegmentSpec(
                    started_at=latest.start,
                    ended_at=None,
                    start_event_id=latest.start_event_id,
                    segment_id=latest.id,
                )

        # The open segment is unbounded above, so markers after its start may
        # already be linked to it.
        linkable = {None} if open_spec is None else {None, open_spec.segment_id}
        markers = [
            m for m in self.events.query_events(methods=EventMethod.markers(), start=since)
            if m.segment_id in linkable
            and (open_spec is None or m.id != open_spec.start_event_id)
        ]
        if not markers:
            return []

        specs = pair_markers(markers, open_segment=open_spec)
        changed = [s for s in specs if s.segment_id is None or not s.is_open]
        segments = self._write(changed, SegmentSource.EXPLICIT)
        if segments:
            logger.info(f"Extended explicit segments: {len(segments)} created or closed")
        return segments

    def _overlaps_existing(self, start: datetime, end: datetime) -> bool:
        return self.session.query(BroadcastSegment.id).filter(
            BroadcastSegment.started_at < end,
            (BroadcastSegment.ended_at.is_(None)) | (BroadcastSegment.ended_at > start),
        ).first() is not None

    def build_implicit_segments(self) -> List[BroadcastSegment]:
        """Create segments for dense blocks of unassigned activity."""
        logger.info("Looking for orphaned events to build implicit segments...")
        orphans = self.events.query_events(methods=EventMethod.activity(), unassigned=True)
        blocks = [b for b in partition_blocks(orphans, self.block_gap) if len(b) >= self.min_block_events]
        logger.info(f"Found {len(blocks)} blocks of orphaned activity with at least {self.min_block_events} events")

        created = []
        for block in blocks:
            block_start = block[0].at
            block_end = block[-1].at

            stops = self.events.query_events(
                methods=[EventMethod.STOP],
                start=block_start,
                end=block_end + self.stop_lookahead,
                unassigned=True,
            )
            if stops:
                stop = stops[-1]
                ended_at = max(stop.at, block_end)
                end_event_id = stop.id
            else:
                ended_at = block_end
                end_event_id = None

            if self._overlaps_existing(block_start, ended_at):
                logger.debug(f"Skipping block {block_start.isoformat()} - {ended_at.isoformat()}: overlaps a segment")
                continue

            segment = BroadcastSegment(
                started_at=block_start,
                ended_at=ended_at,
                source=SegmentSource.IMPLICIT.value,
                start_event_id=block[0].id,
                end_event_id=end_event_id,
            )
            self.session.add(segment)
            self.session.flush()
            created.append(segment)
            logger.info(
                f"Created implicit segment {block_start.isoformat()} - {ended_at.isoformat()} ({len(block)} events)"
            )

        return created

    def assign_events_to_segments(self) -> int:
        """Link unassigned events to their containing segment, newest segment first."""
        segments = self.session.query(BroadcastSegment).order_by(
            BroadcastSegment.started_at.desc(), BroadcastSegment.id.desc()
        ).all()
        total = 0
        for segment in segments:
            total += self.events.link_range_to_segment(segment.id, segment.start, segment.end)
        logger.info(f"Assigned {total} events to {len(segments)} segments")
        return total

    def clear_all(self) -> int:
        """Clear all event linkages and delete every segment."""
        self.events.clear_links()
        count = self.session.query(BroadcastSegment).delete(synchronize_session=False)
        self.session.flush()
        self.session.expire_all()
        logger.info(f"Cleared {count} segments")
        return count

    def get_all(self) -> List[BroadcastSegment]:
        return self.session.query(BroadcastSegment).order_by(BroadcastSegment.started_at).all()
