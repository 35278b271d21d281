"""
Per-session rollups computed from linked events.

The computation is a pure function of the event set; storing it overwrites
every rollup column on the session.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from broadcast_sessions.database.event_store import EventStore
from broadcast_sessions.database.models import BroadcastSession, EventLog, EventMethod, as_utc, utcnow
from broadcast_sessions.utils.errors import SessionNotFoundError, UnknownEventKindError

logger = logging.getLogger(__name__)


@dataclass
class RollupResult:
    total_tokens: int = 0
    followers_gained: int = 0
    peak_viewers: int = 0
    avg_viewers: float = 0.0
    unique_visitors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_event(method: str) -> EventMethod:
    try:
        return EventMethod(method)
    except ValueError:
        raise UnknownEventKindError(method)


def occupancy_metrics(transitions: List[Tuple[datetime, EventMethod, str]]) -> Tuple[int, float]:
    """Peak and time-weighted average of concurrent viewers from enter/leave transitions."""
    if not transitions:
        return 0, 0.0

    active = set()
    counts = []
    for ts, kind, viewer in transitions:
        if kind == EventMethod.ENTER:
            active.add(viewer)
        else:
            active.discard(viewer)
        counts.append((ts, len(active)))

    peak = max(count for _, count in counts)

    total_time = 0.0
    weighted = 0.0
    for (ts, count), (next_ts, _) in zip(counts, counts[1:]):
        duration = (next_ts - ts).total_seconds()
        if duration > 0:
            weighted += count * duration
            total_time += duration

    avg = weighted / total_time if total_time > 0 else float(peak)
    return peak, avg


def compute_rollups_from_events(events: Iterable[EventLog]) -> RollupResult:
    """Rollups for a set of events given in ``(timestamp, id)`` order."""
    result = RollupResult()
    visitors = set()
    samples: List[int] = []
    transitions: List[Tuple[datetime, EventMethod, str]] = []

    for event in events:
        kind = classify_event(event.method)

        sample = event.viewer_count
        if sample is not None:
            samples.append(sample)

        if kind == EventMethod.TIP:
            result.total_tokens += event.tip_tokens
        elif kind == EventMethod.FOLLOW:
            result.followers_gained += 1
        elif kind == EventMethod.UNFOLLOW:
            result.followers_gained -= 1
        elif kind in (EventMethod.ENTER, EventMethod.LEAVE):
            viewer = event.viewer
            if viewer:
                if kind == EventMethod.ENTER:
                    visitors.add(viewer)
                transitions.append((event.at, kind, viewer))
        elif kind in (
            EventMethod.START,
            EventMethod.STOP,
            EventMethod.CHAT,
            EventMethod.PRIVATE_MESSAGE,
            EventMethod.SUBJECT_CHANGE,
        ):
            pass
        else:
            raise UnknownEventKindError(event.method)

    result.unique_visitors = len(visitors)

    if samples:
        result.peak_viewers = max(samples)
        result.avg_viewers = sum(samples) / len(samples)
    else:
        result.peak_viewers, result.avg_viewers = occupancy_metrics(transitions)

    return result


class RollupAggregator:
    def __init__(self, session: Session):
        self.session = session
        self.events = EventStore(session)

    def compute_rollups(self, session_id: int) -> RollupResult:
        if self.session.get(BroadcastSession, session_id) is None:
            raise SessionNotFoundError(session_id)
        result = compute_rollups_from_events(self.events.query_session_events(session_id))
        logger.debug(
            f"Rollups for {session_id}: tokens={result.total_tokens}, followers={result.followers_gained}, "
            f"peak={result.peak_viewers}, avg={result.avg_viewers:.1f}, unique={result.unique_visitors}"
        )
        return result

    def compute_and_update_session(self, session_id: int) -> RollupResult:
        result = self.compute_rollups(session_id)
        record = self.session.get(BroadcastSession, session_id)
        record.total_tokens = result.total_tokens
        record.followers_gained = result.followers_gained
        record.peak_viewers = result.peak_viewers
        record.avg_viewers = result.avg_viewers
        record.unique_visitors = result.unique_visitors
        self.session.flush()
        return result

    def compute_all_rollups(self) -> int:
        ids = [row.id for row in self.session.query(BroadcastSession.id).all()]
        for session_id in ids:
            self.compute_and_update_session(session_id)
        logger.info(f"Computed rollups for {len(ids)} sessions")
        return len(ids)

    def get_aggregate_stats(self, start_date: Optional[datetime] = None,
                            end_date: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals across sessions whose start falls in the optional date range."""
        query = self.session.query(BroadcastSession)
        if start_date is not None:
            query = query.filter(BroadcastSession.started_at >= start_date)
        if end_date is not None:
            query = query.filter(BroadcastSession.started_at <= end_date)
        sessions = query.all()

        now = utcnow()
        nonzero_avgs = [s.avg_viewers for s in sessions if s.avg_viewers]
        total_minutes = sum(
            ((as_utc(s.ended_at) or now) - as_utc(s.started_at)).total_seconds() / 60
            for s in sessions
        )
        return {
            'total_sessions': len(sessions),
            'total_tokens': sum(s.total_tokens or 0 for s in sessions),
            'total_followers': sum(s.followers_gained or 0 for s in sessions),
            'avg_viewers': sum(nonzero_avgs) / len(nonzero_avgs) if nonzero_avgs else 0.0,
            'peak_viewers': max((s.peak_viewers or 0 for s in sessions), default=0),
            'total_minutes': total_minutes,
        }
