"""
Rebuild Sessions Command

Rebuilds broadcast sessions from the event log using the segment stitch rule.

Usage:
    python -m broadcast_sessions.commands.rebuild_sessions
    python -m broadcast_sessions.commands.rebuild_sessions --from 2025-12-25
    python -m broadcast_sessions.commands.rebuild_sessions --dry-run
    python -m broadcast_sessions.commands.rebuild_sessions --incremental
"""
import argparse
import logging
import sys
from datetime import datetime
from typing import Callable, List, Optional

from broadcast_sessions.database.models import BroadcastSegment, BroadcastSession, as_utc
from broadcast_sessions.database.session import get_session, init_db
from broadcast_sessions.database.settings_store import SettingsStore
from broadcast_sessions.processing.rebuild import SessionRebuilder
from broadcast_sessions.processing.rollups import RollupAggregator
from broadcast_sessions.utils.logger import setup_pipeline_logging

logger = logging.getLogger(__name__)

RULE = '=' * 60


def parse_date(value: str) -> datetime:
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value!r} (expected ISO format, e.g. 2025-12-25)")


def _duration(started_at, ended_at) -> str:
    if ended_at is None:
        return 'active'
    return f"{(as_utc(ended_at) - as_utc(started_at)).total_seconds() / 60:.1f} min"


def _print_segments(segments: List[BroadcastSegment]):
    print('\n   Segments:')
    for seg in segments:
        end = seg.end.isoformat() if seg.end else 'active'
        print(f"   - {seg.start.isoformat()} -> {end} ({_duration(seg.started_at, seg.ended_at)}, {seg.source})")


def _print_sessions(session, sessions: List[BroadcastSession]):
    print('\n   Sessions:')
    for record in sessions:
        count = session.query(BroadcastSegment).filter(BroadcastSegment.session_id == record.id).count()
        print(
            f"   - {as_utc(record.started_at).isoformat()} ({_duration(record.started_at, record.ended_at)}, "
            f"{count} segment{'s' if count != 1 else ''}, {record.status})"
        )
        print(f"     tokens={record.total_tokens} followers={record.followers_gained:+d} "
              f"peak={record.peak_viewers} avg={record.avg_viewers:.1f} unique={record.unique_visitors}")


def run(from_date: Optional[datetime] = None, dry_run: bool = False, incremental: bool = False,
        session_factory: Optional[Callable] = None) -> int:
    session_factory = session_factory or get_session

    print(RULE)
    print('REBUILD SESSIONS' if not incremental else 'PROCESS NEW EVENTS')
    print(RULE)
    if dry_run:
        print('DRY RUN MODE - No changes will be made')
    print(f"Starting from: {from_date.isoformat()}" if from_date else 'Processing all events')

    with session_factory() as session:
        settings = SettingsStore(session)
        print('\nSettings:')
        print(f"  Merge gap: {settings.get_merge_gap_minutes()} minutes")
        print(f"  Finalize delay: {settings.get_finalize_delay_minutes()} minutes")

        rebuilder = SessionRebuilder(session)
        try:
            if incremental:
                result = rebuilder.process_new_events()
                print(f"\nSegments created: {result.segments_created}")
                print(f"Events linked: {result.events_linked}")
                print(f"Sessions updated: {len(result.sessions_touched)}")
            else:
                result = rebuilder.rebuild(from_date)
                _print_segments(rebuilder.builder.get_all())
                _print_sessions(session, session.query(BroadcastSession).order_by(BroadcastSession.started_at).all())
                print(f"\n{RULE}\nREBUILD COMPLETE\n{RULE}")
                print(f"Segments: {result.segments} ({result.explicit_segments} explicit, "
                      f"{result.implicit_segments} implicit)")
                print(f"Sessions: {result.sessions}")
                print(f"Events linked: {result.events_linked}")
        except Exception as e:
            session.rollback()
            logger.error(f"Rebuild failed: {e}", exc_info=True)
            print(f"\nREBUILD FAILED: {e}")
            return 1

        stats = RollupAggregator(session).get_aggregate_stats()
        print('\nAggregate Stats:')
        print(f"  Total tokens: {stats['total_tokens']}")
        print(f"  Total followers: {stats['total_followers']:+d}")
        print(f"  Peak viewers: {stats['peak_viewers']}")
        print(f"  Avg viewers: {stats['avg_viewers']:.1f}")
        print(f"  Total time: {stats['total_minutes']:.0f} minutes")

        if dry_run:
            session.rollback()
            print('\n[DRY RUN] Changes rolled back')
        else:
            session.commit()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild broadcast sessions from the event log")
    parser.add_argument('--from', dest='from_date', type=parse_date,
                        help='Only pair start/stop markers at or after this date')
    parser.add_argument('--dry-run', action='store_true', help='Run the rebuild and roll it back')
    parser.add_argument('--incremental', action='store_true',
                        help='Fold new events into existing sessions instead of rebuilding')
    args = parser.parse_args(argv)

    setup_pipeline_logging()
    init_db()
    return run(from_date=args.from_date, dry_run=args.dry_run, incremental=args.incremental)


if __name__ == "__main__":
    sys.exit(main())
