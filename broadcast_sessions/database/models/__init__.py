"""
Database Models for Broadcast Session Reconstruction
====================================================

This module defines the SQLAlchemy ORM models for rebuilding a broadcaster's
sessions from the raw platform event log.

## Processing Flow:

1. **Event ingestion** (outside this package)
   - The events feed poller appends one EventLog row per platform event

2. **Segment building** (processing/segment_builder.py)
   - Explicit segments from broadcastStart/broadcastStop pairs
   - Implicit segments from dense blocks of orphaned activity
   - Events are linked to their containing segment

3. **Session stitching** (processing/session_stitcher.py)
   - Segments separated by at most the merge gap become one session
   - Events inherit their segment's session

4. **Rollups** (processing/rollups.py)
   - Tokens, follower delta, viewer peak/average and unique visitors

5. **Finalization** (automation/finalize_sessions.py)
   - Background job marks due sessions finalized and requests a summary

## Model Relationships:

- **EventLog** -> BroadcastSegment (segment_id) -> BroadcastSession (session_id)
- **BroadcastSegment**: many per BroadcastSession
- **AppSetting**: merge gap / summary delay overrides
- **JobState**: persisted scheduler state
"""

# Base and enums
from broadcast_sessions.database.models.base import (
    Base,
    EventMethod,
    SegmentSource,
    SessionStatus,
    SummaryStatus,
    as_utc,
    utcnow,
)

# Event log
from broadcast_sessions.database.models.events import EventLog

# Segments and sessions
from broadcast_sessions.database.models.broadcasts import BroadcastSegment, BroadcastSession

# Settings and job state
from broadcast_sessions.database.models.settings import AppSetting
from broadcast_sessions.database.models.jobs import JobState


__all__ = [
    # Base
    "Base",
    "EventMethod",
    "SegmentSource",
    "SessionStatus",
    "SummaryStatus",
    "as_utc",
    "utcnow",
    # Events
    "EventLog",
    # Broadcasts
    "BroadcastSegment",
    "BroadcastSession",
    # Settings / jobs
    "AppSetting",
    "JobState",
]
