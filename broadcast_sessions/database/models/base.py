"""
Base module for database models.

Contains the SQLAlchemy declarative base, the closed enums shared by the
session pipeline, and small helpers for timezone handling.
"""

from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base
import enum


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventMethod(str, enum.Enum):
    """Platform event kinds, valued by their wire names in the events feed"""
    START = "broadcastStart"
    STOP = "broadcastStop"
    CHAT = "chatMessage"
    TIP = "tip"
    ENTER = "userEnter"
    LEAVE = "userLeave"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    PRIVATE_MESSAGE = "privateMessage"
    SUBJECT_CHANGE = "roomSubjectChange"

    @classmethod
    def markers(cls) -> list:
        """Explicit broadcast boundary markers."""
        return [cls.START, cls.STOP]

    @classmethod
    def activity(cls) -> list:
        """Kinds that indicate a broadcast is live (implicit segment input)."""
        return [
            cls.CHAT,
            cls.TIP,
            cls.ENTER,
            cls.LEAVE,
            cls.FOLLOW,
            cls.UNFOLLOW,
            cls.PRIVATE_MESSAGE,
            cls.SUBJECT_CHANGE,
            cls.STOP,
        ]

    @classmethod
    def values(cls, methods) -> list:
        return [m.value for m in methods]


class SegmentSource(str, enum.Enum):
    EXPLICIT = "explicit"   # broadcastStart/broadcastStop pair
    IMPLICIT = "implicit"   # dense block of orphaned activity
    MANUAL = "manual"       # operator supplied


class SessionStatus(str, enum.Enum):
    """Session lifecycle. Only moves forward outside of a full rebuild."""
    ACTIVE = "active"
    PENDING_FINALIZE = "pending_finalize"
    FINALIZED = "finalized"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, other: "SessionStatus") -> bool:
        return other.rank >= self.rank


_STATUS_ORDER = [SessionStatus.ACTIVE, SessionStatus.PENDING_FINALIZE, SessionStatus.FINALIZED]


class SummaryStatus(str, enum.Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    FAILED = "failed"
