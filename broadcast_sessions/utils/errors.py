"""
Error types for the broadcast session pipeline.

Data anomalies in the event log are logged and worked around; these
exceptions are for conditions callers have to handle.
"""


class BroadcastSessionsError(Exception):
    """Base class for pipeline errors."""


class SessionNotFoundError(BroadcastSessionsError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class UnknownEventKindError(BroadcastSessionsError):
    """An event method outside the closed set reached a classifier."""
    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown event kind: {method!r}")
