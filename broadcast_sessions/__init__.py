"""Broadcast session reconstruction from a platform event log."""

__version__ = "0.1.0"
