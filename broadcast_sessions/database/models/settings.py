"""
Application settings model.

Key/value rows with JSON values; defaults live in config.yaml and are used
whenever a key is missing here.
"""

from sqlalchemy import Column, String, DateTime, Text, JSON

from .base import Base, utcnow


class AppSetting(Base):
    __tablename__ = 'app_settings'

    key = Column(String(100), primary_key=True)
    value = Column(JSON)
    description = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
