"""
Application settings backed by the ``app_settings`` table.

Missing keys fall back to the ``sessions`` section of config.yaml.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from broadcast_sessions.utils.config import get_sessions_config
from .models import AppSetting

logger = logging.getLogger(__name__)

MERGE_GAP_KEY = 'broadcast_merge_gap_minutes'
AI_SUMMARY_DELAY_KEY = 'ai_summary_delay_minutes'

SETTING_DESCRIPTIONS = {
    MERGE_GAP_KEY: 'Maximum gap in minutes between segments that still belong to one session',
    AI_SUMMARY_DELAY_KEY: 'Minutes after the last event before a session is finalized (null = merge gap)',
}


def validate_setting(key: str, value: Any) -> Any:
    """Validate a known setting's value, raising ValueError when it is unusable."""
    if key == MERGE_GAP_KEY:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{key} must be a positive number of minutes")
        return int(value)
    if key == AI_SUMMARY_DELAY_KEY:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"{key} must be null or a non-negative number of minutes")
        return int(value)
    return value


class SettingsStore:
    def __init__(self, session: Session, config: Optional[Dict[str, Any]] = None):
        self.session = session
        sessions_config = get_sessions_config(config)
        self.defaults = {
            MERGE_GAP_KEY: sessions_config.get('merge_gap_minutes', 30),
            AI_SUMMARY_DELAY_KEY: sessions_config.get('ai_summary_delay_minutes'),
        }

    def get(self, key: str) -> Optional[AppSetting]:
        return self.session.get(AppSetting, key)

    def get_with_default(self, key: str, default: Any = None) -> Any:
        """Stored value for ``key``, else ``default``, else the configured default."""
        row = self.get(key)
        if row is not None:
            return row.value
        if default is not None:
            return default
        return self.defaults.get(key)

    def set(self, key: str, value: Any, description: Optional[str] = None) -> AppSetting:
        value = validate_setting(key, value)
        row = self.get(key)
        if row is None:
            row = AppSetting(key=key)
            self.session.add(row)
        row.value = value
        row.description = description or row.description or SETTING_DESCRIPTIONS.get(key)
        self.session.flush()
        logger.info(f"Setting {key} = {value!r}")
        return row

    def get_all(self) -> Dict[str, Any]:
        values = dict(self.defaults)
        for row in self.session.query(AppSetting).order_by(AppSetting.key).all():
            values[row.key] = row.value
        return values

    def delete(self, key: str) -> bool:
        row = self.get(key)
        if row is None:
            return False
        self.session.delete(row)
        self.session.flush()
        return True

    def get_merge_gap_minutes(self) -> int:
        return int(self.get_with_default(MERGE_GAP_KEY))

    def get_ai_summary_delay_minutes(self) -> Optional[int]:
        value = self.get_with_default(AI_SUMMARY_DELAY_KEY)
        return None if value is None else int(value)

    def get_finalize_delay_minutes(self) -> int:
        """Summary delay when configured, otherwise the merge gap."""
        delay = self.get_ai_summary_delay_minutes()
        if delay is not None:
            return delay
        return self.get_merge_gap_minutes()
