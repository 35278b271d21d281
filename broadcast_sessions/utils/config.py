"""
Configuration utilities for loading and managing config files.

This module provides centralized configuration loading with:
- YAML config file parsing
- Environment variable substitution (${VAR} syntax)
- Automatic .env file loading
- Built-in defaults for every section the session pipeline reads

Usage:
    from broadcast_sessions.utils.config import load_config, get_credential

    config = load_config()  # Loads config with env substitution
    api_key = get_credential('OPENAI_API_KEY')  # Get credential from .env
"""
from pathlib import Path
import copy
import yaml
import os
import re
from typing import Dict, Optional, Any
import logging
from dotenv import load_dotenv

# Use standard logging to avoid circular import
logger = logging.getLogger(__name__)

# Track if .env has been loaded
_env_loaded = False

DEFAULT_CONFIG: Dict[str, Any] = {
    'database': {
        'url': 'sqlite:///data/broadcast_sessions.db',
        'echo': False,
    },
    'logging': {
        'base_path': 'logs',
        'level': 'INFO',
    },
    'sessions': {
        'merge_gap_minutes': 30,
        'ai_summary_delay_minutes': None,
        'implicit_block_gap_minutes': 30,
        'implicit_min_events': 5,
        'implicit_stop_lookahead_minutes': 5,
    },
    'finalize_job': {
        'interval_minutes': 1,
        'enabled': True,
        'generate_ai_summary': True,
        'batch_size': 10,
        'stale_generating_minutes': 30,
    },
    'summaries': {
        'api_url': 'https://api.openai.com/v1',
        'model': 'gpt-4o-mini',
        'max_tokens': 2048,
        'timeout_seconds': 120,
        'retries': 3,
        'api_key_env': 'OPENAI_API_KEY',
        'max_chat_messages': 1000,
    },
    'api': {
        'host': '0.0.0.0',
        'port': 8010,
    },
}


def _ensure_env_loaded():
    """Ensure .env file is loaded (once)."""
    global _env_loaded
    if not _env_loaded:
        from .paths import get_env_path
        env_path = get_env_path()
        if env_path.exists():
            load_dotenv(env_path, override=True)
            logger.debug(f"Loaded environment from {env_path}")
        _env_loaded = True


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment variables."""
    if isinstance(value, str):
        # Match ${VAR} pattern
        pattern = r'\$\{([^}]+)\}'
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.getenv(var_name, '')
            value = value.replace(f'${{{var_name}}}', env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _deep_merge(default: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = default.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(config_path: Optional[Path] = None, substitute_env: bool = True) -> Dict:
    """Load configuration from yaml file with optional env variable substitution.

    Args:
        config_path: Optional path to config file. If not provided, will look in default location.
        substitute_env: If True, substitute ${VAR} patterns with environment variables.

    Returns:
        Dict containing configuration settings merged over DEFAULT_CONFIG.
    """
    # Ensure .env is loaded before reading config
    _ensure_env_loaded()

    if config_path is None:
        from .paths import get_config_path
        config_path = get_config_path()

    file_config: Dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
    else:
        logger.warning(f"Config file {config_path} not found, using built-in defaults")

    config = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), file_config)

    if substitute_env:
        config = _substitute_env_vars(config)

    return config


def get_credential(name: str, default: Optional[str] = None) -> Optional[str]:
    """Get a credential from environment variables.

    This is the preferred way to access credentials. It ensures .env is loaded.

    Args:
        name: Environment variable name (e.g., 'OPENAI_API_KEY')
        default: Default value if not found

    Returns:
        Credential value or default
    """
    _ensure_env_loaded()
    return os.getenv(name, default)


def get_sessions_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get the session reconstruction section."""
    config = config if config is not None else load_config()
    return config.get('sessions', {})


def get_finalize_job_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get the finalize scheduler defaults."""
    config = config if config is not None else load_config()
    return config.get('finalize_job', {})


def get_summaries_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get the summarization service section."""
    config = config if config is not None else load_config()
    return config.get('summaries', {})
