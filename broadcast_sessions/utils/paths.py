"""
Path utilities for consistent path resolution across the codebase.

Usage:
    from broadcast_sessions.utils.paths import get_project_root, get_config_path

    root = get_project_root()
    config = get_config_path()
"""
from pathlib import Path
from typing import Optional
import os

# Cache the project root
_project_root: Optional[Path] = None


def get_project_root() -> Path:
    """Get the project root directory (where config/ lives).

    BROADCAST_SESSIONS_ROOT overrides the location for deployments that
    install the package away from its config directory.
    """
    global _project_root
    if _project_root is None:
        override = os.getenv('BROADCAST_SESSIONS_ROOT')
        if override:
            _project_root = Path(override).resolve()
        else:
            # This file is at broadcast_sessions/utils/paths.py, so go up 3 levels
            _project_root = Path(__file__).parent.parent.parent.resolve()
    return _project_root


def get_env_path() -> Path:
    """Get the path to the .env file (project root)."""
    return get_project_root() / '.env'


def get_config_path(filename: str = "config.yaml") -> Path:
    """Get path to a config file.

    Args:
        filename: Config filename (default: config.yaml)

    Returns:
        Path to config file
    """
    return get_project_root() / "config" / filename


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path
