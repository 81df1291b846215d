"""
Log directory resolution for development and installed environments.

Environment variables can override the path:
- ESPEASY_LOG_DIR: Log directory

Development mode is auto-detected by checking if pyproject.toml exists
relative to the source tree root.
"""

import os
from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=1)
def get_project_root() -> Path:
    """Get project root directory (3 levels up from this file)."""
    return Path(__file__).parent.parent.parent


@lru_cache(maxsize=1)
def _is_development() -> bool:
    """Detect if running from a source checkout rather than an installed wheel."""
    return (get_project_root() / "pyproject.toml").exists()


def get_log_dir() -> Path:
    """Get log directory.

    Priority:
    1. ESPEASY_LOG_DIR environment variable
    2. ./var/log/espeasy (development)
    3. ~/.local/state/espeasy-provisioner/log (installed)

    Returns:
        Path to log directory
    """
    if override := os.getenv("ESPEASY_LOG_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "log" / "espeasy"

    return Path.home() / ".local" / "state" / "espeasy-provisioner" / "log"


def is_development_mode() -> bool:
    return _is_development()
