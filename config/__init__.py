"""
Settings package for the transcription core.

    from config import get_settings

    threshold = get_settings().chunking_threshold_seconds

Values come from environment variables or a .env file; call reload_settings()
after changing the environment in-process.
"""

from .settings import (
    Settings,
    DeploymentMode,
    LogLevel,
    settings,
    get_settings,
    reload_settings,
    is_development,
    is_production,
    get_database_url,
    get_work_dir,
)

__all__ = [
    "Settings",
    "DeploymentMode",
    "LogLevel",
    "settings",
    "get_settings",
    "reload_settings",
    "is_development",
    "is_production",
    "get_database_url",
    "get_work_dir",
]
