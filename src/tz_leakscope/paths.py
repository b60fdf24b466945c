"""Per-user locations for settings and logs, resolved through platformdirs."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from platformdirs import PlatformDirs

DEFAULT_APP_NAME = "tz-leakscope"
SETTINGS_FILE_NAME = "settings.json"


@lru_cache(maxsize=4)
def platform_dirs(app_name: str = DEFAULT_APP_NAME) -> PlatformDirs:
    return PlatformDirs(app_name, appauthor=False)


def _created(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Directory holding `settings.json`; created on first use."""
    return _created(platform_dirs(app_name).user_config_path)


def log_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Directory for the rotating JSON log; created on first use."""
    return _created(platform_dirs(app_name).user_log_path)


def settings_path(app_name: str = DEFAULT_APP_NAME) -> Path:
    return config_dir(app_name) / SETTINGS_FILE_NAME
