"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "SafeWorkPro"


DATA_DIR = Path(os.environ.get("SAFEWORK_DATA_DIR") or get_default_data_dir(APP_NAME))
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    store_name: str = "safework-pro-offline"
    store_version: int = 1
    api_base_url: str = os.environ.get("SAFEWORK_API_BASE_URL", "http://localhost:3000")
    max_retries: int = 3
    # 0 disables backoff: every pass attempts every item below the ceiling
    retry_backoff_sec: float = 0.0
    max_backoff_sec: float = 300.0
    periodic_interval_sec: int = 300
    request_timeout_sec: float = 30.0
    health_path: str = "/api/health"


SYNC = SyncSettings()

STORE_DB_PATH = DATA_DIR / f"{SYNC.store_name}.db"


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "STORE_DB_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "SyncSettings",
    "get_default_data_dir",
]
