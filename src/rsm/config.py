from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import logging
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    db_path: Optional[Path] = None
    stale_order_hours: int = 24
    default_fx_rate: float = 1000.0
    log_level: int = logging.INFO


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "RetailStoreManager") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "store.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    db = env.get("RSM_DB_PATH", "").strip()
    hours = env.get("RSM_STALE_ORDER_HOURS", "").strip()
    rate = env.get("RSM_DEFAULT_FX_RATE", "").strip()
    level = env.get("RSM_LOG_LEVEL", "").strip().upper()

    try:
        stale_hours = int(hours) if hours else 24
        default_rate = float(rate) if rate else 1000.0
    except ValueError as e:
        raise ValueError(f"Invalid numeric setting: {e}") from e
    if stale_hours <= 0:
        raise ValueError("RSM_STALE_ORDER_HOURS must be > 0")
    if default_rate <= 0:
        raise ValueError("RSM_DEFAULT_FX_RATE must be > 0")

    log_level = logging.getLevelName(level) if level else logging.INFO
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown RSM_LOG_LEVEL: {level}")

    return Settings(
        db_path=Path(db) if db else None,
        stale_order_hours=stale_hours,
        default_fx_rate=default_rate,
        log_level=log_level,
    )
