"""
Runtime configuration for StoreFlow.

All settings come from environment variables so the same code runs on a
developer laptop, in the test-suite and behind a process manager.  Values
are read once per call to :func:`load_settings`; nothing is cached, which
lets tests point the application at a temporary database by setting
``STOREFLOW_DB_PATH`` before constructing DAOs or servers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List

_THIS_FILE = Path(__file__).resolve()
_DEFAULT_DB_PATH = (_THIS_FILE.parent / ".." / "db" / "storeflow.db").resolve()

# Front-end origins allowed to call the API from a browser
DEFAULT_CORS_ORIGINS = [
    "http://localhost:8081",
    "http://localhost:5173",
    "https://store-flow-frontend.vercel.app",
]


@dataclass
class Settings:
    db_path: str
    host: str = "0.0.0.0"
    port: int = 5000
    api_base: str = "http://localhost:5000/api"
    http_timeout: float = 5.0
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    point_value: Decimal = Decimal("0.50")
    earn_rate: Decimal = Decimal("10")
    log_dir: str = "logs"
    reconcile_interval: float = 0.0


def resolve_db_path() -> str:
    return os.environ.get("STOREFLOW_DB_PATH", str(_DEFAULT_DB_PATH))


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.environ.get(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation:
        value = Decimal(default)
    if value <= 0:
        value = Decimal(default)
    return value


def _env_origins() -> List[str]:
    env = os.environ.get("STOREFLOW_CORS_ORIGINS")
    if not env:
        return list(DEFAULT_CORS_ORIGINS)
    return [o.strip() for o in env.split(",") if o.strip()]


def load_settings() -> Settings:
    """Build a :class:`Settings` instance from the current environment.

    Malformed numeric values fall back to their defaults rather than
    raising, mirroring how the server treats a bad ``PORT``.
    """
    return Settings(
        db_path=resolve_db_path(),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_env_int("PORT", 5000),
        api_base=os.environ.get("STOREFLOW_API_BASE", "http://localhost:5000/api").rstrip("/"),
        http_timeout=_env_float("STOREFLOW_HTTP_TIMEOUT", 5.0),
        cors_origins=_env_origins(),
        point_value=_env_decimal("STOREFLOW_POINT_VALUE", "0.50"),
        earn_rate=_env_decimal("STOREFLOW_EARN_RATE", "10"),
        log_dir=os.environ.get("STOREFLOW_LOG_DIR", "logs"),
        reconcile_interval=_env_float("STOREFLOW_RECONCILE_INTERVAL", 0.0),
    )
