from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
ENV_PATH = BASE_DIR / ".env"


@dataclass(frozen=True)
class CacheTTLs:
    """Seconds a cached upstream response stays fresh, per query type."""

    incidents: float = 30.0
    series: float = 60.0
    state: float = 60.0
    heat: float = 60.0
    lookups: float = 300.0


@dataclass(frozen=True)
class Settings:
    data_path: Optional[Path] = None
    api_url: Optional[str] = None
    api_timeout: float = 30.0
    ttls: CacheTTLs = field(default_factory=CacheTTLs)
    page_size: int = 25
    top_n: int = 10
    max_compare: int = 4
    cors_origins: Tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number), using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    value = _env_float(name, float(default))
    if value <= 0:
        logger.warning("Ignoring %s=%s (must be positive), using %s", name, value, default)
        return default
    return int(value)


def load_settings() -> Settings:
    """Build settings from the environment (a project-root .env is read first)."""
    load_dotenv(dotenv_path=ENV_PATH)

    data_path = os.getenv("INCIDENTS_DATA_PATH") or None
    path: Optional[Path] = None
    if data_path:
        path = Path(data_path)
        if not path.is_absolute():
            path = BASE_DIR / path

    api_url = (os.getenv("INCIDENTS_API_URL") or "").strip().rstrip("/") or None

    defaults = CacheTTLs()
    ttls = CacheTTLs(
        incidents=_env_float("INCIDENTS_TTL_INCIDENTS", defaults.incidents),
        series=_env_float("INCIDENTS_TTL_SERIES", defaults.series),
        state=_env_float("INCIDENTS_TTL_STATE", defaults.state),
        heat=_env_float("INCIDENTS_TTL_HEAT", defaults.heat),
        lookups=_env_float("INCIDENTS_TTL_LOOKUPS", defaults.lookups),
    )

    origins_raw = os.getenv("INCIDENTS_CORS_ORIGINS")
    base = Settings()
    origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip()) if origins_raw else base.cors_origins

    return Settings(
        data_path=path,
        api_url=api_url,
        api_timeout=_env_float("INCIDENTS_API_TIMEOUT", base.api_timeout),
        ttls=ttls,
        page_size=_env_int("INCIDENTS_PAGE_SIZE", base.page_size),
        top_n=_env_int("INCIDENTS_TOP_N", base.top_n),
        max_compare=_env_int("INCIDENTS_MAX_COMPARE", base.max_compare),
        cors_origins=origins,
    )
