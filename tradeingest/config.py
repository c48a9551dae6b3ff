"""Runtime settings read from the environment.

Every value has a default so the engine works with no environment at all.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

DEFAULT_TIME_GAP_MINUTES = 60
DEFAULT_LIGHTSPEED_TZ = "America/New_York"
DEFAULT_DETECT_SCAN_LINES = 10
DEFAULT_DUPLICATE_WINDOW_MS = 1000
DEFAULT_DUPLICATE_PRICE_TOLERANCE = 0.01


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    grouping_enabled: bool = True
    grouping_gap_minutes: int = DEFAULT_TIME_GAP_MINUTES
    lightspeed_timezone: str = DEFAULT_LIGHTSPEED_TZ
    detect_scan_lines: int = DEFAULT_DETECT_SCAN_LINES
    duplicate_window_ms: int = DEFAULT_DUPLICATE_WINDOW_MS
    duplicate_price_tolerance: float = DEFAULT_DUPLICATE_PRICE_TOLERANCE


def load_settings() -> Settings:
    """Build Settings from TRADEINGEST_* environment variables."""
    return Settings(
        log_level=os.environ.get("TRADEINGEST_LOG_LEVEL", "INFO").upper(),
        grouping_enabled=_env_bool("TRADEINGEST_GROUPING_ENABLED", True),
        grouping_gap_minutes=_env_number(
            "TRADEINGEST_GROUPING_GAP_MINUTES", DEFAULT_TIME_GAP_MINUTES, int
        ),
        lightspeed_timezone=os.environ.get("TRADEINGEST_LIGHTSPEED_TZ", DEFAULT_LIGHTSPEED_TZ),
        detect_scan_lines=_env_number(
            "TRADEINGEST_DETECT_SCAN_LINES", DEFAULT_DETECT_SCAN_LINES, int
        ),
        duplicate_window_ms=_env_number(
            "TRADEINGEST_DUPLICATE_WINDOW_MS", DEFAULT_DUPLICATE_WINDOW_MS, int
        ),
        duplicate_price_tolerance=_env_number(
            "TRADEINGEST_DUPLICATE_PRICE_TOLERANCE", DEFAULT_DUPLICATE_PRICE_TOLERANCE, float
        ),
    )
