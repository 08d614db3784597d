"""
Environment configuration.

Required keys are checked once, at startup. A missing key is a ConfigError
that stops the process; request handlers never see a half-configured app.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from errors import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("DWELLIGENCE_DB_PATH", "GOOGLE_MAPS_API_KEY", "GEMINI_API_KEY")

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"


@dataclass(frozen=True)
class Settings:
    db_path: str
    google_maps_api_key: str
    gemini_api_key: str
    gemini_model: str = DEFAULT_GEMINI_MODEL
    sentry_dsn: Optional[str] = None
    rate_limit_default: str = "120/minute"
    rate_limit_ai: str = "20/minute"
    commute_cache_ttl_seconds: int = 24 * 3600
    ranking_weight_time: float = 0.5
    ranking_weight_price: float = 0.5


def missing_keys(environ: Mapping[str, str]) -> list:
    """Return the required keys that are unset or blank in *environ*."""
    return [key for key in REQUIRED_KEYS if not (environ.get(key) or "").strip()]


def _float_env(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", key, raw, default)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (``.env`` is loaded first).

    Raises ConfigError listing every missing required key.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    missing = missing_keys(environ)
    if missing:
        raise ConfigError(missing)

    return Settings(
        db_path=environ["DWELLIGENCE_DB_PATH"],
        google_maps_api_key=environ["GOOGLE_MAPS_API_KEY"],
        gemini_api_key=environ["GEMINI_API_KEY"],
        gemini_model=environ.get("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL,
        sentry_dsn=environ.get("SENTRY_DSN") or None,
        rate_limit_default=environ.get("RATE_LIMIT_DEFAULT") or "120/minute",
        rate_limit_ai=environ.get("RATE_LIMIT_AI") or "20/minute",
        commute_cache_ttl_seconds=int(
            _float_env(environ, "COMMUTE_CACHE_TTL_SECONDS", 24 * 3600)
        ),
        ranking_weight_time=_float_env(environ, "RANKING_WEIGHT_TIME", 0.5),
        ranking_weight_price=_float_env(environ, "RANKING_WEIGHT_PRICE", 0.5),
    )
