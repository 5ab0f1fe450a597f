"""Environment-driven settings for the quote service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from utils.cache import (
    DEFAULT_FALLBACK_MAX_AGE_S,
    DEFAULT_MAX_STALENESS_S,
    CacheConfig,
)
from utils.sweeper import DEFAULT_SWEEP_INTERVAL_S

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


@dataclass
class Settings:
    """All values are seconds unless noted."""

    APP_ENV: str
    LOG_LEVEL: str
    CACHE_MAX_AGE_S: float
    CACHE_FALLBACK_MAX_AGE_S: float
    CACHE_MAX_STALENESS_S: float
    CACHE_SWEEP_INTERVAL_S: float
    CACHE_SWEEP_ENABLED: bool

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            max_age=self.CACHE_MAX_AGE_S,
            fallback_max_age=self.CACHE_FALLBACK_MAX_AGE_S,
        )


def read_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``env`` (defaults to ``os.environ``).

    ``APP_ENV=development`` switches the default max age to the relaxed
    30 minutes; an explicit ``CACHE_MAX_AGE_S`` still wins.
    """
    env = os.environ if env is None else env
    app_env = (env.get("APP_ENV") or "production").strip().lower()
    default_max_age = CacheConfig.for_mode(relaxed=app_env == "development").max_age

    return Settings(
        APP_ENV=app_env,
        LOG_LEVEL=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        CACHE_MAX_AGE_S=_read_float(env, "CACHE_MAX_AGE_S", default_max_age),
        CACHE_FALLBACK_MAX_AGE_S=_read_float(env, "CACHE_FALLBACK_MAX_AGE_S", DEFAULT_FALLBACK_MAX_AGE_S),
        CACHE_MAX_STALENESS_S=_read_float(env, "CACHE_MAX_STALENESS_S", DEFAULT_MAX_STALENESS_S),
        CACHE_SWEEP_INTERVAL_S=_read_float(env, "CACHE_SWEEP_INTERVAL_S", DEFAULT_SWEEP_INTERVAL_S),
        CACHE_SWEEP_ENABLED=(env.get("CACHE_SWEEP_ENABLED", "true").strip().lower() in _TRUTHY),
    )
