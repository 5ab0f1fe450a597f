from __future__ import annotations

import time
from typing import Dict, Iterable, Optional

from utils.cache import CacheEntry, CacheSource


def _normalize(identifier: str) -> str:
    return (identifier or '').strip().upper()


def stock_quote_key(symbol: str) -> str:
    return f"stock_quote_{_normalize(symbol)}"


def portfolio_key(user_id: str) -> str:
    return f"portfolio_{user_id}"


def watchlist_key(user_id: str) -> str:
    return f"watchlist_{user_id}"


def alerts_key(user_id: str) -> str:
    return f"alerts_{user_id}"


def options_flow_key(symbols: Iterable[str]) -> str:
    # order-insensitive so the same basket always hits the same entry
    return "options_flow_" + "_".join(sorted(_normalize(s) for s in symbols if s))


def format_timestamp(timestamp: float, now: Optional[float] = None) -> str:
    """Human readable age, e.g. ``"5m ago"``."""
    diff = (time.time() if now is None else now) - timestamp
    minutes = int(diff // 60)
    hours = int(diff // 3600)
    days = int(diff // 86400)

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    return f"{days}d ago"


def freshness_indicator(entry: CacheEntry, now: Optional[float] = None) -> Dict[str, str]:
    """Trust badge for a cache entry: status, short message and a colour."""
    age_minutes = int(entry.age(time.time() if now is None else now) // 60)

    if entry.source is CacheSource.FRESH:
        return {"status": "fresh", "message": "Live data", "color": "green"}
    if entry.source is CacheSource.CACHED:
        if age_minutes < 30:
            return {"status": "recent", "message": f"{age_minutes}m old", "color": "yellow"}
        return {"status": "stale", "message": f"{age_minutes}m old", "color": "orange"}
    return {"status": "fallback", "message": "Cached data (API limit)", "color": "red"}
