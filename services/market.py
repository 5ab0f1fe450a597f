from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd
import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from utils.cache import DEFAULT_MAX_STALENESS_S, CacheEntry, FreshnessCache
from utils.cache_keys import stock_quote_key
from utils.errors import (
    FatalUpstreamError,
    RateLimitedError,
    TransientUpstreamError,
    is_rate_limited,
)

logger = logging.getLogger(__name__)

QuoteFetcher = Callable[[str], Dict[str, Any]]

# at most this many upstream lookups in flight per batch request
DEFAULT_CHUNK_SIZE = 5
DEFAULT_CHUNK_SLEEP_MS = 200


def _normalize_symbol(symbol: str) -> str:
    return (symbol or '').strip().upper()


def _candidates(symbol: str) -> List[str]:
    # bare symbols may be listed on NSE/BSE only
    return [symbol] if '.' in symbol else [symbol, f"{symbol}.NS", f"{symbol}.BO"]


def _chunks(seq: Iterable[str], size: int) -> Iterable[list[str]]:
    buf: list[str] = []
    for s in seq:
        buf.append(s)
        if len(buf) >= size:
            yield buf
            buf = []
    if buf:
        yield buf


def _last_closes(t: yf.Ticker) -> tuple[Optional[float], Optional[float]]:
    h = t.history(period="5d", interval="1d", actions=False)
    if not isinstance(h, pd.DataFrame) or h.empty or "Close" not in h:
        return None, None
    closes = h["Close"].dropna()
    if closes.empty:
        return None, None
    price = float(closes.iloc[-1])
    prev = float(closes.iloc[-2]) if len(closes) > 1 else None
    return price, prev


def _quote_once(candidate: str) -> Optional[Dict[str, Any]]:
    t = yf.Ticker(candidate)
    fi = t.fast_info or {}

    price = fi.get("last_price") or fi.get("lastPrice") or fi.get("regularMarketPrice")
    prev = fi.get("previous_close") or fi.get("previousClose") or fi.get("regularMarketPreviousClose")
    if not price:
        price, prev = _last_closes(t)
    if price is None:
        return None

    item: Dict[str, Any] = {
        "price": float(price),
        "currency": fi.get("currency"),
        "previous_close": float(prev) if prev is not None else None,
        "change": None,
        "change_pct": None,
        "market_cap": None,
    }
    if item["previous_close"]:
        item["change"] = round(item["price"] - item["previous_close"], 4)
        item["change_pct"] = round(100.0 * item["change"] / item["previous_close"], 3)
    mcap = fi.get("market_cap") or fi.get("marketCap")
    if mcap:
        try:
            item["market_cap"] = int(mcap)
        except (TypeError, ValueError):
            pass
    return item


def fetch_quote(symbol: str) -> Dict[str, Any]:
    """
    Fetch the latest quote for one symbol from Yahoo Finance.
    Tries fast_info first and falls back to the last close in a 5 day history.
    Raises RateLimitedError when Yahoo throttles us, FatalUpstreamError when no
    candidate has a price and TransientUpstreamError for anything else.
    """
    symbol = _normalize_symbol(symbol)
    if not symbol:
        raise ValueError("symbol is required")

    last_error: Optional[Exception] = None
    for cand in _candidates(symbol):
        try:
            item = _quote_once(cand)
        except YFRateLimitError as e:
            raise RateLimitedError(f"API rate limit exceeded while fetching {symbol}: {e}") from e
        except Exception as e:
            if is_rate_limited(e):
                raise RateLimitedError(f"API rate limit exceeded while fetching {symbol}: {e}") from e
            logger.debug("Quote lookup failed for %s: %s", cand, e)
            last_error = e
            continue
        if item is not None:
            item.update(symbol=symbol, listing=cand, ts=int(time.time()))
            return item

    if last_error is not None:
        raise TransientUpstreamError(f"Quote lookup failed for {symbol}: {last_error}") from last_error
    raise FatalUpstreamError(f"No price found for symbol: {symbol}")


@dataclass
class QuoteResult:
    symbol: str
    entry: Optional[CacheEntry] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.entry is not None


class QuoteService:
    """Quote lookups served through a FreshnessCache."""

    def __init__(
        self,
        cache: FreshnessCache,
        fetcher: QuoteFetcher = fetch_quote,
        max_staleness: float = DEFAULT_MAX_STALENESS_S,
        on_rate_limit: Optional[Callable[[Optional[CacheEntry]], Any]] = None,
    ):
        self.cache = cache
        self._fetcher = fetcher
        self.max_staleness = max_staleness
        self.on_rate_limit = on_rate_limit

    async def get_quote(self, symbol: str) -> CacheEntry:
        symbol = _normalize_symbol(symbol)
        if not symbol:
            raise ValueError("symbol is required")
        return await self.cache.get_with_fallback(
            stock_quote_key(symbol),
            lambda: asyncio.to_thread(self._fetcher, symbol),
            max_staleness=self.max_staleness,
            on_rate_limit=self.on_rate_limit,
        )

    async def _quote_result(self, symbol: str) -> QuoteResult:
        try:
            return QuoteResult(symbol=symbol, entry=await self.get_quote(symbol))
        except Exception as e:
            logger.warning("No quote available for %s: %s", symbol, e)
            return QuoteResult(symbol=symbol, error=str(e))

    async def get_quotes(
        self,
        symbols: Iterable[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        sleep_ms: int = DEFAULT_CHUNK_SLEEP_MS,
    ) -> List[QuoteResult]:
        """
        Look up many symbols; a failed symbol does not fail the batch.
        Chunked to avoid rate limits: one chunk runs at a time, with a short
        pause before the next.
        """
        seen = set()
        unique = []
        for s in (_normalize_symbol(s) for s in symbols):
            if s and s not in seen:
                seen.add(s)
                unique.append(s)

        out: List[QuoteResult] = []
        for i, batch in enumerate(_chunks(unique, max(1, chunk_size))):
            if i:
                await asyncio.sleep(max(0, sleep_ms) / 1000.0)
            out.extend(await asyncio.gather(*(self._quote_result(s) for s in batch)))
        return out
