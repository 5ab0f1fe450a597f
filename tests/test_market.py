import threading
import time

import pandas as pd
import pytest

from services import market
from services.market import QuoteService, fetch_quote
from utils.cache import CacheSource
from utils.errors import FatalUpstreamError, RateLimitedError, TransientUpstreamError


class DummyTicker:
    """Stands in for yfinance.Ticker, configured per symbol."""

    by_symbol: dict = {}
    calls: list = []

    def __init__(self, symbol: str) -> None:
        DummyTicker.calls.append(symbol)
        self.spec = DummyTicker.by_symbol.get(symbol, {})
        if isinstance(self.spec, Exception):
            raise self.spec

    @property
    def fast_info(self) -> dict:
        return self.spec.get("fast_info", {})

    def history(self, **_kwargs) -> pd.DataFrame:
        return self.spec.get("history", pd.DataFrame())


@pytest.fixture
def tickers(monkeypatch):
    DummyTicker.by_symbol = {}
    DummyTicker.calls = []
    monkeypatch.setattr(market.yf, "Ticker", DummyTicker)
    return DummyTicker.by_symbol


def test_fetch_quote_from_fast_info(tickers) -> None:
    tickers["AAPL"] = {
        "fast_info": {
            "last_price": 110.0,
            "previous_close": 100.0,
            "currency": "USD",
            "market_cap": 3.0e12,
        }
    }

    q = fetch_quote(" aapl ")

    assert q["symbol"] == "AAPL"
    assert q["listing"] == "AAPL"
    assert q["price"] == 110.0
    assert q["change"] == 10.0
    assert q["change_pct"] == 10.0
    assert q["currency"] == "USD"
    assert q["market_cap"] == 3_000_000_000_000


def test_fetch_quote_falls_back_to_history_and_suffixes(tickers) -> None:
    tickers["RELIANCE.NS"] = {"history": pd.DataFrame({"Close": [2400.0, 2500.0]})}

    q = fetch_quote("RELIANCE")

    assert DummyTicker.calls == ["RELIANCE", "RELIANCE.NS"]
    assert q["listing"] == "RELIANCE.NS"
    assert q["price"] == 2500.0
    assert q["previous_close"] == 2400.0
    assert q["change"] == 100.0


def test_fetch_quote_without_price_is_fatal(tickers) -> None:
    with pytest.raises(FatalUpstreamError):
        fetch_quote("NOPE")
    assert DummyTicker.calls == ["NOPE", "NOPE.NS", "NOPE.BO"]


def test_fetch_quote_errors_are_transient(tickers) -> None:
    tickers["MSFT"] = ConnectionError("connection reset")

    with pytest.raises(TransientUpstreamError):
        fetch_quote("MSFT")


def test_fetch_quote_rate_limit_stops_immediately(tickers) -> None:
    tickers["MSFT"] = RuntimeError("Too Many Requests. Rate limited. Try after a while.")

    with pytest.raises(RateLimitedError):
        fetch_quote("MSFT")
    assert DummyTicker.calls == ["MSFT"]


def test_fetch_quote_requires_symbol() -> None:
    with pytest.raises(ValueError):
        fetch_quote("  ")


@pytest.mark.asyncio
async def test_quote_service_caches_under_quote_key(cache) -> None:
    service = QuoteService(cache, fetcher=lambda s: {"symbol": s, "price": 150.0})

    entry = await service.get_quote("aapl")

    assert entry.source is CacheSource.FRESH
    assert cache.get("stock_quote_AAPL").data == {"symbol": "AAPL", "price": 150.0}


@pytest.mark.asyncio
async def test_quote_service_falls_back_when_rate_limited(cache) -> None:
    cache.set("stock_quote_AAPL", {"symbol": "AAPL", "price": 150.0})

    def fetcher(symbol):
        raise RateLimitedError("API rate limit exceeded")

    entry = await QuoteService(cache, fetcher=fetcher).get_quote("AAPL")

    assert entry.source is CacheSource.FALLBACK
    assert entry.data["price"] == 150.0


@pytest.mark.asyncio
async def test_get_quotes_continues_past_failures(cache) -> None:
    def fetcher(symbol):
        if symbol == "BAD":
            raise FatalUpstreamError(f"No price found for symbol: {symbol}")
        return {"symbol": symbol, "price": 1.0}

    results = await QuoteService(cache, fetcher=fetcher).get_quotes(["aapl", "BAD", "AAPL", ""])

    assert [r.symbol for r in results] == ["AAPL", "BAD"]
    assert results[0].ok
    assert not results[1].ok
    assert "No price found" in results[1].error


@pytest.mark.asyncio
async def test_get_quotes_runs_one_chunk_at_a_time(cache) -> None:
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}
    started: dict = {}

    def fetcher(symbol):
        with lock:
            started[symbol] = time.monotonic()
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1
        return {"symbol": symbol, "price": 1.0}

    symbols = [f"S{i}" for i in range(5)]
    results = await QuoteService(cache, fetcher=fetcher).get_quotes(symbols, chunk_size=2, sleep_ms=100)

    assert [r.symbol for r in results] == symbols
    assert all(r.ok for r in results)
    assert len(started) == 5
    assert state["peak"] <= 2
    # the second chunk waits for the first to finish plus the pause
    assert min(started["S2"], started["S3"]) - max(started["S0"], started["S1"]) >= 0.14
    assert started["S4"] - max(started["S2"], started["S3"]) >= 0.14


@pytest.mark.asyncio
async def test_get_quotes_default_chunk_bounds_concurrency(cache) -> None:
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def fetcher(symbol):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.01)
        with lock:
            state["active"] -= 1
        return {"symbol": symbol, "price": 1.0}

    results = await QuoteService(cache, fetcher=fetcher).get_quotes(
        [f"S{i}" for i in range(12)], sleep_ms=0
    )

    assert len(results) == 12
    assert state["peak"] <= market.DEFAULT_CHUNK_SIZE
