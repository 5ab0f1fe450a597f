"""Background expiry sweep for a FreshnessCache."""

from __future__ import annotations

import logging
import threading

from utils.cache import FreshnessCache

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_S = 5 * 60


class CacheSweeper:
    """Runs ``cache.cleanup()`` on a fixed interval in a daemon thread.

    Owned by whoever builds the cache: call ``start()`` during startup and
    ``stop()`` on shutdown.
    """

    def __init__(self, cache: FreshnessCache, interval: float = DEFAULT_SWEEP_INTERVAL_S):
        if interval <= 0:
            raise ValueError("sweep interval must be positive")
        self.cache = cache
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cache-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def sweep_once(self) -> int:
        removed = self.cache.cleanup()
        if removed:
            logger.info("Cleaned up %d expired cache entries", removed)
        return removed

    def _run(self) -> None:
        logger.info("Starting cache sweeper (interval=%ss)", self.interval)
        while not self._stop.wait(self.interval):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Cache sweep failed")
        logger.info("Cache sweeper stopped")
