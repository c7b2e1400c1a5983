from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Optional

from agent.core.memory import EvictionResult, SessionRegistry


logger = logging.getLogger(__name__)


class EvictionSweeper:
    """Periodically evicts idle sessions from one registry.

    ``start``/``stop`` manage a daemon thread; ``run_once`` performs a single
    pass synchronously so tests can drive eviction without waiting.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        max_age: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(hours=1),
    ) -> None:
        if interval.total_seconds() <= 0:
            raise ValueError("Sweep interval must be positive")
        self.registry = registry
        self.max_age = max_age
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop, name="session-eviction-sweeper", daemon=True
        )
        self._thread.start()
        logger.info(
            "Session sweeper started: max_age=%s interval=%s", self.max_age, self.interval
        )

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Session sweeper stopped")

    def run_once(self) -> EvictionResult:
        result = self.registry.evict_stale(self.max_age)
        if result.evicted:
            logger.info("Cleaned up %s inactive sessions", result.evicted)
        return result

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.interval.total_seconds()):
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error during session cleanup")
