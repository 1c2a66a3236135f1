from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import TYPE_CHECKING

from .logging import get_logger, log_event

if TYPE_CHECKING:
    from .cache import TieredCache

LOGGER = get_logger(__name__)


class CacheSweeper:
    """Background worker that drops expired entries from the local cache tiers."""

    def __init__(self, cache: TieredCache, *, interval: timedelta) -> None:
        self._cache = cache
        minimum_interval = max(interval.total_seconds(), 0.1)
        self._interval = timedelta(seconds=minimum_interval)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="tenant-store-cache-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if not self._thread:
            return
        self._stop_event.set()
        self._thread.join(timeout=self._interval.total_seconds() + 1)
        self._thread = None

    def sweep_once(self) -> int:
        purged = self._cache.purge_expired()
        if purged:
            log_event(LOGGER, "cache.sweep", level=logging.DEBUG, purged=purged)
        return purged

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval.total_seconds()):
            try:
                self.sweep_once()
            except Exception:  # pragma: no cover
                LOGGER.exception("Cache sweep failed")
