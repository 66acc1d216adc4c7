"""Manifest watcher for Librarian.

Polls the launcher manifest on a fixed interval, compares it with the last
known inventory and publishes an :class:`~librarian.diff.InventoryDiff`
whenever something changed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

import requests

from librarian.diff import InventoryDiff, compute_diff
from librarian.inventory import Inventory, ManifestError

logger = logging.getLogger(__name__)


class ManifestWatcher:
    """Timer-driven manifest poller.

    Usage:
        watcher = ManifestWatcher(web.fetch_manifest, queue.put, initial)
        watcher.start(interval=600)
        ...
        watcher.stop()

    Ticks are serialised by a lock: a slow tick delays the next one instead
    of overlapping with it.
    """

    def __init__(
        self,
        fetch_manifest: Callable[[], bytes | str],
        on_change: Callable[[InventoryDiff], None],
        initial: Inventory | None = None,
    ):
        """Create a watcher that starts from *initial* (empty if None)."""
        self._fetch_manifest = fetch_manifest
        self._on_change = on_change
        self._current = initial if initial is not None else Inventory.empty()
        self._interval = 0.0
        self._next_check_time: datetime | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ---- lifecycle ----

    def start(self, interval: float) -> None:
        """Arm the timer with *interval* seconds and check immediately."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.stop()
        self._interval = float(interval)
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._poll, args=(self._stop,), daemon=True, name="ManifestWatcher"
        )
        self._thread.start()
        logger.info("Watching manifest (interval=%ds)", self._interval)

    def stop(self) -> None:
        """Disarm the timer and wait for an in-flight tick to finish."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=30)
            logger.info("Watcher stopped.")
        with self._lock:
            self._next_check_time = None

    @property
    def is_running(self) -> bool:
        """Return whether the timer is armed."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def next_check_time(self) -> datetime | None:
        """When the next scheduled check runs (None while stopped)."""
        with self._lock:
            return self._next_check_time

    @property
    def current(self) -> Inventory:
        """The last known inventory."""
        with self._lock:
            return self._current

    # ---- ticks ----

    def _poll(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.check_now()
            except Exception:
                logger.exception("Unexpected error during manifest check; retrying next tick")
            with self._lock:
                if stop.is_set():
                    break
                self._next_check_time = datetime.now() + timedelta(seconds=self._interval)
            stop.wait(timeout=self._interval)

    def check_now(self) -> InventoryDiff | None:
        """
        Fetch the live manifest once and publish a diff if it changed.

        Returns the published diff, or None if nothing changed or the check
        failed.
        """
        with self._lock:
            try:
                live = Inventory.from_manifest(self._fetch_manifest())
            except (requests.RequestException, ManifestError, OSError) as exc:
                logger.error("Manifest check failed, skipping this tick: %s", exc)
                return None

            if live == self._current:
                logger.debug("Manifest unchanged (%d versions)", len(live))
                return None

            diff = compute_diff(self._current, live)
            logger.info("Manifest changed: %s", diff.summary())
            try:
                self._on_change(diff)
            except Exception:
                logger.exception("Could not publish manifest change; will retry next tick")
                return None
            self._current = live
            return diff
