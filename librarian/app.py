"""
Main application controller for Librarian.

Ties together configuration, the manifest watcher, the local library and
the conditional actions.  The watcher thread produces diffs onto a queue;
a single consumer thread takes them one at a time and runs a dispatch
cycle for each:

    1. persist the new manifest snapshot
    2. run the rules flagged "before download"
    3. synchronise the library against the new inventory
    4. run the remaining ("after download") rules

Errors inside a cycle are logged and never stop the watch loop.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable

from librarian import __app_name__, __version__
from librarian.config import Config
from librarian.diff import InventoryDiff
from librarian.inventory import Inventory
from librarian.library import Library, SyncReport
from librarian.platform_utils import run_shell_command
from librarian.rules import ConditionalAction, dispatch
from librarian.watcher import ManifestWatcher
from librarian.web import WebAccess

logger = logging.getLogger(__name__)

# Marks the diff queue as complete
_QUEUE_COMPLETE = None


class Librarian:
    """
    Central orchestrator.

    Construction performs all fatal startup work: it creates the library
    root (``OSError``) and loads the rules (``ConfigError``).
    """

    def __init__(
        self,
        config: Config,
        web: WebAccess | None = None,
        run_command: Callable[[str], int] = run_shell_command,
    ) -> None:
        self.config = config
        # Only a session created here is closed on stop
        self._owns_web = web is None
        self.web = web or WebAccess(
            manifest_url=config.manifest_url, timeout=config.request_timeout
        )
        self._run_command = run_command
        self.rules: list[ConditionalAction] = config.rules()
        self.library = Library(
            config.library_path,
            self.web,
            artifact_types=config.artifact_types,
            skip_artifacts=config.skip_artifacts,
            verify=config.verify_artifacts,
        )

        stored = self.library.latest_manifest()
        self._stored_inventory = stored
        self._queue: queue.Queue[InventoryDiff | None] = queue.Queue()
        self._cancel = threading.Event()
        self._consumer: threading.Thread | None = None
        self.cycles_processed = 0
        self.last_sync: SyncReport | None = None

        self.watcher = ManifestWatcher(
            fetch_manifest=self.web.fetch_manifest,
            on_change=self._queue.put,
            initial=stored if stored is not None else Inventory.empty(),
        )
        logger.info(
            "Library at %s, %d rule(s), %s",
            self.library.root,
            len(self.rules),
            f"resuming from {len(stored)} known versions" if stored else "no stored manifest",
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Validate the library if configured, then start polling and consuming."""
        logger.info("%s %s starting.", __app_name__, __version__)
        self._cancel.clear()

        if self.config.validate_library_on_startup and self._stored_inventory is not None:
            logger.info("Validating library against the stored manifest")
            self.last_sync = self.library.sync(self._stored_inventory, self._cancel, deep=True)

        self._consumer = threading.Thread(target=self.run, daemon=True, name="Librarian")
        self._consumer.start()
        self.watcher.start(self.config.check_interval)

    def stop(self, drain: bool = False, timeout: float | None = None) -> None:
        """
        Stop polling and shut the consumer down.

        With *drain* the diffs already queued are processed first; otherwise
        the active download is cancelled and pending diffs are dropped.
        """
        logger.info("Shutting down…")
        self.watcher.stop()
        if not drain:
            self._cancel.set()
        consumer, self._consumer = self._consumer, None
        # The sentinel is only queued for a live consumer, which always takes it
        if consumer is not None and consumer.is_alive():
            self._queue.put(_QUEUE_COMPLETE)
            consumer.join(timeout)
        self._cancel.set()
        if self._owns_web:
            self.web.close()
        logger.info("%s stopped.", __app_name__)

    def run(self) -> None:
        """Consume diffs one at a time until the queue is marked complete."""
        while True:
            diff = self._queue.get()
            if diff is _QUEUE_COMPLETE:
                break
            if self._cancel.is_set():
                logger.info("Dropping queued change: %s", diff.summary())
                continue
            try:
                self.process(diff)
            except Exception:
                logger.exception("Unexpected error while processing a manifest change")

    # ------------------------------------------------------------------
    # Dispatch cycle
    # ------------------------------------------------------------------

    def process(self, diff: InventoryDiff) -> set[int]:
        """Run one full dispatch cycle for *diff*; returns the completed rule ids."""
        logger.info("Processing manifest change: %s", diff.summary())
        try:
            self.library.store_manifest(diff.new_inventory)
        except OSError as exc:
            logger.error("Could not store manifest snapshot: %s", exc)

        completed_ids: set[int] = set()
        self._dispatch(diff, False, completed_ids)

        try:
            self.last_sync = self.library.sync(diff.new_inventory, self._cancel)
        except Exception:
            logger.exception("Library sync failed")

        if self._cancel.is_set():
            logger.info("Cancelled; skipping post-download rules")
        else:
            self._dispatch(diff, True, completed_ids)

        self.cycles_processed += 1
        return completed_ids

    def _dispatch(self, diff: InventoryDiff, downloads_complete: bool, completed_ids: set[int]) -> None:
        try:
            dispatch(
                self.rules,
                diff,
                downloads_complete,
                completed_ids,
                self.library.root,
                self._run_command,
            )
        except Exception:
            logger.exception("Rule dispatch failed")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status_summary(self) -> str:
        """Return a short human-readable status string."""
        stats = self.library.stats
        state = "Watching" if self.watcher.is_running else "Stopped"
        text = (
            f"{state}: {len(self.watcher.current)} versions known, "
            f"{self.cycles_processed} changes processed, "
            f"{stats.total_downloaded} downloaded ({stats.total_bytes / (1024 * 1024):.1f} MB), "
            f"{stats.total_failed} failed"
        )
        if stats.last_downloaded_file:
            text += f", last {os.path.basename(stats.last_downloaded_file)}"
        next_check = self.watcher.next_check_time
        if next_check is not None:
            text += f", next check {next_check:%H:%M:%S}"
        return text
