"""Keeps the catalog in sync with the photo directory.

Filesystem events are pushed into a bounded queue. A single coordinator
thread drains it and runs one scan per batch, so at most one scan is in
flight and bursts of events collapse into a single rescan.
"""

import logging
import os
import queue
import threading
import time
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cadre.catalog import CatalogCache, CatalogSnapshot
from cadre.metrics import (
    metric_catalog_images,
    metric_catalog_last_scan_timestamp,
    metric_scan_duration_seconds,
    metric_scans_total,
    metric_watcher_events_total,
)
from cadre.scanner import ScanError, Scanner

logger = logging.getLogger(__name__)


class WatcherError(Exception):
    pass


def is_hidden_path(path: str, root_dir: str) -> bool:
    """True when any component of `path` below `root_dir` starts with a dot."""
    relative_path = os.path.relpath(path, root_dir)
    if relative_path == os.curdir:
        return False
    return any(part.startswith(".") for part in relative_path.split(os.sep))


class PhotoDirectoryEventHandler(FileSystemEventHandler):
    """Forwards create, delete and move events for visible paths."""

    def __init__(self, root_dir: str, on_change):
        super().__init__()
        self.root_dir = os.path.abspath(root_dir)
        self.on_change = on_change

    def _forward(self, event: FileSystemEvent, *paths: str):
        paths = [os.fsdecode(p) for p in paths if p]
        if not paths or all(is_hidden_path(p, self.root_dir) for p in paths):
            logger.debug(f"Ignoring {event.event_type} event on hidden path {paths}")
            return
        logger.info(f"Detected {event.event_type}: {paths[-1]}. Rescanning...")
        self.on_change(paths[-1])

    def on_created(self, event):
        self._forward(event, event.src_path)

    def on_deleted(self, event):
        self._forward(event, event.src_path)

    def on_moved(self, event):
        self._forward(event, event.src_path, event.dest_path)


class RescanCoordinator(threading.Thread):
    def __init__(
        self,
        scanner: Scanner,
        cache: CatalogCache,
        exit_event: threading.Event,
        debounce_s: float = 0.5,
        queue_size: int = 256,
        watcher: Optional["Watcher"] = None,
    ):
        super().__init__(name="rescan_coordinator", daemon=True)
        self.scanner = scanner
        self.cache = cache
        self.exit_event = exit_event
        self.debounce_s = debounce_s
        self.watcher = watcher
        self.events: "queue.Queue[str]" = queue.Queue(maxsize=queue_size)
        self.scans_completed = 0

    def submit(self, path: str) -> bool:
        """Queues a change notification. Returns False if it was dropped."""
        try:
            self.events.put_nowait(path)
        except queue.Full:
            # The queue is only full when a rescan is already pending.
            metric_watcher_events_total.labels(outcome="dropped").inc()
            return False
        metric_watcher_events_total.labels(outcome="queued").inc()
        return True

    def request_rescan(self, reason: str = "manual") -> bool:
        return self.submit(reason)

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                self.events.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    def rescan_now(self) -> bool:
        """Scans the photo directory and publishes the result.

        Returns True when a new snapshot was built from the directory. A
        missing root publishes an empty snapshot. Any other failure keeps
        the current snapshot.
        """
        start_time = time.time()
        try:
            snapshot = self.scanner.scan()
        except ScanError as e:
            logger.error(
                f"The photo directory {e.root_dir} does not exist or is not readable. "
                "Please create it or update photosDir in the configuration."
            )
            metric_scans_total.labels(result="root_missing").inc()
            self._publish(CatalogSnapshot())
            return False
        except Exception as e:
            logger.error(f"Error scanning images: {e}", exc_info=True)
            metric_scans_total.labels(result="error").inc()
            return False
        metric_scan_duration_seconds.observe(time.time() - start_time)
        metric_scans_total.labels(result="ok").inc()
        self._publish(snapshot)
        return True

    def _publish(self, snapshot: CatalogSnapshot):
        self.cache.replace(snapshot)
        self.scans_completed += 1
        metric_catalog_images.set(len(snapshot))
        metric_catalog_last_scan_timestamp.set_to_current_time()

    def run(self):
        logger.info("Starting rescan coordinator.")
        while not self.exit_event.is_set():
            try:
                self.events.get(timeout=1)
            except queue.Empty:
                if self.watcher:
                    self.watcher.check_health()
                continue

            if self.debounce_s > 0:
                self.exit_event.wait(self.debounce_s)
                if self.exit_event.is_set():
                    break
            coalesced = self._drain()
            if coalesced:
                logger.debug(f"Coalesced {coalesced} more change events into this rescan.")
            try:
                self.rescan_now()
            except Exception as e:
                logger.error(f"Unexpected error in rescan coordinator: {e}", exc_info=True)
        logger.info("Rescan coordinator stopped.")


class Watcher:
    """Owns the watchdog observer for the photo directory.

    When the directory does not exist yet, check_health() starts watching
    as soon as it appears and reports the new directory as a change. An
    observer that dies is not restarted; check_health() logs the failure
    once.
    """

    def __init__(self, root_dir: str, on_change):
        self.root_dir = os.path.abspath(root_dir)
        self.on_change = on_change
        self.event_handler = PhotoDirectoryEventHandler(self.root_dir, on_change)
        self.observer: Optional[Observer] = None
        self._stopped = False
        self._failure_reported = False
        self._waiting_for_root = False

    def start(self) -> bool:
        self._stopped = False
        if not os.path.isdir(self.root_dir):
            if not self._waiting_for_root:
                logger.warning(
                    f"Cannot watch non-existent directory: {self.root_dir}. "
                    "Watching will start once it is created."
                )
            self._waiting_for_root = True
            return False
        self._waiting_for_root = False
        if self.observer and self.observer.is_alive():
            return True

        self.observer = Observer()
        try:
            self.observer.schedule(self.event_handler, self.root_dir, recursive=True)
            self.observer.start()
        except OSError as e:
            logger.error(f"Watcher error: cannot watch {self.root_dir}: {e}")
            self.observer = None
            return False
        self._failure_reported = False
        logger.info(f"Started watching directory: {self.root_dir}")
        return True

    def stop(self):
        self._stopped = True
        if self.observer and self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=5)
            logger.info("Stopped watching directory.")
        self.observer = None

    def is_alive(self) -> bool:
        return bool(self.observer and self.observer.is_alive())

    def check_health(self) -> bool:
        if self._stopped:
            return True
        if self.observer is None:
            if not self._waiting_for_root:
                return True
            if not os.path.isdir(self.root_dir) or not self.start():
                return False
            logger.info(f"Photo directory {self.root_dir} appeared.")
            self.on_change(self.root_dir)
            return True
        if self.observer.is_alive():
            return True
        if not self._failure_reported:
            error = WatcherError(f"Filesystem observer for {self.root_dir} stopped unexpectedly")
            logger.error(f"{error}. New or removed photos will not be picked up until restart.")
            self._failure_reported = True
        return False
