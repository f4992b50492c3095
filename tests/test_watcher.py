import os
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock

from PIL import Image
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from cadre.catalog import CatalogCache, CatalogSnapshot, ImageRecord
from cadre.scanner import ScanError, ScanErrorReason, Scanner
from cadre.watcher import (
    PhotoDirectoryEventHandler,
    RescanCoordinator,
    Watcher,
    is_hidden_path,
)


def _wait_for(predicate, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _snapshot(*urls):
    return CatalogSnapshot.from_records(ImageRecord(url=u, width=1, height=1) for u in urls)


class TestEventHandler(unittest.TestCase):
    def setUp(self):
        self.root = "/photos-root"
        self.changes = []
        self.handler = PhotoDirectoryEventHandler(self.root, self.changes.append)

    def test_is_hidden_path(self):
        self.assertFalse(is_hidden_path("/photos-root/a.jpg", self.root))
        self.assertFalse(is_hidden_path("/photos-root/Album/a.jpg", self.root))
        self.assertFalse(is_hidden_path(self.root, self.root))
        self.assertTrue(is_hidden_path("/photos-root/.a.jpg", self.root))
        self.assertTrue(is_hidden_path("/photos-root/.cache/a.jpg", self.root))

    def test_create_and_delete_trigger(self):
        self.handler.dispatch(FileCreatedEvent("/photos-root/a.jpg"))
        self.handler.dispatch(FileDeletedEvent("/photos-root/Album/b.jpg"))
        self.handler.dispatch(DirCreatedEvent("/photos-root/NewAlbum"))
        self.assertEqual(
            self.changes,
            ["/photos-root/a.jpg", "/photos-root/Album/b.jpg", "/photos-root/NewAlbum"],
        )

    def test_hidden_paths_are_ignored(self):
        self.handler.dispatch(FileCreatedEvent("/photos-root/.DS_Store"))
        self.handler.dispatch(FileDeletedEvent("/photos-root/.cache/thumb.jpg"))
        self.assertEqual(self.changes, [])

    def test_modifications_are_ignored(self):
        self.handler.dispatch(FileModifiedEvent("/photos-root/a.jpg"))
        self.assertEqual(self.changes, [])

    def test_move_from_hidden_temporary_file_triggers(self):
        self.handler.dispatch(
            FileMovedEvent("/photos-root/Album/.x.jpg.part", "/photos-root/Album/x.jpg")
        )
        self.assertEqual(self.changes, ["/photos-root/Album/x.jpg"])


class TestRescanCoordinator(unittest.TestCase):
    def setUp(self):
        self.exit_event = threading.Event()
        self.cache = CatalogCache()
        self.scanner = MagicMock(spec=Scanner)

    def tearDown(self):
        self.exit_event.set()

    def _coordinator(self, **kwargs):
        kwargs.setdefault("debounce_s", 0)
        return RescanCoordinator(self.scanner, self.cache, self.exit_event, **kwargs)

    def test_rescan_now_publishes_snapshot(self):
        snapshot = _snapshot("/photos/a.jpg")
        self.scanner.scan.return_value = snapshot
        coordinator = self._coordinator()
        self.assertTrue(coordinator.rescan_now())
        self.assertIs(self.cache.get(), snapshot)

    def test_missing_root_publishes_empty_catalog(self):
        self.cache.replace(_snapshot("/photos/a.jpg"))
        self.scanner.scan.side_effect = ScanError(ScanErrorReason.ROOT_MISSING, "/nope")
        coordinator = self._coordinator()
        with self.assertLogs("cadre.watcher", level="ERROR"):
            self.assertFalse(coordinator.rescan_now())
        self.assertEqual(len(self.cache.get()), 0)

    def test_unexpected_error_keeps_previous_snapshot(self):
        previous = _snapshot("/photos/a.jpg")
        self.cache.replace(previous)
        self.scanner.scan.side_effect = RuntimeError("boom")
        coordinator = self._coordinator()
        with self.assertLogs("cadre.watcher", level="ERROR"):
            self.assertFalse(coordinator.rescan_now())
        self.assertIs(self.cache.get(), previous)

    def test_full_queue_drops_events(self):
        coordinator = self._coordinator(queue_size=2)
        self.assertTrue(coordinator.submit("a"))
        self.assertTrue(coordinator.submit("b"))
        self.assertFalse(coordinator.submit("c"))

    def test_event_burst_is_coalesced_while_scan_in_flight(self):
        scan_started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_scan():
            calls.append(time.time())
            scan_started.set()
            release.wait(10)
            return _snapshot(f"/photos/{len(calls)}.jpg")

        self.scanner.scan.side_effect = slow_scan
        coordinator = self._coordinator()
        coordinator.start()

        coordinator.submit("/photos-root/1.jpg")
        self.assertTrue(scan_started.wait(10))
        for i in range(2, 11):
            coordinator.submit(f"/photos-root/{i}.jpg")
        release.set()

        self.assertTrue(_wait_for(lambda: coordinator.scans_completed == 2))
        time.sleep(0.3)
        self.assertEqual(len(calls), 2)
        self.assertEqual([r.url for r in self.cache.get()], ["/photos/2.jpg"])

    def test_debounce_collapses_burst_into_one_scan(self):
        self.scanner.scan.return_value = _snapshot("/photos/a.jpg")
        coordinator = self._coordinator(debounce_s=0.3)
        coordinator.start()
        for i in range(20):
            coordinator.submit(f"/photos-root/{i}.jpg")
        self.assertTrue(_wait_for(lambda: coordinator.scans_completed == 1))
        time.sleep(0.5)
        self.assertEqual(self.scanner.scan.call_count, 1)

    def test_thread_stops_on_exit_event(self):
        coordinator = self._coordinator()
        coordinator.start()
        self.exit_event.set()
        coordinator.join(timeout=5)
        self.assertFalse(coordinator.is_alive())


class TestWatcher(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name
        self.exit_event = threading.Event()

    def tearDown(self):
        self.exit_event.set()
        self.temp_dir.cleanup()

    def test_start_on_missing_directory_is_degraded(self):
        watcher = Watcher(os.path.join(self.root, "missing"), lambda path: None)
        self.assertFalse(watcher.start())
        self.assertFalse(watcher.is_alive())

    def test_watching_starts_when_directory_appears(self):
        root = os.path.join(self.root, "later")
        on_change = MagicMock()
        watcher = Watcher(root, on_change)
        with self.assertLogs("cadre.watcher", level="WARNING"):
            self.assertFalse(watcher.start())
        self.assertFalse(watcher.check_health())
        on_change.assert_not_called()

        os.makedirs(root)
        try:
            self.assertTrue(watcher.check_health())
            self.assertTrue(watcher.is_alive())
            on_change.assert_called_once_with(os.path.abspath(root))
        finally:
            watcher.stop()
        self.assertTrue(watcher.check_health())

    def test_missing_directory_recovers_through_coordinator(self):
        root = os.path.join(self.root, "later")
        cache = CatalogCache()
        coordinator = RescanCoordinator(Scanner(root), cache, self.exit_event, debounce_s=0)
        watcher = Watcher(root, coordinator.submit)
        coordinator.watcher = watcher
        with self.assertLogs("cadre.watcher", level="WARNING"):
            coordinator.rescan_now()
            watcher.start()
        coordinator.start()
        try:
            os.makedirs(os.path.join(root, "Album"))
            tmp_path = os.path.join(root, "Album", ".a.jpg.part")
            Image.new("RGB", (8, 8)).save(tmp_path, format="JPEG")
            os.replace(tmp_path, os.path.join(root, "Album", "a.jpg"))
            self.assertTrue(_wait_for(lambda: len(cache.get()) == 1))
            self.assertTrue(watcher.is_alive())
        finally:
            watcher.stop()

    def test_check_health_reports_dead_observer_once(self):
        watcher = Watcher(self.root, lambda path: None)
        watcher.observer = MagicMock()
        watcher.observer.is_alive.return_value = False
        with self.assertLogs("cadre.watcher", level="ERROR") as logs:
            self.assertFalse(watcher.check_health())
            self.assertFalse(watcher.check_health())
        self.assertEqual(len(logs.output), 1)

    def test_new_file_reaches_catalog(self):
        cache = CatalogCache()
        coordinator = RescanCoordinator(
            Scanner(self.root), cache, self.exit_event, debounce_s=0.1
        )
        watcher = Watcher(self.root, coordinator.submit)
        coordinator.watcher = watcher
        coordinator.rescan_now()
        self.assertEqual(len(cache.get()), 0)

        self.assertTrue(watcher.start())
        coordinator.start()
        try:
            album_dir = os.path.join(self.root, "Album")
            os.makedirs(album_dir)
            tmp_path = os.path.join(album_dir, ".new.jpg.part")
            Image.new("RGB", (8, 8)).save(tmp_path, format="JPEG")
            os.replace(tmp_path, os.path.join(album_dir, "new.jpg"))
            self.assertTrue(_wait_for(lambda: len(cache.get()) == 1))
            self.assertEqual(cache.get().records[0].album, "Album")

            os.remove(os.path.join(album_dir, "new.jpg"))
            self.assertTrue(_wait_for(lambda: len(cache.get()) == 0))
        finally:
            watcher.stop()


if __name__ == "__main__":
    unittest.main()
