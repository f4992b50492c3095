import os
import sys
import tempfile
import unittest
from unittest.mock import patch

from PIL import Image

from cadre import scanner as scanner_module
from cadre.scanner import (
    ScanError,
    ScanErrorReason,
    Scanner,
    album_for,
    scan,
    url_for,
)


def _write_image(path, size=(32, 24)):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    Image.new("RGB", size, color="blue").save(path, format="JPEG")


def _write_bytes(path, content=b"garbage"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)


class TestScanner(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name

    def tearDown(self):
        self.temp_dir.cleanup()

    def _path(self, *parts):
        return os.path.join(self.root, *parts)

    def test_corrupted_file_is_excluded_and_logged(self):
        _write_image(self._path("one.jpg"))
        _write_image(self._path("two.jpg"))
        _write_image(self._path("Album", "three.jpg"))
        _write_bytes(self._path("broken.jpg"))

        s = Scanner(self.root)
        with self.assertLogs("cadre.scanner", level="WARNING") as logs:
            snapshot = s.scan()

        self.assertEqual(len(snapshot), 3)
        failures = [line for line in logs.output if "Could not process image" in line]
        self.assertEqual(len(failures), 1)
        self.assertEqual(len(s.last_failures), 1)
        self.assertTrue(s.last_failures[0].path.endswith("broken.jpg"))

    def test_album_tagging(self):
        _write_image(self._path("Vacation", "beach.jpg"))
        _write_image(self._path("beach.jpg"))
        _write_image(self._path("Vacation", "Day 2", "sunset.jpg"))

        records = {r.url: r for r in scan(self.root)}

        self.assertEqual(records["/photos/Vacation/beach.jpg"].album, "Vacation")
        self.assertIsNone(records["/photos/beach.jpg"].album)
        self.assertEqual(records["/photos/Vacation/Day%202/sunset.jpg"].album, "Vacation")

    def test_urls_are_unique(self):
        for name in ("a.jpg", "b.JPG", "c.png"):
            _write_image(self._path(name))
            _write_image(self._path("x", name))
            _write_image(self._path("y", "z", name))
        snapshot = scan(self.root)
        urls = [r.url for r in snapshot]
        self.assertEqual(len(urls), 9)
        self.assertEqual(len(set(urls)), len(urls))

    def test_records_carry_dimensions(self):
        _write_image(self._path("wide.jpg"), size=(80, 20))
        (record,) = scan(self.root)
        self.assertEqual((record.width, record.height), (80, 20))

    def test_unsupported_files_are_skipped(self):
        _write_image(self._path("keep.jpg"))
        _write_bytes(self._path("notes.txt"), b"hello")
        _write_bytes(self._path("anim.gif"), b"GIF89a")
        _write_bytes(self._path("Album", ".keep.jpg.part"), b"partial download")

        urls = [r.url for r in scan(self.root)]
        self.assertEqual(urls, ["/photos/keep.jpg"])

    def test_dot_files_and_directories_are_scanned(self):
        _write_image(self._path(".beach.jpg"))
        _write_image(self._path(".trip", "a.jpg"))

        records = {r.url: r for r in scan(self.root)}
        self.assertEqual(set(records), {"/photos/.beach.jpg", "/photos/.trip/a.jpg"})
        self.assertEqual(records["/photos/.trip/a.jpg"].album, ".trip")

    @unittest.skipUnless(sys.platform.startswith("linux"), "needs byte file names")
    def test_undecodable_file_name_does_not_abort_scan(self):
        _write_image(self._path("a.jpg"))
        _write_image(self._path("b.jpg"))
        bad_path = os.path.join(os.fsencode(self.root), b"caf\xe9.jpg")
        with open(bad_path, "wb") as f:
            Image.new("RGB", (8, 8)).save(f, format="JPEG")

        s = Scanner(self.root)
        with self.assertLogs("cadre.scanner", level="WARNING"):
            snapshot = s.scan()

        self.assertEqual([r.url for r in snapshot], ["/photos/a.jpg", "/photos/b.jpg"])
        self.assertEqual(len(s.last_failures), 1)

    def test_oversized_image_does_not_abort_scan(self):
        _write_image(self._path("a.jpg"))
        _write_image(self._path("b.jpg"))
        _write_image(self._path("panorama.jpg"), size=(100, 100))

        s = Scanner(self.root)
        with patch.object(Image, "MAX_IMAGE_PIXELS", 1000):
            with self.assertLogs("cadre.scanner", level="WARNING"):
                snapshot = s.scan()

        self.assertEqual([r.url for r in snapshot], ["/photos/a.jpg", "/photos/b.jpg"])
        self.assertTrue(s.last_failures[0].path.endswith("panorama.jpg"))

    def test_missing_root_raises_scan_error(self):
        missing = self._path("does-not-exist")
        with self.assertRaises(ScanError) as cm:
            scan(missing)
        self.assertEqual(cm.exception.reason, ScanErrorReason.ROOT_MISSING)

    def test_empty_root_gives_empty_snapshot(self):
        self.assertEqual(len(scan(self.root)), 0)

    def test_deleted_file_drops_out(self):
        _write_image(self._path("a.jpg"))
        _write_image(self._path("b.jpg"))
        s = Scanner(self.root)
        self.assertEqual(len(s.scan()), 2)
        os.remove(self._path("a.jpg"))
        self.assertEqual([r.url for r in s.scan()], ["/photos/b.jpg"])

    def test_incremental_scan_reuses_unchanged_metadata(self):
        _write_image(self._path("a.jpg"))
        _write_image(self._path("b.jpg"))
        s = Scanner(self.root, incremental=True)
        with patch.object(
            scanner_module, "try_extract", wraps=scanner_module.try_extract
        ) as mock_extract:
            s.scan()
            self.assertEqual(mock_extract.call_count, 2)
            mock_extract.reset_mock()

            snapshot = s.scan()
            self.assertEqual(mock_extract.call_count, 0)
            self.assertEqual(len(snapshot), 2)

            _write_image(self._path("a.jpg"), size=(100, 50))
            snapshot = s.scan()
            self.assertEqual(mock_extract.call_count, 1)
            records = {r.url: r for r in snapshot}
            self.assertEqual(records["/photos/a.jpg"].width, 100)

    def test_full_scan_rereads_every_file(self):
        _write_image(self._path("a.jpg"))
        s = Scanner(self.root, incremental=False)
        with patch.object(
            scanner_module, "try_extract", wraps=scanner_module.try_extract
        ) as mock_extract:
            s.scan()
            s.scan()
        self.assertEqual(mock_extract.call_count, 2)

    def test_url_and_album_helpers(self):
        self.assertEqual(url_for("beach.jpg"), "/photos/beach.jpg")
        self.assertEqual(url_for(os.path.join("My Trip", "a#1.jpg")), "/photos/My%20Trip/a%231.jpg")
        self.assertIsNone(album_for("beach.jpg"))
        self.assertEqual(album_for(os.path.join("Vacation", "x", "beach.jpg")), "Vacation")


if __name__ == "__main__":
    unittest.main()
