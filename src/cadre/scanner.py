import enum
import logging
import os
import threading
import time
from typing import Dict, List, NamedTuple, Optional
from urllib.parse import quote

from cadre.catalog import CatalogSnapshot, ImageRecord
from cadre.metadata import (
    ExtractionFailure,
    ImageMetadata,
    is_supported_image,
    try_extract,
)
from cadre.metrics import (
    metric_extraction_failures_total,
    metric_metadata_reused_total,
)

logger = logging.getLogger(__name__)

PHOTOS_URL_PREFIX = "/photos/"


class ScanErrorReason(str, enum.Enum):
    ROOT_MISSING = "RootMissing"


class ScanError(Exception):
    def __init__(self, reason: ScanErrorReason, root_dir: str):
        super().__init__(f"{reason.value}: {root_dir}")
        self.reason = reason
        self.root_dir = root_dir


class _MemoEntry(NamedTuple):
    size: int
    mtime_ns: int
    metadata: ImageMetadata


def url_for(relative_path: str) -> str:
    """Maps a path relative to the photo root to the URL that serves it."""
    posix_path = relative_path.replace(os.sep, "/")
    return PHOTOS_URL_PREFIX + quote(posix_path)


def album_for(relative_path: str) -> Optional[str]:
    """The first directory component of the path, None for files at the root."""
    parts = relative_path.split(os.sep)
    if len(parts) < 2:
        return None
    return parts[0]


class Scanner:
    """Walks a photo directory and builds catalog snapshots.

    With `incremental` set, metadata read during the previous scan is reused
    for files whose size and modification time did not change. Every call to
    scan() still walks the whole tree and returns a complete snapshot.
    """

    def __init__(self, root_dir: str, incremental: bool = True):
        self.root_dir = os.path.abspath(root_dir)
        self.incremental = incremental
        self.last_failures: List[ExtractionFailure] = []
        self._memo: Dict[str, _MemoEntry] = {}
        self._lock = threading.Lock()

    def scan(self) -> CatalogSnapshot:
        with self._lock:
            return self._scan()

    def _check_root(self):
        if not os.path.isdir(self.root_dir) or not os.access(
            self.root_dir, os.R_OK | os.X_OK
        ):
            raise ScanError(ScanErrorReason.ROOT_MISSING, self.root_dir)

    def _scan(self) -> CatalogSnapshot:
        self._check_root()
        start_time = time.time()
        logger.info(f"Scanning for images in {self.root_dir}")

        records: List[ImageRecord] = []
        failures: List[ExtractionFailure] = []
        new_memo: Dict[str, _MemoEntry] = {}
        reused = 0

        def on_walk_error(error: OSError):
            logger.warning(f"Cannot list {error.filename}: {error.strerror}")

        def record_failure(failure: ExtractionFailure):
            logger.warning(f"Could not process image: {failure.reason}")
            metric_extraction_failures_total.inc()
            failures.append(failure)

        for dirpath, dirnames, filenames in os.walk(self.root_dir, onerror=on_walk_error):
            dirnames.sort()
            for filename in sorted(filenames):
                if not is_supported_image(filename):
                    continue
                path = os.path.join(dirpath, filename)
                relative_path = os.path.relpath(path, self.root_dir)
                try:
                    url = url_for(relative_path)
                except UnicodeEncodeError:
                    # Names that are not valid UTF-8 cannot be served over HTTP.
                    record_failure(
                        ExtractionFailure(path, f"{path!r} is not a valid UTF-8 file name")
                    )
                    continue

                try:
                    stat = os.stat(path)
                except OSError as e:
                    # Deleted between listing and stat.
                    logger.debug(f"Skipping {path}: {e}")
                    continue

                memo = self._memo.get(path) if self.incremental else None
                if memo and memo.size == stat.st_size and memo.mtime_ns == stat.st_mtime_ns:
                    result = memo.metadata
                    reused += 1
                else:
                    result = try_extract(path)

                if isinstance(result, ExtractionFailure):
                    record_failure(result)
                    continue

                new_memo[path] = _MemoEntry(stat.st_size, stat.st_mtime_ns, result)
                records.append(
                    ImageRecord(
                        url=url,
                        width=result.width,
                        height=result.height,
                        album=album_for(relative_path),
                        captured_at=result.captured_at,
                    )
                )

        self._memo = new_memo
        self.last_failures = failures
        metric_metadata_reused_total.inc(reused)
        logger.info(
            f"Found and processed {len(records)} images in {time.time() - start_time:.2f}s "
            f"({reused} unchanged, {len(failures)} failed)."
        )
        return CatalogSnapshot.from_records(records)


def scan(root_dir: str) -> CatalogSnapshot:
    """One-off full scan of `root_dir`, without metadata reuse."""
    return Scanner(root_dir, incremental=False).scan()
