import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageRecord:
    """One displayable image. `url` is its identity within a snapshot."""

    url: str
    width: int
    height: int
    album: Optional[str] = None
    captured_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "url": self.url,
            "width": self.width,
            "height": self.height,
            "album": self.album,
            "capturedAt": self.captured_at.isoformat() if self.captured_at else None,
        }


@dataclass(frozen=True)
class CatalogSnapshot:
    records: Tuple[ImageRecord, ...] = ()
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        urls = set()
        for record in self.records:
            if record.url in urls:
                raise ValueError(f"Duplicate image url in snapshot: {record.url}")
            urls.add(record.url)

    @classmethod
    def from_records(cls, records: Iterable[ImageRecord]) -> "CatalogSnapshot":
        return cls(records=tuple(records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(self.records)

    def to_list(self):
        return [record.to_dict() for record in self.records]


EMPTY_SNAPSHOT = CatalogSnapshot(created_at=0.0)


class CatalogCache:
    """Holds the latest fully built snapshot.

    Readers never lock: get() is a single reference read. replace() swaps the
    reference under a lock so the generation counter stays consistent with it.
    """

    def __init__(self, snapshot: CatalogSnapshot = EMPTY_SNAPSHOT):
        self._snapshot = snapshot
        self._generation = 0
        self._lock = threading.Lock()

    def get(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def replace(self, snapshot: CatalogSnapshot) -> None:
        if not isinstance(snapshot, CatalogSnapshot):
            raise TypeError(f"Expected a CatalogSnapshot, got {type(snapshot).__name__}")
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            self._generation += 1
            generation = self._generation
        logger.info(
            f"Catalog updated: {len(previous)} -> {len(snapshot)} images "
            f"(generation {generation})."
        )
