"""Reads pixel dimensions and capture time from image files."""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from PIL import ExifTags, Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp"})

# DateTime lives in IFD0, DateTimeOriginal in the Exif sub-IFD.
EXIF_DATETIME = ExifTags.Base.DateTime
EXIF_DATETIME_ORIGINAL = ExifTags.Base.DateTimeOriginal
EXIF_IFD = ExifTags.IFD.Exif
EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


class ExtractionError(Exception):
    pass


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    captured_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExtractionFailure:
    path: str
    reason: str


ExtractionResult = Union[ImageMetadata, ExtractionFailure]


def is_supported_image(filename: str) -> bool:
    return os.path.splitext(filename)[1].lower() in SUPPORTED_EXTENSIONS


def parse_exif_datetime(value) -> Optional[datetime]:
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip().rstrip("\x00"), EXIF_DATETIME_FORMAT)
    except ValueError:
        return None


def read_capture_time(exif: Image.Exif) -> Optional[datetime]:
    """DateTime wins over DateTimeOriginal when both are present."""
    captured_at = parse_exif_datetime(exif.get(EXIF_DATETIME))
    if captured_at is not None:
        return captured_at
    try:
        exif_ifd = exif.get_ifd(EXIF_IFD)
    except Exception as e:
        logger.debug(f"Could not read the Exif IFD: {e}")
        return None
    return parse_exif_datetime(exif_ifd.get(EXIF_DATETIME_ORIGINAL))


def extract(path: str) -> ImageMetadata:
    """Reads the image header of `path`.

    Raises ExtractionError when the file cannot be opened as an image or has
    no usable dimensions. Pixel data is not decoded.
    """
    try:
        with Image.open(path) as img:
            width, height = img.size
            exif = img.getexif()
            captured_at = read_capture_time(exif)
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as e:
        raise ExtractionError(f"Cannot read image {path}: {e}") from e

    if not width or not height:
        raise ExtractionError(f"Image {path} has no dimensions ({width}x{height})")
    return ImageMetadata(width=width, height=height, captured_at=captured_at)


def try_extract(path: str) -> ExtractionResult:
    try:
        return extract(path)
    except ExtractionError as e:
        return ExtractionFailure(path=path, reason=str(e))
