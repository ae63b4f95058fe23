"""Input discovery and extension-based format dispatch.

This module decides *which* files a run touches and *how* each one is decoded.
Dispatch relies on the file extension only; no content sniffing takes place.

Functions:
    normalize_extension: Lower-case a path's extension, keeping the leading dot
    is_supported_image_format: Check a path against the directory allow-list
    classify_extension: Map a path to its :class:`FormatClass`
    collect_images: Scan a directory for allow-listed files
    classify_path: Turn an input path into conversion candidates
    select_decode_strategy: Pick the decoder for a candidate
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Union

from .errors import InputReadError, PathNotFound

LOGGER = logging.getLogger("hdr_jpeg_converter")

# Unprocessed sensor formats that need demosaicing (case-insensitive)
RAW_EXTENSIONS = frozenset({'.raw', '.dng', '.arw'})

# HEIF family, decoded through pillow-heif when HDR expansion is requested
HEIF_EXTENSIONS = frozenset({'.heic', '.heif'})

TIFF_EXTENSIONS = frozenset({'.tif', '.tiff'})

# Extensions picked up when scanning a directory
SUPPORTED_IMAGE_EXTENSIONS = frozenset(
    {'.avif', '.png', '.jpg', '.jpeg'} | HEIF_EXTENSIONS | TIFF_EXTENSIONS | RAW_EXTENSIONS
)


class FormatClass(enum.Enum):
    """Extension class detected for a candidate."""

    RAW = "raw"
    STANDARD = "standard"


class DecodeStrategy(enum.Enum):
    """Decoder selected by :func:`select_decode_strategy`."""

    RAW_SENSOR = "raw-sensor"
    STANDARD = "standard"


@dataclass(frozen=True)
class Candidate:
    """A single resolved input file scheduled for conversion."""

    path: Path
    format_class: FormatClass

    @classmethod
    def from_path(cls, path: Path) -> "Candidate":
        return cls(path=path, format_class=classify_extension(path))


def normalize_extension(path: Union[str, Path]) -> str:
    """Normalize file extension to lowercase with leading dot.

    Args:
        path: File path or extension string

    Returns:
        Normalized extension (e.g., '.heic', '.dng')

    Examples:
        >>> normalize_extension('IMG_0001.HEIC')
        '.heic'
        >>> normalize_extension('.DNG')
        '.dng'
    """
    if isinstance(path, str):
        path = Path(path)

    ext = path.suffix.lower()
    if not ext:
        # If no suffix, treat entire string as extension
        ext = str(path).lower()
        if not ext.startswith('.'):
            ext = '.' + ext

    return ext


def is_supported_image_format(path: Union[str, Path]) -> bool:
    """Check if a file would be picked up by a directory scan.

    Examples:
        >>> is_supported_image_format('photo.AVIF')
        True
        >>> is_supported_image_format('notes.txt')
        False
    """
    return normalize_extension(path) in SUPPORTED_IMAGE_EXTENSIONS


def classify_extension(path: Union[str, Path]) -> FormatClass:
    """Return :attr:`FormatClass.RAW` for sensor formats, ``STANDARD`` otherwise.

    Examples:
        >>> classify_extension('DSC01234.ARW')
        <FormatClass.RAW: 'raw'>
        >>> classify_extension('sunset.avif')
        <FormatClass.STANDARD: 'standard'>
    """
    if normalize_extension(path) in RAW_EXTENSIONS:
        return FormatClass.RAW
    return FormatClass.STANDARD


def collect_images(folder: Path) -> Iterator[Path]:
    """Yield the immediate children of *folder* with an allow-listed extension.

    Order follows the filesystem enumeration and is not guaranteed.
    """
    for entry in folder.iterdir():
        if entry.is_file() and is_supported_image_format(entry):
            yield entry


def classify_path(path: Path) -> List[Candidate]:
    """Resolve *path* into the candidates a run should convert.

    A directory contributes its allow-listed files. A file is always its own
    sole candidate, whatever its extension.

    Raises:
        PathNotFound: If *path* does not exist.
        InputReadError: If the directory cannot be listed.
    """
    if not path.exists():
        raise PathNotFound(path)
    if path.is_dir():
        try:
            candidates = [Candidate.from_path(entry) for entry in collect_images(path)]
        except OSError as exc:
            raise InputReadError(path, exc) from exc
        LOGGER.debug("Found %s candidate(s) in %s", len(candidates), path)
        return candidates
    return [Candidate.from_path(path)]


def select_decode_strategy(candidate: Candidate) -> DecodeStrategy:
    if candidate.format_class is FormatClass.RAW:
        return DecodeStrategy.RAW_SENSOR
    return DecodeStrategy.STANDARD


__all__ = [
    "Candidate",
    "DecodeStrategy",
    "FormatClass",
    "HEIF_EXTENSIONS",
    "RAW_EXTENSIONS",
    "SUPPORTED_IMAGE_EXTENSIONS",
    "TIFF_EXTENSIONS",
    "classify_extension",
    "classify_path",
    "collect_images",
    "is_supported_image_format",
    "normalize_extension",
    "select_decode_strategy",
]
