"""Decode and encode primitives for the HDR to JPEG conversion pipeline.

This module turns candidate files into normalised float images and writes the
final JPEG. RAW sensor data goes through LibRaw (``rawpy``); everything else
goes through Pillow, with ``pillow-heif`` (HEIC/HEIF) and ``tifffile`` (deep
RGB or greyscale TIFF) used when HDR expansion is requested so that samples
deeper than 8 bits survive decoding. AVIF is read by Pillow's own AVIF plugin
at 8 bits per sample.

Key Components
--------------

DecodedImage
    Immutable float32 RGB image plus the ICC profile and EXIF it carries.

FloatDynamicRange
    Tracks normalization parameters for float sources outside ``[0, 1]``.

ProcessingContext
    Context manager for atomic file operations with staged writes.

Functions
---------

decode_candidate
    Dispatch a :class:`~hdr_jpeg_converter.formats.Candidate` to its decoder.

array_to_float
    Convert a decoded sample array to normalised float32 RGB.

float_to_dtype_array
    Quantise a float image back to an integer dtype.

encode_jpeg
    Write a :class:`DecodedImage` as JPEG at a given lossy quality.
"""
from __future__ import annotations

import contextlib
import dataclasses
import io
import logging
import math
import os
import struct
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import pillow_heif
import rawpy
import tifffile
from PIL import Image, ImageOps

from .color import ConversionContext, convert_to_working_space, output_profile, srgb_icc_bytes
from .errors import DecodeError, EncodeError, InvalidParameter
from .formats import (
    HEIF_EXTENSIONS,
    TIFF_EXTENSIONS,
    Candidate,
    DecodeStrategy,
    normalize_extension,
    select_decode_strategy,
)

LOGGER = logging.getLogger("hdr_jpeg_converter")

pillow_heif.register_heif_opener()

ORIENTATION_TAG = 0x0112
ICC_PROFILE_TAG = 34675

_PILLOW_DECODE_ERRORS = (OSError, SyntaxError, ValueError, Image.DecompressionBombError)
_TIFFFILE_ERRORS = (OSError, ValueError, NotImplementedError, IndexError)
_HEIF_DECODE_ERRORS = (OSError, ValueError, RuntimeError)
_EXIF_ERRORS = (SyntaxError, ValueError, KeyError, IndexError, struct.error, OSError)


@dataclasses.dataclass(frozen=True, eq=False)
class DecodedImage:
    """A decoded image owned by the pipeline stage processing it.

    Attributes:
        pixels: RGB float32 array of shape ``(height, width, 3)`` in ``[0, 1]``.
        icc_profile: Profile embedded in the source, if any.
        exif: Raw EXIF block from the source, if any.
        source: File the image was decoded from.
    """

    pixels: np.ndarray
    icc_profile: Optional[bytes]
    exif: Optional[bytes]
    source: Path

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclasses.dataclass
class ProcessingContext:
    """Context manager for atomic file writes using staged temporary files.

    Writes to a temporary file in the same directory as the destination, then
    atomically moves it to the final location on success. Cleans up temporary
    files on failure.

    Attributes:
        destination: Final output file path.
        suffix: Temporary file suffix (default: ".tmp").
    """

    destination: Path
    suffix: str = ".tmp"

    def __post_init__(self) -> None:
        self._staged_path: Optional[Path] = None

    def _temp_path(self) -> Path:
        unique = uuid.uuid4().hex
        name = f".{self.destination.name}{self.suffix}-{unique}"
        return self.destination.parent / name

    def __enter__(self) -> Path:
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        self._staged_path = self._temp_path()
        return self._staged_path

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._staged_path is None:
            return False

        staged = self._staged_path
        self._staged_path = None

        if exc_type is None:
            try:
                os.replace(staged, self.destination)
            except Exception:
                with contextlib.suppress(Exception):
                    staged.unlink()
                raise
        else:
            with contextlib.suppress(FileNotFoundError):
                staged.unlink()
        return False


@dataclasses.dataclass(frozen=True)
class FloatDynamicRange:
    """Offset and scale that bring float samples into ``[0, 1]``.

    One scale is shared by every channel so hue and white balance survive.

    Attributes:
        offset: Global minimum, or ``0.0`` when nothing is negative.
        scale: Distance from ``offset`` to the global maximum.
    """

    offset: float
    scale: float

    @classmethod
    def from_array(cls, arr: np.ndarray) -> Optional["FloatDynamicRange"]:
        """Analyze an array; ``None`` when it has no finite values."""
        finite = arr[np.isfinite(arr)]
        if finite.size == 0:
            return None

        offset = min(0.0, float(np.min(finite)))
        scale = float(np.max(finite)) - offset
        if not (scale > 0.0 and math.isfinite(scale)):
            scale = 1.0
        return cls(offset=offset, scale=scale)

    def normalise(self, arr: np.ndarray) -> np.ndarray:
        return (np.asarray(arr, dtype=np.float32) - np.float32(self.offset)) / np.float32(self.scale)


def _as_rgb_samples(arr: np.ndarray) -> np.ndarray:
    """Reshape decoder output to ``(H, W, 3)``, dropping any alpha channel."""

    # collapse leading singleton dims (multi-page containers)
    while arr.ndim > 3 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim == 3 and arr.shape[0] in (1, 3, 4) and arr.shape[2] not in (1, 2, 3, 4):
        arr = np.moveaxis(arr, 0, -1)
    if arr.ndim == 2:
        arr = arr[:, :, None]
    if arr.ndim != 3:
        raise ValueError(f"Unsupported sample layout {arr.shape}")

    channels = arr.shape[2]
    if channels in (1, 2):
        return np.repeat(arr[:, :, :1], 3, axis=2)
    return arr[:, :, :3]


def array_to_float(arr: np.ndarray) -> np.ndarray:
    """Convert decoder samples to an RGB float32 array in the 0-1 range.

    Integer samples are scaled by their dtype range. Float samples already in
    ``[0, 1]`` are kept; wider float data (linear HDR) is normalised by its
    dynamic range, shared by all channels.
    """
    color = _as_rgb_samples(np.asarray(arr))

    if np.issubdtype(color.dtype, np.integer):
        dtype_info = np.iinfo(color.dtype)
        scale = float(dtype_info.max) - float(dtype_info.min)
        normalised = (color.astype(np.float32) - float(dtype_info.min)) / scale
    else:
        working = np.nan_to_num(color.astype(np.float32), nan=0.0, posinf=np.inf, neginf=0.0)
        finite = working[np.isfinite(working)]
        if finite.size and (finite.min() < 0.0 or finite.max() > 1.0):
            dynamic_range = FloatDynamicRange.from_array(working)
            if dynamic_range is not None:
                LOGGER.debug("Normalising float samples with range %s", dynamic_range.scale)
                working = dynamic_range.normalise(working)
        normalised = np.nan_to_num(working, nan=0.0, posinf=1.0, neginf=0.0)

    return np.ascontiguousarray(np.clip(normalised, 0.0, 1.0), dtype=np.float32)


def float_to_dtype_array(arr: np.ndarray, dtype: np.dtype = np.dtype(np.uint8)) -> np.ndarray:
    """Quantise a ``[0, 1]`` float array to the integer *dtype*."""
    dtype_info = np.iinfo(np.dtype(dtype))
    scale = float(dtype_info.max - dtype_info.min)
    clipped = np.clip(arr, 0.0, 1.0)
    return np.ascontiguousarray(np.round(clipped * scale + dtype_info.min).astype(dtype))


def _pil_to_samples(image: Image.Image) -> np.ndarray:
    if image.mode.startswith("I;16"):
        return np.array(image)
    if image.mode == "I":
        # 16-bit PNG and TIFF land here on older Pillow releases
        return np.clip(np.array(image), 0, 65535).astype(np.uint16)
    if image.mode == "F":
        return np.array(image)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return np.array(image)


def _finish(
    samples: np.ndarray, icc_profile: Optional[bytes], exif: Optional[bytes], source: Path
) -> DecodedImage:
    try:
        pixels = array_to_float(samples)
    except ValueError as exc:
        raise DecodeError(f"Couldn't create an image from {source}: {exc}", source) from exc
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise DecodeError(f"Decoded image from {source} is empty", source)
    return DecodedImage(pixels=pixels, icc_profile=icc_profile or None, exif=exif or None, source=source)


def _decode_with_pillow(path: Path) -> DecodedImage:
    try:
        with Image.open(path) as opened:
            image = ImageOps.exif_transpose(opened)
            image.load()
            samples = _pil_to_samples(image)
    except _PILLOW_DECODE_ERRORS as exc:
        raise DecodeError(f"Couldn't create an image from {path}: {exc}", path) from exc
    return _finish(samples, image.info.get("icc_profile"), image.info.get("exif"), path)


def _decode_heif_hdr(path: Path) -> DecodedImage:
    try:
        heif_file = pillow_heif.open_heif(path, convert_hdr_to_8bit=False, hdr_to_16bit=True)
        samples = np.asarray(heif_file)
        info = dict(heif_file.info)
    except _HEIF_DECODE_ERRORS as exc:
        raise DecodeError(f"Couldn't create an image from {path}: {exc}", path) from exc
    LOGGER.debug("Decoded %s as %s via pillow-heif", path, samples.dtype)
    return _finish(samples, info.get("icc_profile"), info.get("exif"), path)


_ORIENTATION_TRANSFORMS: Dict[int, Callable[[np.ndarray], np.ndarray]] = {
    2: lambda arr: arr[:, ::-1],
    3: lambda arr: arr[::-1, ::-1],
    4: lambda arr: arr[::-1],
    5: lambda arr: arr.swapaxes(0, 1),
    6: lambda arr: np.rot90(arr, k=-1),
    7: lambda arr: arr.swapaxes(0, 1)[::-1, ::-1],
    8: lambda arr: np.rot90(arr, k=1),
}


_DEEP_TIFF_PHOTOMETRICS = (tifffile.PHOTOMETRIC.RGB, tifffile.PHOTOMETRIC.MINISBLACK)


def _holds_deep_samples(page: "tifffile.TiffPage") -> bool:
    """Whether *page* stores plain RGB/grey samples wider than 8 bits."""

    if page.photometric not in _DEEP_TIFF_PHOTOMETRICS:
        return False
    return page.bitspersample > 8 or page.sampleformat == tifffile.SAMPLEFORMAT.IEEEFP


def _decode_tiff_hdr(path: Path) -> Optional[DecodedImage]:
    """Decode deep-sample TIFFs with tifffile; ``None`` for anything Pillow should handle."""

    with tifffile.TiffFile(path) as tif:
        page = tif.pages[0]
        if not _holds_deep_samples(page):
            return None
        samples = page.asarray()
        icc_tag = page.tags.get(ICC_PROFILE_TAG)
        orientation_tag = page.tags.get(274)
    icc_profile = bytes(icc_tag.value) if icc_tag is not None else None
    samples = _as_rgb_samples(samples)
    if orientation_tag is not None:
        transform = _ORIENTATION_TRANSFORMS.get(int(orientation_tag.value))
        if transform is not None:
            samples = transform(samples)
    LOGGER.debug("Decoded %s as %s via tifffile", path, samples.dtype)
    return _finish(samples, icc_profile, None, path)


def _decode_standard(path: Path, *, expand_hdr: bool) -> DecodedImage:
    """Decode a pre-rendered format, keeping deep samples when asked to.

    AVIF, PNG and JPEG always go through Pillow; AVIF arrives at 8 bits.
    """

    ext = normalize_extension(path)
    if expand_hdr and ext in HEIF_EXTENSIONS:
        return _decode_heif_hdr(path)
    if expand_hdr and ext in TIFF_EXTENSIONS:
        try:
            image = _decode_tiff_hdr(path)
        except _TIFFFILE_ERRORS as exc:
            LOGGER.debug("tifffile could not read %s (%s); falling back to Pillow", path, exc)
        else:
            if image is not None:
                return image
    return _decode_with_pillow(path)


def _decode_raw(path: Path) -> DecodedImage:
    """Demosaic RAW sensor data read from *path* into sRGB."""

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise DecodeError(f"Couldn't read {path}: {exc}", path) from exc

    try:
        with rawpy.imread(io.BytesIO(data)) as raw:
            rgb = raw.postprocess(
                use_camera_wb=True,
                output_bps=16,
                output_color=rawpy.ColorSpace.sRGB,
            )
    except (rawpy.LibRawError, ValueError) as exc:
        raise DecodeError(f"Couldn't decode RAW data from {path}: {exc}", path) from exc
    return _finish(rgb, srgb_icc_bytes(), None, path)


def decode_candidate(candidate: Candidate, context: ConversionContext) -> DecodedImage:
    """Decode *candidate* with the strategy its extension selects.

    Raises:
        DecodeError: If the file cannot be parsed as an image.
    """
    strategy = select_decode_strategy(candidate)
    if strategy is DecodeStrategy.RAW_SENSOR:
        image = _decode_raw(candidate.path)
    else:
        image = _decode_standard(candidate.path, expand_hdr=context.expand_hdr)
    LOGGER.debug("Decoded %s at %sx%s", candidate.path, image.width, image.height)
    return image


def jpeg_quality(quality: float) -> int:
    """Map a compression quality in ``(0, 1]`` onto Pillow's 1-100 JPEG scale.

    Raises:
        InvalidParameter: If *quality* is not a finite number in ``(0, 1]``.
    """
    if isinstance(quality, bool) or not isinstance(quality, (int, float)):
        raise InvalidParameter(f"Compression quality must be a number, got {quality!r}")
    if not math.isfinite(quality) or not 0.0 < quality <= 1.0:
        raise InvalidParameter(f"Compression quality must be in (0, 1], got {quality!r}")
    return max(1, int(round(quality * 100)))


def _normalise_exif(raw_exif: Optional[bytes]) -> Optional[bytes]:
    """Return *raw_exif* with orientation reset, since pixels are already upright."""

    if not raw_exif:
        return None
    exif = Image.Exif()
    try:
        exif.load(raw_exif)
        if exif.get(ORIENTATION_TAG, 1) != 1:
            exif[ORIENTATION_TAG] = 1
        return exif.tobytes()
    except _EXIF_ERRORS:  # pragma: no cover - metadata best effort
        LOGGER.debug("Dropping unreadable EXIF block", exc_info=True)
        return None


def encode_jpeg(
    image: DecodedImage,
    destination: Path,
    quality: float,
    context: ConversionContext,
) -> Path:
    """Write *image* to *destination* as JPEG.

    The output directory is created when missing. The image's own profile is
    embedded under the ``retain`` policy, falling back to the working color
    space; the ``convert`` policy transforms pixels into the working space.

    Raises:
        InvalidParameter: If *quality* is outside ``(0, 1]``.
        EncodeError: If the profile is unsupported or the file cannot be written.
    """
    save_kwargs = {"quality": jpeg_quality(quality), "optimize": True}

    output = Image.fromarray(float_to_dtype_array(image.pixels, np.dtype(np.uint8)))
    if context.icc_policy == "convert":
        output = convert_to_working_space(output, image.icc_profile, context)
        save_kwargs["icc_profile"] = context.color_space.icc_bytes
    else:
        save_kwargs["icc_profile"] = output_profile(image.icc_profile, context)

    exif = _normalise_exif(image.exif)
    if exif:
        save_kwargs["exif"] = exif

    try:
        with ProcessingContext(destination) as staged_path:
            output.save(os.fspath(staged_path), format="JPEG", **save_kwargs)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Failed to write the image to {destination}: {exc}", image.source) from exc
    return destination


__all__ = [
    "DecodedImage",
    "FloatDynamicRange",
    "ProcessingContext",
    "array_to_float",
    "decode_candidate",
    "encode_jpeg",
    "float_to_dtype_array",
    "jpeg_quality",
]
