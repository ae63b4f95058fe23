"""Working color space construction and ICC profile policy.

A :class:`WorkingColorSpace` is built once per batch and shared read-only by
every decode and encode call through a :class:`ConversionContext`. Images that
carry their own ICC profile keep it (``retain`` policy) unless the ``convert``
policy asks for pixels to be transformed into the working space.
"""
from __future__ import annotations

import functools
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from PIL import Image, ImageCms

from .errors import ColorSpaceSetupError, EncodeError

LOGGER = logging.getLogger("hdr_jpeg_converter")

BUILTIN_SPACES = ("srgb",)
ICC_POLICIES = ("retain", "convert")


@dataclass(frozen=True)
class WorkingColorSpace:
    """Reference profile used when an image has none of its own.

    Attributes:
        name: Human readable identifier ("sRGB" or the ICC description).
        profile: Parsed profile ready for :func:`PIL.ImageCms.profileToProfile`.
        icc_bytes: Serialised profile embedded into JPEG output.
    """

    name: str
    profile: ImageCms.ImageCmsProfile
    icc_bytes: bytes


@functools.lru_cache(maxsize=None)
def _srgb_profile() -> ImageCms.ImageCmsProfile:
    return ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB"))


@functools.lru_cache(maxsize=None)
def srgb_icc_bytes() -> bytes:
    """Return the serialised built-in sRGB profile."""

    return _srgb_profile().tobytes()


def build_working_color_space(name_or_path: Union[str, Path] = "srgb") -> WorkingColorSpace:
    """Construct the batch-wide working color space.

    Args:
        name_or_path: ``"srgb"`` (case-insensitive) for the built-in profile, or a path
            to an ICC profile such as a Rec.2020 or Display P3 profile.

    Raises:
        ColorSpaceSetupError: If the profile cannot be created or read.
    """
    if str(name_or_path).strip().lower() == "srgb":
        try:
            profile = _srgb_profile()
            return WorkingColorSpace(name="sRGB", profile=profile, icc_bytes=srgb_icc_bytes())
        except ImageCms.PyCMSError as exc:
            raise ColorSpaceSetupError(f"Couldn't create the sRGB color space: {exc}") from exc

    path = Path(name_or_path)
    if not path.is_file():
        raise ColorSpaceSetupError(
            f"Working color space must be one of {BUILTIN_SPACES} or an ICC profile file, got {name_or_path!r}"
        )
    try:
        profile = ImageCms.getOpenProfile(str(path))
        description = ImageCms.getProfileDescription(profile).strip()
        icc_bytes = profile.tobytes()
    except (ImageCms.PyCMSError, OSError) as exc:
        raise ColorSpaceSetupError(f"Couldn't create a color space from {path}: {exc}") from exc
    LOGGER.debug("Loaded working color space %r from %s", description, path)
    return WorkingColorSpace(name=description or path.stem, profile=profile, icc_bytes=icc_bytes)


@dataclass(frozen=True)
class ConversionContext:
    """Read-only configuration shared by every decode and encode call."""

    color_space: WorkingColorSpace
    expand_hdr: bool = True
    icc_policy: str = "retain"

    def __post_init__(self) -> None:
        if self.icc_policy not in ICC_POLICIES:
            raise ValueError(f"icc_policy must be one of {ICC_POLICIES}, got {self.icc_policy!r}")


def output_profile(icc_profile: Optional[bytes], context: ConversionContext) -> bytes:
    """Profile to embed for an image carrying *icc_profile* (``retain`` policy)."""

    return icc_profile or context.color_space.icc_bytes


def convert_to_working_space(
    image: Image.Image, icc_profile: Optional[bytes], context: ConversionContext
) -> Image.Image:
    """Transform an 8-bit RGB image from its embedded profile into the working space.

    Images without an embedded profile, or whose profile already matches the
    working space, are returned unchanged.

    Raises:
        EncodeError: If LittleCMS rejects either profile.
    """
    if not icc_profile or icc_profile == context.color_space.icc_bytes:
        return image
    try:
        source = ImageCms.ImageCmsProfile(io.BytesIO(icc_profile))
        return ImageCms.profileToProfile(
            image, source, context.color_space.profile, outputMode="RGB"
        )
    except (ImageCms.PyCMSError, OSError) as exc:
        raise EncodeError(f"Unsupported color profile: {exc}") from exc


__all__ = [
    "BUILTIN_SPACES",
    "ConversionContext",
    "ICC_POLICIES",
    "WorkingColorSpace",
    "build_working_color_space",
    "convert_to_working_space",
    "output_profile",
    "srgb_icc_bytes",
]
