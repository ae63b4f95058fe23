"""Error taxonomy for the conversion pipeline.

Two families are distinguished. :class:`FatalConversionError` subclasses end the
whole run because there is nothing left to process. :class:`CandidateError`
subclasses describe a single file that could not be converted; the batch
orchestrator records them and moves on to the next candidate.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class ConversionError(Exception):
    """Base class for every error raised by :mod:`hdr_jpeg_converter`."""


class FatalConversionError(ConversionError):
    """Raised when the run cannot continue at all."""


class PathNotFound(FatalConversionError):
    """Raised when the requested input path does not exist."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"The provided path does not exist: {path}")
        self.path = path


class InputReadError(FatalConversionError):
    """Raised when the input directory cannot be listed."""

    def __init__(self, path: Path, reason: OSError) -> None:
        super().__init__(f"Error reading contents of directory {path}: {reason}")
        self.path = path


class ColorSpaceSetupError(FatalConversionError):
    """Raised when the shared working color space cannot be constructed."""


class CandidateError(ConversionError):
    """Raised for a failure that only affects one candidate file."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class DecodeError(CandidateError):
    """Raised when a candidate's bytes cannot be decoded into an image."""


class InvalidParameter(CandidateError, ValueError):
    """Raised when a per-candidate parameter (width, quality) is unusable."""


class EncodeError(CandidateError):
    """Raised when the JPEG output cannot be written."""


__all__ = [
    "CandidateError",
    "ColorSpaceSetupError",
    "ConversionError",
    "DecodeError",
    "EncodeError",
    "FatalConversionError",
    "InputReadError",
    "InvalidParameter",
    "PathNotFound",
]
