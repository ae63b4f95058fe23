"""Batch conversion of HDR and RAW photographs to JPEG.

This package converts AVIF, HEIC/HEIF, DNG, ARW, RAW, TIFF and other still
images into standard JPEG files, optionally resizing them, while keeping the
color profile each image was authored in.

Module Organization
-------------------

formats
    Input discovery and extension-based dispatch between RAW sensor decoding
    and standard (HDR-capable) decoding.

color
    Working color space construction and ICC profile policy shared by every
    decode and encode call of a batch.

io_utils
    Decoders (rawpy, pillow-heif, tifffile, Pillow), float normalisation and
    atomic JPEG encoding.

pipeline
    Width parsing, uniform resampling, output naming and the fault-isolating
    batch orchestrator with optional thread pool and deadline.

cli
    Command-line interface: ``<path> [compressionRatio] [width] [outputDir]``.

errors
    Fatal versus per-candidate error taxonomy.

Example Usage
-------------

    from pathlib import Path
    from hdr_jpeg_converter import (
        ConversionContext,
        ConversionRequest,
        build_working_color_space,
        run_batch,
    )

    context = ConversionContext(color_space=build_working_color_space("srgb"))
    report = run_batch(
        ConversionRequest(Path("~/Pictures/iphone").expanduser(), quality=0.8, width="2048"),
        context,
        workers=4,
    )
    for outcome in report.failed:
        print(outcome.source, outcome.stage, outcome.error)
"""
from __future__ import annotations

import logging

from .cli import build_parser, main, parse_args, run_pipeline
from .color import (
    ConversionContext,
    WorkingColorSpace,
    build_working_color_space,
)
from .errors import (
    CandidateError,
    ColorSpaceSetupError,
    ConversionError,
    DecodeError,
    EncodeError,
    FatalConversionError,
    InputReadError,
    InvalidParameter,
    PathNotFound,
)
from .formats import (
    Candidate,
    DecodeStrategy,
    FormatClass,
    SUPPORTED_IMAGE_EXTENSIONS,
    classify_extension,
    classify_path,
    collect_images,
    select_decode_strategy,
)
from .io_utils import DecodedImage, decode_candidate, encode_jpeg
from .pipeline import (
    ORIGINAL,
    BatchReport,
    ConversionOutcome,
    ConversionRequest,
    OriginalWidth,
    OutputTarget,
    PixelWidth,
    Stage,
    convert_candidate,
    default_output_folder,
    parse_width,
    resample,
    resolve_output_target,
    run_batch,
)

LOGGER = logging.getLogger("hdr_jpeg_converter")

__all__ = [
    "BatchReport",
    "Candidate",
    "CandidateError",
    "ColorSpaceSetupError",
    "ConversionContext",
    "ConversionError",
    "ConversionOutcome",
    "ConversionRequest",
    "DecodeError",
    "DecodeStrategy",
    "DecodedImage",
    "EncodeError",
    "FatalConversionError",
    "FormatClass",
    "InputReadError",
    "InvalidParameter",
    "ORIGINAL",
    "OriginalWidth",
    "OutputTarget",
    "PathNotFound",
    "PixelWidth",
    "SUPPORTED_IMAGE_EXTENSIONS",
    "Stage",
    "WorkingColorSpace",
    "build_parser",
    "build_working_color_space",
    "classify_extension",
    "classify_path",
    "collect_images",
    "convert_candidate",
    "decode_candidate",
    "default_output_folder",
    "encode_jpeg",
    "main",
    "parse_args",
    "parse_width",
    "resample",
    "resolve_output_target",
    "run_batch",
    "run_pipeline",
    "select_decode_strategy",
]
