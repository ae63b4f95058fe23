"""Script entry point for the HDR to JPEG converter.

Allows ``python hdr_jpeg_converter.py <path> [compressionRatio] [width]
[outputDir]`` from a source checkout. The implementation lives in the package
under ``hdr_jpeg_converter.cli``.
"""
from __future__ import annotations

from hdr_jpeg_converter.cli import main


if __name__ == "__main__":  # pragma: no cover - exercised via integration test
    raise SystemExit(main())
