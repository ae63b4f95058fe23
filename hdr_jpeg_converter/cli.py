"""Command-line interface wiring for the HDR to JPEG converter."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

try:  # pragma: no cover - optional dependency
    import yaml
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    yaml = None

from .color import ICC_POLICIES, ConversionContext, build_working_color_space
from .errors import FatalConversionError
from .pipeline import (
    DEFAULT_QUALITY,
    ORIGINAL_WIDTH_KEYWORD,
    BatchReport,
    ConversionRequest,
    run_batch,
)

LOGGER = logging.getLogger("hdr_jpeg_converter")

USAGE = "%(prog)s <path> [compressionRatio] [width] [outputDir] [options]"


_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _load_config_data(path: Path) -> Mapping[str, Any]:
    """Read a ``--config`` file: YAML for ``.yaml``/``.yml``, JSON otherwise.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If a YAML file is given but PyYAML is missing.
        ValueError: If the file does not parse to a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    text = path.read_text()
    if path.suffix.lower() in {".yaml", ".yml"}:
        if yaml is None:
            raise RuntimeError("YAML configuration files require the optional 'pyyaml' dependency")
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"Unable to parse configuration file {path}: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Unable to parse configuration file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration file {path} must contain a mapping of option names to values")
    return data


def _option_lookup(parser: argparse.ArgumentParser) -> dict[str, argparse.Action]:
    """Map every accepted config key (``dest`` or long option, dashes or underscores) to its action."""

    lookup: dict[str, argparse.Action] = {}
    for action in parser._actions:  # pylint: disable=protected-access
        if action.dest in {argparse.SUPPRESS, "help", "config"}:
            continue
        lookup[action.dest] = action
        for option_string in action.option_strings:
            lookup[option_string.lstrip("-").replace("-", "_")] = action
    return lookup


def _coerce_config_value(action: argparse.Action, value: Any, *, source: Path, key: str) -> Any:
    """Convert a config value the way the command line would have."""

    if value is None:
        return None

    if action.nargs == 0:
        # --no-hdr / --no-progress style switches
        if isinstance(value, bool):
            return value
        word = str(value).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"Invalid boolean for '{key}' in {source}: {value!r}")

    try:
        converted = action.type(value) if action.type is not None else value
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for '{key}' in {source}: {exc}") from exc

    if action.choices is not None and converted not in action.choices:
        raise ValueError(
            f"Invalid value for '{key}' in {source}: {converted!r} (choose from {sorted(action.choices)})"
        )
    return converted


def _config_defaults(parser: argparse.ArgumentParser, path: Path) -> dict[str, Any]:
    """Turn a config file into ``parser.set_defaults`` keyword arguments.

    Raises:
        ValueError: For non-string or unknown keys and unusable values.
    """
    lookup = _option_lookup(parser)
    defaults: dict[str, Any] = {}
    for raw_key, value in _load_config_data(path).items():
        if not isinstance(raw_key, str):
            raise ValueError("Configuration keys must be strings")
        key = raw_key.replace("-", "_")
        action = lookup.get(key)
        if action is None:
            raise ValueError(f"Unknown configuration option '{raw_key}' in {path}")
        defaults[action.dest] = _coerce_config_value(action, value, source=path, key=raw_key)
    return defaults


def parse_quality(text: Any) -> float:
    """Parse the compression ratio argument.

    Unparseable text falls back to the default quality with a warning; range
    checking happens per candidate when encoding.
    """
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text)
    try:
        return float(str(text).strip())
    except ValueError:
        LOGGER.warning("Could not parse compression ratio %r; using %s", text, DEFAULT_QUALITY)
        return DEFAULT_QUALITY


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert HDR and RAW photographs (AVIF, HEIC, DNG, ARW, TIFF, ...) to JPEG.",
        usage=USAGE,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional configuration file (JSON by default, YAML when 'pyyaml' is installed)",
    )
    parser.add_argument("path", type=Path, nargs="?", default=None, help="Image file or folder of images")
    parser.add_argument(
        "compression_ratio",
        nargs="?",
        default=DEFAULT_QUALITY,
        help="JPEG compression quality in (0, 1]; 1.0 gives the highest fidelity",
    )
    parser.add_argument(
        "width",
        nargs="?",
        default=ORIGINAL_WIDTH_KEYWORD,
        help=f"Target width in pixels, or '{ORIGINAL_WIDTH_KEYWORD}' to keep the source width",
    )
    parser.add_argument(
        "output_dir",
        type=Path,
        nargs="?",
        default=None,
        help="Folder for converted files. Defaults to a 'converted' folder next to each input file.",
    )
    parser.add_argument(
        "--working-space",
        default="srgb",
        help="Working color space: 'srgb' or the path to an ICC profile",
    )
    parser.add_argument(
        "--icc-policy",
        default="retain",
        choices=ICC_POLICIES,
        help="Keep each image's embedded profile, or convert pixels into the working space",
    )
    parser.add_argument(
        "--no-hdr",
        action="store_true",
        help="Decode at 8 bits per sample instead of requesting HDR expansion",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker threads converting images in parallel",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall deadline in seconds; images not started by then are reported as failed",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress reporting (useful for minimal or non-interactive environments)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    argv_list = list(argv) if argv is not None else None

    known, _ = parser.parse_known_args(argv_list)
    if known.config is not None:
        try:
            parser.set_defaults(**_config_defaults(parser, known.config))
        except (OSError, ValueError, RuntimeError) as exc:
            parser.error(str(exc))

    args = parser.parse_args(argv_list)
    if args.workers < 1:
        parser.error("--workers must be a positive integer")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be a positive number of seconds")
    args.compression_ratio = parse_quality(args.compression_ratio)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")
    return args


def build_request(args: argparse.Namespace) -> ConversionRequest:
    return ConversionRequest(
        input_path=args.path,
        quality=args.compression_ratio,
        width=args.width,
        output_directory=args.output_dir,
    )


def run_pipeline(args: argparse.Namespace) -> BatchReport:
    """Run the converter with the provided arguments.

    Raises:
        ColorSpaceSetupError: If the working color space cannot be built.
        PathNotFound: If the input path does not exist.
    """
    color_space = build_working_color_space(args.working_space)
    context = ConversionContext(
        color_space=color_space,
        expand_hdr=not args.no_hdr,
        icc_policy=args.icc_policy,
    )
    return run_batch(
        build_request(args),
        context,
        workers=args.workers,
        timeout=args.timeout,
        progress=not args.no_progress,
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    if args.path is None:
        build_parser().print_usage()
        return 0
    try:
        report = run_pipeline(args)
    except FatalConversionError as exc:
        LOGGER.error("%s", exc)
        return 1
    return report.exit_code


__all__ = [
    "build_parser",
    "build_request",
    "main",
    "parse_args",
    "parse_quality",
    "run_pipeline",
]
