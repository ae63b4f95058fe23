"""Core processing helpers shared between the CLI and integrations."""
from __future__ import annotations

import dataclasses
import enum
import logging
import math
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .color import ConversionContext
from .errors import CandidateError, ConversionError, EncodeError, InvalidParameter
from .formats import Candidate, classify_path
from .io_utils import DecodedImage, decode_candidate, encode_jpeg

try:  # Optional progress bar for batch runs
    from tqdm import tqdm as _tqdm  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    _tqdm = None

LOGGER = logging.getLogger("hdr_jpeg_converter")
WORKER_LOGGER = LOGGER.getChild("worker")

DEFAULT_QUALITY = 0.7
DEFAULT_OUTPUT_FOLDER_NAME = "converted"
ORIGINAL_WIDTH_KEYWORD = "original"


def _tqdm_progress(
    iterable: Iterable[object], *, total: Optional[int], description: Optional[str]
) -> Iterable[object]:
    """Wrap *iterable* with :mod:`tqdm` if available."""

    if _tqdm is None:  # pragma: no cover - defensive fallback
        return iterable
    return _tqdm(iterable, total=total, desc=description, unit="image")


_PROGRESS_WRAPPER = _tqdm_progress if _tqdm is not None else None


def _wrap_with_progress(
    iterable: Iterable,
    *,
    total: Optional[int],
    description: str,
    enabled: bool,
) -> Iterable:
    """Return an iterable wrapped with a progress helper when available."""

    if not enabled:
        return iterable

    helper = _PROGRESS_WRAPPER
    if helper is None:
        LOGGER.debug(
            "Progress helper not available; install tqdm for progress reporting."
        )
        return iterable

    try:
        return helper(iterable, total=total, description=description)
    except Exception:  # pragma: no cover - defensive fallback
        LOGGER.exception("Progress helper failed; continuing without progress display.")
        return iterable


# --------------------------------------------------------------------------
# Width specification
# --------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class OriginalWidth:
    """Keep the decoded width."""


@dataclasses.dataclass(frozen=True)
class PixelWidth:
    """Scale uniformly so the output is ``pixels`` wide."""

    pixels: int

    def __post_init__(self) -> None:
        if isinstance(self.pixels, bool) or not isinstance(self.pixels, int) or self.pixels <= 0:
            raise InvalidParameter(f"Target width must be a positive integer, got {self.pixels!r}")


Width = Union[OriginalWidth, PixelWidth]
ORIGINAL = OriginalWidth()


def parse_width(value: Union[str, int, float, Width, None]) -> Optional[Width]:
    """Parse a width specification into a :data:`Width`.

    ``None`` means no width was given. ``"original"`` (any case) keeps the
    decoded width. Numbers and numeric strings are rounded to whole pixels.

    Raises:
        InvalidParameter: For non-numeric text, non-finite numbers, or widths
            that are not positive.
    """
    if value is None or isinstance(value, (OriginalWidth, PixelWidth)):
        return value
    if isinstance(value, bool):
        raise InvalidParameter(f"Invalid width {value!r}; expected a number or '{ORIGINAL_WIDTH_KEYWORD}'")

    if isinstance(value, str):
        text = value.strip()
        if text.lower() == ORIGINAL_WIDTH_KEYWORD:
            return ORIGINAL
        try:
            number = float(text)
        except ValueError as exc:
            raise InvalidParameter(
                f"Invalid width {value!r}; expected a number or '{ORIGINAL_WIDTH_KEYWORD}'"
            ) from exc
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        raise InvalidParameter(f"Invalid width {value!r}; expected a number or '{ORIGINAL_WIDTH_KEYWORD}'")

    if not math.isfinite(number):
        raise InvalidParameter(f"Invalid width {value!r}; width must be finite")
    pixels = int(round(number))
    if pixels <= 0:
        raise InvalidParameter(f"Invalid width {value!r}; width must be a positive number of pixels")
    return PixelWidth(pixels)


# --------------------------------------------------------------------------
# Resampling
# --------------------------------------------------------------------------


def resize_bilinear(arr: np.ndarray, new_width: int, new_height: int) -> np.ndarray:
    height, width = arr.shape[:2]
    if width == new_width and height == new_height:
        return arr
    x = np.linspace(0, width - 1, new_width, dtype=np.float32)
    y = np.linspace(0, height - 1, new_height, dtype=np.float32)
    x0 = np.floor(x).astype(int)
    x1 = np.clip(x0 + 1, 0, width - 1)
    y0 = np.floor(y).astype(int)
    y1 = np.clip(y0 + 1, 0, height - 1)
    x_weight = (x - x0).astype(np.float32).reshape(1, -1, 1)
    y_weight = (y - y0).astype(np.float32).reshape(-1, 1, 1)

    Ia = arr[np.ix_(y0, x0)]
    Ib = arr[np.ix_(y0, x1)]
    Ic = arr[np.ix_(y1, x0)]
    Id = arr[np.ix_(y1, x1)]

    top = Ia * (1.0 - x_weight) + Ib * x_weight
    bottom = Ic * (1.0 - x_weight) + Id * x_weight
    return (top * (1.0 - y_weight) + bottom * y_weight).astype(np.float32)


def scaled_extent(width: int, height: int, target_width: int) -> Tuple[int, int]:
    """Extent after a uniform scale that maps *width* onto *target_width*."""

    scale = target_width / float(width)
    return target_width, max(1, int(round(height * scale)))


def resample(image: DecodedImage, width: Optional[Width]) -> DecodedImage:
    """Apply the optional uniform scale described by *width*.

    Returns *image* itself when no scaling is requested, otherwise a new
    :class:`DecodedImage` with the same profile and metadata.
    """
    if width is None:
        return image
    if isinstance(width, OriginalWidth):
        LOGGER.info("Keeping original width %s for %s", image.width, image.source)
        return image

    new_width, new_height = scaled_extent(image.width, image.height, width.pixels)
    LOGGER.debug(
        "Resizing %s from %sx%s to %sx%s",
        image.source,
        image.width,
        image.height,
        new_width,
        new_height,
    )
    pixels = resize_bilinear(image.pixels, new_width, new_height)
    return dataclasses.replace(image, pixels=np.clip(pixels, 0.0, 1.0))


# --------------------------------------------------------------------------
# Output targets
# --------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class OutputTarget:
    directory: Path
    file_name: str

    @property
    def path(self) -> Path:
        return self.directory / self.file_name


def default_output_folder(source: Path) -> Path:
    """Return the default output folder for a given input file."""

    return source.parent / DEFAULT_OUTPUT_FOLDER_NAME


def resolve_output_target(source: Path, output_directory: Optional[Path] = None) -> OutputTarget:
    """Derive where the JPEG for *source* is written.

    An explicit *output_directory* always wins over the default
    ``<parent>/converted`` folder.
    """
    directory = output_directory if output_directory is not None else default_output_folder(source)
    return OutputTarget(directory=directory, file_name=f"{source.stem}.jpg")


# --------------------------------------------------------------------------
# Orchestration
# --------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ConversionRequest:
    """Parameters driving the conversion of one file or one directory.

    Attributes:
        input_path: File or directory to convert.
        quality: Lossy compression quality in ``(0, 1]``; 1.0 is highest fidelity.
        width: Raw width specification, parsed per candidate by :func:`parse_width`.
        output_directory: Explicit output folder; defaults to ``<parent>/converted``.
    """

    input_path: Path
    quality: float = DEFAULT_QUALITY
    width: Union[str, int, float, Width, None] = None
    output_directory: Optional[Path] = None


class Stage(enum.Enum):
    PENDING = "pending"
    DECODING = "decoding"
    RESAMPLING = "resampling"
    ENCODING = "encoding"
    DONE = "done"


@dataclasses.dataclass(frozen=True)
class ConversionOutcome:
    """Terminal state of one candidate.

    ``stage`` is :attr:`Stage.DONE` on success, otherwise the stage that failed.
    """

    source: Path
    destination: Optional[Path]
    stage: Stage
    error: Optional[ConversionError] = None

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.DONE and self.error is None


class DeadlineExceeded(CandidateError):
    """Raised for candidates that never started because the run timed out."""


class Deadline:
    """Optional overall time budget for a batch run."""

    def __init__(self, timeout: Optional[float]) -> None:
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        self.timeout = timeout
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0


@dataclasses.dataclass(frozen=True)
class BatchReport:
    run_id: str
    outcomes: Tuple[ConversionOutcome, ...]

    @property
    def succeeded(self) -> List[ConversionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> List[ConversionOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def exit_code(self) -> int:
        """``1`` only when files were attempted and every one of them failed."""

        if self.failed and not self.succeeded:
            return 1
        return 0


def _is_same_file(source: Path, destination: Path) -> bool:
    if not destination.exists():
        return False
    try:
        return source.samefile(destination)
    except OSError:
        return False


def convert_candidate(
    candidate: Candidate,
    request: ConversionRequest,
    context: ConversionContext,
) -> ConversionOutcome:
    """Decode, resample and encode one candidate.

    Per-candidate errors are logged with the input path and returned as a
    failed :class:`ConversionOutcome`; they are never raised.
    """
    target = resolve_output_target(candidate.path, request.output_directory)
    stage = Stage.DECODING
    try:
        image = decode_candidate(candidate, context)
        stage = Stage.RESAMPLING
        image = resample(image, parse_width(request.width))
        stage = Stage.ENCODING
        if _is_same_file(candidate.path, target.path):
            WORKER_LOGGER.warning("Refusing to overwrite %s with its own conversion", candidate.path)
            raise EncodeError(f"Output {target.path} would replace its source file", candidate.path)
        WORKER_LOGGER.info("%s -> %s", candidate.path, target.path)
        encode_jpeg(image, target.path, request.quality, context)
    except ConversionError as exc:
        WORKER_LOGGER.error("Failed to convert %s during %s: %s", candidate.path, stage.value, exc)
        return ConversionOutcome(candidate.path, target.path, stage, exc)
    WORKER_LOGGER.info("Converted %s (%sx%s)", candidate.path, image.width, image.height)
    return ConversionOutcome(candidate.path, target.path, Stage.DONE)


def _expired_outcome(candidate: Candidate, request: ConversionRequest, deadline: Deadline) -> ConversionOutcome:
    error = DeadlineExceeded(
        f"Deadline of {deadline.timeout}s exceeded before {candidate.path} started", candidate.path
    )
    LOGGER.error("Skipping %s: %s", candidate.path, error)
    target = resolve_output_target(candidate.path, request.output_directory)
    return ConversionOutcome(candidate.path, target.path, Stage.PENDING, error)


def _crashed_outcome(candidate: Candidate, request: ConversionRequest, exc: Exception) -> ConversionOutcome:
    LOGGER.error("Unexpected failure while converting %s", candidate.path, exc_info=exc)
    target = resolve_output_target(candidate.path, request.output_directory)
    error = CandidateError(f"Unexpected failure: {exc}", candidate.path)
    return ConversionOutcome(candidate.path, target.path, Stage.PENDING, error)


def _plan(requests: Sequence[ConversionRequest]) -> List[Tuple[Candidate, ConversionRequest]]:
    jobs: List[Tuple[Candidate, ConversionRequest]] = []
    for request in requests:
        for candidate in classify_path(request.input_path):
            jobs.append((candidate, request))
    return jobs


def _run_sequential(
    jobs: List[Tuple[Candidate, ConversionRequest]],
    context: ConversionContext,
    deadline: Deadline,
    progress: bool,
) -> List[ConversionOutcome]:
    outcomes: List[ConversionOutcome] = []
    progress_iterable = _wrap_with_progress(
        jobs,
        total=len(jobs),
        description="Converting images",
        enabled=progress,
    )
    for candidate, request in progress_iterable:
        if deadline.expired():
            outcomes.append(_expired_outcome(candidate, request, deadline))
            continue
        try:
            outcomes.append(convert_candidate(candidate, request, context))
        except Exception as exc:  # pylint: disable=broad-except
            outcomes.append(_crashed_outcome(candidate, request, exc))
    return outcomes


def _run_parallel(
    jobs: List[Tuple[Candidate, ConversionRequest]],
    context: ConversionContext,
    deadline: Deadline,
    progress: bool,
    workers: int,
) -> List[ConversionOutcome]:
    outcomes: List[ConversionOutcome] = []
    progress_range = _wrap_with_progress(
        range(len(jobs)),
        total=len(jobs),
        description="Converting images",
        enabled=progress,
    )
    progress_iterator = iter(progress_range)

    def advance_progress() -> None:
        try:
            next(progress_iterator)
        except StopIteration:
            pass

    def record(future: Future, candidate: Candidate, request: ConversionRequest) -> None:
        try:
            outcomes.append(future.result())
        except Exception as exc:  # pylint: disable=broad-except
            outcomes.append(_crashed_outcome(candidate, request, exc))
        advance_progress()

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hdr-jpeg")
    futures: Dict[Future, Tuple[Candidate, ConversionRequest]] = {}
    try:
        for candidate, request in jobs:
            futures[executor.submit(convert_candidate, candidate, request, context)] = (candidate, request)

        finished = set()
        try:
            for future in as_completed(futures, timeout=deadline.remaining()):
                finished.add(future)
                record(future, *futures[future])
        except FutureTimeoutError:
            LOGGER.error("Deadline of %ss exceeded; cancelling pending conversions", deadline.timeout)
            for future, (candidate, request) in futures.items():
                if future in finished:
                    continue
                if future.cancel():
                    outcomes.append(_expired_outcome(candidate, request, deadline))
                    advance_progress()
                else:
                    # already running; let it finish and keep its result
                    record(future, candidate, request)
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
    return outcomes


def run_batch(
    requests: Union[ConversionRequest, Sequence[ConversionRequest]],
    context: ConversionContext,
    *,
    workers: int = 1,
    timeout: Optional[float] = None,
    progress: bool = True,
) -> BatchReport:
    """Convert every candidate described by *requests*.

    Candidates are processed sequentially unless *workers* is greater than one,
    in which case a bounded thread pool is used. A failure in one candidate
    never stops the others. When *timeout* elapses, candidates that have not
    started are recorded as failed at :attr:`Stage.PENDING`.

    Raises:
        PathNotFound: If any request's input path does not exist.
    """
    if isinstance(requests, ConversionRequest):
        requests = [requests]
    if workers < 1:
        raise ValueError("workers must be a positive integer")

    run_id = uuid.uuid4().hex
    deadline = Deadline(timeout)
    jobs = _plan(requests)

    LOGGER.info(
        "Starting batch run %s with %s candidate(s) using the %s working space",
        run_id,
        len(jobs),
        context.color_space.name,
    )
    if not jobs:
        LOGGER.warning("No convertible images found (run %s)", run_id)
        return BatchReport(run_id=run_id, outcomes=())

    if workers <= 1 or len(jobs) == 1:
        outcomes = _run_sequential(jobs, context, deadline, progress)
    else:
        outcomes = _run_parallel(jobs, context, deadline, progress, workers)

    report = BatchReport(run_id=run_id, outcomes=tuple(outcomes))
    LOGGER.info(
        "Finished batch run %s; converted %s image(s), %s failed",
        run_id,
        len(report.succeeded),
        len(report.failed),
    )
    return report


__all__ = [
    "BatchReport",
    "ConversionOutcome",
    "ConversionRequest",
    "Deadline",
    "DeadlineExceeded",
    "ORIGINAL",
    "OriginalWidth",
    "OutputTarget",
    "PixelWidth",
    "Stage",
    "Width",
    "convert_candidate",
    "default_output_folder",
    "parse_width",
    "resample",
    "resize_bilinear",
    "resolve_output_target",
    "run_batch",
    "scaled_extent",
]
