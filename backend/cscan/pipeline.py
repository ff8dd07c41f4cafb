"""Pipeline service: run parse -> merge -> stats -> detect off the calling thread.

The service is the worker boundary of the engine.  Callers submit one of
three requests and receive a stream of coarse progress messages followed by
exactly one terminal message:

  PROCESS    files + nominal thickness  -> full parse, merge, stats, patches
  REPROCESS  merged grid + nominal      -> re-derive, stats, patches
  RECOLOR    merged grid + stats        -> visualisation buffers only

  PROGRESS {percent, message}  (zero or more)
  DONE     {grid, stats, condition, displacement_buffer, color_buffer, patches}
  ERROR    {message}

The whole pipeline runs on a single background worker thread: jobs execute
one at a time in submission order, with no parallelism inside a job and no
mid-computation cancellation.  Results follow last-write-wins by submission
sequence: a finished job becomes ``pipeline.current`` unless a
later-submitted job has already committed.  A failed job never touches
``current``, so the previous good grid stays available.

Unlike a module-level worker, every ``InspectionPipeline`` is an explicit
object (create -> submit -> receive -> close) so several can coexist, e.g.
one per test.
"""

import logging
import os
import queue
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator, Optional, Union

import numpy as np

from cscan.config import (
    Settings, COLOR_MODES,
    CONDITION_COLOR_BANDS, CONDITION_COLOR_DEFAULT, NO_DATA_COLOR,
    NORMALIZED_COLOR_BANDS, NORMALIZED_COLOR_DEFAULT, NORMALIZED_NO_DATA_COLOR,
)
from cscan.data_ingestion import parse_scan_file
from cscan.exceptions import NoDataExtracted
from cscan.grid_merge import MergedGrid, PlateScan, Placement, merge_plate, validate_nominal_thickness
from cscan.inspection_stats import InspectionStats, Condition, compute_stats, classify_condition
from cscan.logging_utils import log_step, log_failure
from cscan.patch_detection import Patch, detect_patches, validate_patch_threshold


# ── Messages ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScanFile:
    """An uploaded scan: display name plus a path, bytes or binary stream."""
    name: str
    content: object


@dataclass(frozen=True)
class ProcessRequest:
    files: list[ScanFile]
    nominal_thickness: Optional[float] = None
    color_mode: str = "mm"
    placements: list[Placement] = field(default_factory=list)
    patch_threshold: Optional[float] = None
    kind: str = "PROCESS"


@dataclass(frozen=True)
class ReprocessRequest:
    grid: MergedGrid
    nominal_thickness: float
    color_mode: str = "mm"
    patch_threshold: Optional[float] = None
    kind: str = "REPROCESS"


@dataclass(frozen=True)
class RecolorRequest:
    grid: MergedGrid
    nominal_thickness: float
    stats: Optional[InspectionStats] = None
    color_mode: str = "mm"
    kind: str = "RECOLOR"


PipelineRequest = Union[ProcessRequest, ReprocessRequest, RecolorRequest]


@dataclass(frozen=True)
class ProgressMessage:
    percent: int
    message: str
    type: str = "PROGRESS"


@dataclass(frozen=True)
class DoneMessage:
    grid: MergedGrid
    stats: InspectionStats
    condition: Condition
    displacement_buffer: np.ndarray
    color_buffer: np.ndarray
    patches: Optional[list[Patch]] = None
    patch_threshold: Optional[float] = None
    color_mode: str = "mm"
    type: str = "DONE"


@dataclass(frozen=True)
class ErrorMessage:
    message: str
    type: str = "ERROR"


PipelineMessage = Union[ProgressMessage, DoneMessage, ErrorMessage]
Emit = Callable[[int, str], None]


# ── Visualisation buffers ─────────────────────────────────────────────────────

def build_display_buffers(grid: MergedGrid, color_mode: str = "mm") -> tuple[np.ndarray, np.ndarray]:
    """Displacement (float32, w*h) and RGB colour (uint8, w*h*3) buffers.

    Displacement is the effective thickness, or nominal where there is no
    reading so that missing cells render flat.  Colour mode "mm" uses the
    condition bands; "%" uses the normalised percentage bands.
    """
    if color_mode not in COLOR_MODES:
        raise ValueError(f"Colour mode must be one of {COLOR_MODES}, got {color_mode!r}")

    measured = grid.measured_mask
    displacement = np.where(measured, grid.effective, grid.nominal_thickness)
    displacement = displacement.astype(np.float32).ravel()

    if color_mode == "mm":
        bands, default, no_data = CONDITION_COLOR_BANDS, CONDITION_COLOR_DEFAULT, NO_DATA_COLOR
        inclusive = False
    else:
        bands, default, no_data = NORMALIZED_COLOR_BANDS, NORMALIZED_COLOR_DEFAULT, NORMALIZED_NO_DATA_COLOR
        inclusive = True

    palette = np.array([c for _, c in bands] + [default, no_data], dtype=np.uint8)
    index = np.full(grid.shape, len(bands), dtype=np.intp)
    pct = np.where(measured, grid.percentage, np.inf)
    # Walk the bands from the top so the lowest matching band wins.
    for k in range(len(bands) - 1, -1, -1):
        bound = bands[k][0]
        hit = pct <= bound if inclusive else pct < bound
        index[hit] = k
    index[~measured] = len(bands) + 1

    color = palette[index].reshape(-1)
    return displacement, color


# ── Request execution ─────────────────────────────────────────────────────────

def run_request(request: PipelineRequest, emit: Emit,
                settings: Optional[Settings] = None) -> DoneMessage:
    """Execute one request synchronously; raises on any failure."""
    settings = settings or Settings()

    if request.kind == "PROCESS":
        return _run_process(request, emit, settings)
    if request.kind == "REPROCESS":
        return _run_reprocess(request, emit, settings)
    if request.kind == "RECOLOR":
        return _run_recolor(request, emit)
    raise ValueError(f"Unknown request kind {request.kind!r}")


def _run_process(request: ProcessRequest, emit: Emit, settings: Settings) -> DoneMessage:
    if not request.files:
        raise NoDataExtracted("No scan files were supplied.")
    if request.color_mode not in COLOR_MODES:
        raise ValueError(f"Colour mode must be one of {COLOR_MODES}, got {request.color_mode!r}")
    if request.nominal_thickness is not None:
        validate_nominal_thickness(request.nominal_thickness)
    if request.patch_threshold is not None:
        validate_patch_threshold(request.patch_threshold)

    emit(10, "Parsing files...")
    grid = None
    for i, scan_file in enumerate(request.files):
        parsed = parse_scan_file(scan_file.content, header_scan_rows=settings.header_scan_rows)
        plate = PlateScan.from_parsed(parsed, scan_file.name, request.nominal_thickness)
        placement = None
        if i > 0:
            placements = request.placements
            placement = placements[i - 1] if i - 1 < len(placements) else Placement()
        grid = merge_plate(grid, plate, placement)
        emit(10 + int(40 * (i + 1) / len(request.files)), f"Merged {scan_file.name}")

    return _finish(grid, request.color_mode, request.patch_threshold, emit, settings)


def _run_reprocess(request: ReprocessRequest, emit: Emit, settings: Settings) -> DoneMessage:
    emit(20, "Re-deriving grid against nominal thickness...")
    grid = request.grid.with_nominal(validate_nominal_thickness(request.nominal_thickness))
    return _finish(grid, request.color_mode, request.patch_threshold, emit, settings)


def _run_recolor(request: RecolorRequest, emit: Emit) -> DoneMessage:
    grid = request.grid
    nominal = validate_nominal_thickness(request.nominal_thickness)
    if nominal != grid.nominal_thickness:
        grid = grid.with_nominal(nominal)
    stats = request.stats
    if stats is None or stats.nominal_thickness != nominal:
        stats, condition = compute_stats(grid)
    elif stats.worst_location is None:
        condition = Condition.NOT_APPLICABLE
    else:
        condition = classify_condition(stats.min_percentage)

    emit(50, "Recoloring...")
    displacement, color = build_display_buffers(grid, request.color_mode)
    emit(95, "Finalizing...")
    return DoneMessage(grid, stats, condition, displacement, color, color_mode=request.color_mode)


def _finish(grid: MergedGrid, color_mode: str, patch_threshold: Optional[float],
            emit: Emit, settings: Settings) -> DoneMessage:
    threshold = validate_patch_threshold(
        settings.patch_threshold if patch_threshold is None else patch_threshold
    )
    emit(60, "Calculating stats...")
    stats, condition = compute_stats(grid)

    emit(75, "Detecting patches...")
    patches = detect_patches(grid, threshold)

    emit(90, "Building display buffers...")
    displacement, color = build_display_buffers(grid, color_mode)
    emit(95, "Finalizing...")
    return DoneMessage(grid, stats, condition, displacement, color,
                       patches=patches, patch_threshold=threshold, color_mode=color_mode)


# ── Service ───────────────────────────────────────────────────────────────────

class PipelineJob:
    """Handle on one submitted request."""

    def __init__(self, seq: int, request: PipelineRequest):
        self.seq = seq
        self.request = request
        self.terminal: Optional[PipelineMessage] = None
        self.progress = {"status": "queued", "percent": 0, "message": "Waiting for worker..."}
        self._queue: "queue.Queue[PipelineMessage]" = queue.Queue()
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _post(self, msg: PipelineMessage) -> None:
        if isinstance(msg, ProgressMessage):
            self.progress.update({"status": "running", "percent": msg.percent,
                                  "message": msg.message})
        elif isinstance(msg, DoneMessage):
            self.progress.update({"status": "completed", "percent": 100, "message": "Done"})
        else:
            self.progress.update({"status": "error", "message": msg.message})
        self._queue.put(msg)
        if not isinstance(msg, ProgressMessage):
            self.terminal = msg
            self._done.set()

    def messages(self, timeout: Optional[float] = None) -> Iterator[PipelineMessage]:
        """Yield progress messages, ending with the terminal DONE / ERROR."""
        while True:
            msg = self._queue.get(timeout=timeout)
            yield msg
            if not isinstance(msg, ProgressMessage):
                return

    def result(self, timeout: Optional[float] = None) -> PipelineMessage:
        """Block until the terminal message is available."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"Pipeline job {self.seq} did not finish within {timeout}s")
        return self.terminal

    def join(self, timeout: Optional[float] = None) -> None:
        self._done.wait(timeout)


class InspectionPipeline:
    """Background pipeline service with last-write-wins result commit.

    One daemon worker thread takes jobs from a FIFO queue, so requests run
    one at a time in submission order.  The service only keeps a reference
    to the most recent job; earlier handles live as long as their callers
    hold them.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 logger: Optional[logging.Logger] = None):
        self.settings = settings or Settings()
        self.logger = logger or logging.getLogger(__name__)
        self.current: Optional[DoneMessage] = None
        self._lock = threading.Lock()
        self._seq = 0
        self._committed_seq = 0
        self._latest: Optional[PipelineJob] = None
        self._closed = False
        self._pending: "queue.Queue[Optional[PipelineJob]]" = queue.Queue()
        self._worker = threading.Thread(target=self._work, daemon=True,
                                        name="cscan-pipeline-worker")
        self._worker.start()

    def submit(self, request: PipelineRequest) -> PipelineJob:
        """Queue ``request`` for the worker and return its job handle."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Pipeline has been closed")
            self._seq += 1
            job = PipelineJob(self._seq, request)
            self._latest = job
            self._pending.put(job)
        return job

    @property
    def latest_job(self) -> Optional[PipelineJob]:
        with self._lock:
            return self._latest

    def _work(self) -> None:
        while True:
            job = self._pending.get()
            if job is None:
                return
            self._run(job)
            # Release the finished job before blocking on the next one.
            del job

    def _run(self, job: PipelineJob) -> None:
        def emit(percent: int, message: str) -> None:
            log_step(self.logger, percent, message)
            job._post(ProgressMessage(percent, message))

        self.logger.info("Job %d: %s started", job.seq, job.request.kind)
        try:
            done = run_request(job.request, emit, self.settings)
        except Exception as e:
            log_failure(self.logger, f"job {job.seq}: {e}")
            job._post(ErrorMessage(str(e) or e.__class__.__name__))
            return

        job._post(self._commit(job, done))

    def _commit(self, job: PipelineJob, done: DoneMessage) -> DoneMessage:
        with self._lock:
            if job.seq < self._committed_seq:
                self.logger.info("Job %d superseded by job %d; result not committed",
                                 job.seq, self._committed_seq)
                return done
            if done.patches is None and self.current is not None:
                # RECOLOR leaves patches as they were.
                done = replace(done, patches=self.current.patches,
                               patch_threshold=self.current.patch_threshold)
            self.current = done
            self._committed_seq = job.seq
            return done

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting requests, drain the queue and stop the worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending.put(None)
        self._worker.join(timeout)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def scan_files_from_paths(paths: list) -> list[ScanFile]:
    """Wrap file paths as ScanFile entries named by their base name."""
    return [ScanFile(os.path.basename(os.fspath(p)), p) for p in paths]
