"""
Background removal pipeline and its worker.

The pipeline runs the stages in a fixed order:

    stats -> background color -> segmentation -> refinement -> composite

and reports progress at fixed milestones. ``BackgroundWorker`` runs the same
pipeline on a dedicated thread and reports through messages instead of
return values, so a UI thread never blocks on pixel work.
"""
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from .background_detector import detect_background_color, pick_color
from .color_math import parse_color
from .compositor import Compositor
from .errors import CutoutError, InvalidInputError, ProcessingCancelled, ProcessingError
from .image_buffer import Color, ImageBuffer, as_image, check_mask
from .image_stats import ImageStats, compute_image_stats
from .mask_refiner import MaskRefiner
from .segmentation_engine import SegmentationEngine
from .settings import Settings

logger = logging.getLogger(__name__)

# Progress milestones (percent)
PROGRESS_START = 0
PROGRESS_STATS = 10
PROGRESS_SEGMENTED = 30
PROGRESS_REFINED = 50
PROGRESS_COMPOSITED = 80
PROGRESS_DONE = 100

# Auto adjustment thresholds and constants
_EDGE_RATIO_BUSY = 0.1         # many edges - smooth more
_EDGE_RATIO_CLEAN = 0.02       # few edges - smooth less
_RANGE_LOW_CONTRAST = 150      # narrow color range - favour the subject
_RANGE_HIGH_CONTRAST = 500     # wide color range - tighter classification
_SMOOTHING_STEP = 10
_SENSITIVITY_STEP = 10
_BIAS_STEP = 10
_BIAS_MAX = 80

ProgressCallback = Callable[[int], None]


@dataclass(eq=False)
class PipelineResult:
    mask: np.ndarray
    rgba: np.ndarray
    stats: ImageStats
    background_color: Color
    algorithm: str
    settings: Settings
    timings: Dict[str, float] = field(default_factory=dict)


def auto_adjust_settings(stats: ImageStats, settings: Settings) -> Dict[str, float]:
    """
    Suggest settings changes from image statistics.

    Args:
        stats: Statistics of the image about to be processed
        settings: Current settings

    Returns:
        Dictionary of adjusted values (empty when nothing changes)
    """
    adjustments = {}

    if stats.edge_ratio > _EDGE_RATIO_BUSY:
        adjustments['smoothing'] = min(100, settings.smoothing + _SMOOTHING_STEP)
    elif stats.edge_ratio < _EDGE_RATIO_CLEAN:
        adjustments['smoothing'] = max(0, settings.smoothing - _SMOOTHING_STEP)

    if stats.total_range < _RANGE_LOW_CONTRAST:
        adjustments['foreground_bias'] = max(settings.foreground_bias,
                                           min(_BIAS_MAX, settings.foreground_bias + _BIAS_STEP))
        adjustments['sensitivity'] = min(100, settings.sensitivity + _SENSITIVITY_STEP)
    elif stats.total_range > _RANGE_HIGH_CONTRAST:
        adjustments['sensitivity'] = max(0, settings.sensitivity - _SENSITIVITY_STEP)

    return {k: v for k, v in adjustments.items() if v != getattr(settings, k)}


class ProcessingPipeline:
    """Synchronous background removal run with progress and cancellation."""

    def __init__(self, hard_defringe: bool = False):
        self.hard_defringe = hard_defringe

    def run(self, image, settings: Optional[Settings] = None,
            background_color=None,
            pick: Optional[Tuple[int, int]] = None,
            prior_mask: Optional[np.ndarray] = None,
            progress: Optional[ProgressCallback] = None,
            cancel_event: Optional[threading.Event] = None) -> PipelineResult:
        """
        Remove the background of one image.

        Args:
            image: ImageBuffer or gray/RGB/RGBA array
            settings: Run options, defaults when None
            background_color: User-picked background color (hex or RGB)
            pick: (x, y) pixel to sample the background color from
            prior_mask: Mask from an earlier run with manual edits; when
                given, segmentation and refinement are skipped
            progress: Called with each milestone percentage
            cancel_event: Checked between stages; when set the run stops
                with ProcessingCancelled

        Returns:
            PipelineResult with the final mask and RGBA output

        Raises:
            InvalidInputError: Bad image, settings, mask or pick
            ProcessingCancelled: The cancel event was set
            ProcessingError: A stage failed
        """
        image = as_image(image)
        settings = settings if settings is not None else Settings()
        settings.validate()
        if prior_mask is not None:
            prior_mask = np.clip(check_mask(prior_mask, image), 0.0, 1.0)
        picked = self._picked_color(image, background_color, pick)

        report = progress or (lambda percent: None)
        timings = {}
        stage = "start"

        def checkpoint(percent: int):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Processing cancelled after %s stage", stage)
                raise ProcessingCancelled(f"Processing cancelled after {stage} stage")
            report(percent)

        try:
            checkpoint(PROGRESS_START)

            stage = "stats"
            t0 = time.perf_counter()
            stats = compute_image_stats(image)
            if settings.auto_adjust:
                adjustments = auto_adjust_settings(stats, settings)
                if adjustments:
                    logger.info("Auto-adjusted settings: %s", adjustments)
                    settings = settings.replace(**adjustments)
            timings[stage] = time.perf_counter() - t0
            checkpoint(PROGRESS_STATS)

            stage = "segmentation"
            t0 = time.perf_counter()
            background = detect_background_color(
                image, picked, stride=settings.sample_stride, random_state=settings.seed
            )
            engine = SegmentationEngine(settings)
            algorithm = engine.resolve_algorithm(stats)
            if prior_mask is not None:
                algorithm = "manual"
                mask = prior_mask.copy()
            else:
                mask = engine.segment(image, stats, background, algorithm=algorithm)
            timings[stage] = time.perf_counter() - t0
            checkpoint(PROGRESS_SEGMENTED)

            stage = "refinement"
            t0 = time.perf_counter()
            if prior_mask is None:
                mask = MaskRefiner.from_settings(settings).refine(mask)
            timings[stage] = time.perf_counter() - t0
            checkpoint(PROGRESS_REFINED)

            stage = "composite"
            t0 = time.perf_counter()
            rgba = Compositor(settings, hard_defringe=self.hard_defringe).render(image, mask)
            timings[stage] = time.perf_counter() - t0
            checkpoint(PROGRESS_COMPOSITED)

            stage = "finish"
            logger.info(
                "Processed %dx%d image with %s algorithm in %.3fs",
                image.width, image.height, algorithm, sum(timings.values()),
            )
            report(PROGRESS_DONE)

        except CutoutError:
            raise
        except cv2.error as e:
            raise ProcessingError(f"OpenCV processing error during {stage}: {str(e)}", stage) from e
        except MemoryError as e:
            raise ProcessingError("Insufficient memory for processing. Try a smaller image.", stage) from e
        except Exception as e:
            raise ProcessingError(f"Background removal failed during {stage}: {str(e)}", stage) from e

        return PipelineResult(
            mask=mask,
            rgba=rgba,
            stats=stats,
            background_color=background,
            algorithm=algorithm,
            settings=settings,
            timings=timings,
        )

    @staticmethod
    def _picked_color(image: ImageBuffer, background_color, pick) -> Optional[Color]:
        if background_color is not None and pick is not None:
            raise InvalidInputError("Pass either a background color or a pick position, not both")
        if background_color is not None:
            return parse_color(background_color)
        if pick is not None:
            x, y = pick
            return pick_color(image, x, y)
        return None


@dataclass
class ProgressMessage:
    job_id: int
    percent: int


@dataclass
class CompletedMessage:
    job_id: int
    result: PipelineResult


@dataclass
class ErrorMessage:
    job_id: int
    message: str
    error: Exception


@dataclass
class CancelledMessage:
    job_id: int


@dataclass
class Job:
    job_id: int
    future: Future
    cancel_event: threading.Event

    def cancel(self):
        self.cancel_event.set()

    @property
    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> PipelineResult:
        """Wait for the run; raises the same errors as ProcessingPipeline.run."""
        return self.future.result(timeout)


class BackgroundWorker:
    """
    Runs pipeline jobs on a single dedicated thread.

    Every job reports zero or more ``ProgressMessage`` followed by exactly one
    of ``CompletedMessage``, ``ErrorMessage`` or ``CancelledMessage``. Messages
    are put on ``messages`` and passed to ``listener`` when one is given.

    Submitting a job cancels the one in flight; the new job starts once the
    old one has stopped at its next stage boundary.
    """

    def __init__(self, pipeline: Optional[ProcessingPipeline] = None,
                 listener: Optional[Callable[[object], None]] = None):
        self.pipeline = pipeline or ProcessingPipeline()
        self.listener = listener
        self.messages: "queue.Queue[object]" = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cutout-worker")
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._current: Optional[Job] = None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._current is not None and not self._current.done

    def submit(self, image, settings: Optional[Settings] = None, **kwargs) -> Job:
        """Queue a run; keyword arguments are passed to ``ProcessingPipeline.run``."""
        with self._lock:
            if self._current is not None and not self._current.done:
                logger.info("Cancelling job %d for a new request", self._current.job_id)
                self._current.cancel()
            job_id = next(self._ids)
            cancel_event = threading.Event()
            future = self._executor.submit(self._run, job_id, image, settings, cancel_event, kwargs)
            job = Job(job_id=job_id, future=future, cancel_event=cancel_event)
            self._current = job
        return job

    def _emit(self, message):
        self.messages.put(message)
        if self.listener is not None:
            try:
                self.listener(message)
            except Exception:
                logger.exception("Worker listener failed on %s", type(message).__name__)

    def _run(self, job_id, image, settings, cancel_event, kwargs) -> PipelineResult:
        def progress(percent):
            self._emit(ProgressMessage(job_id, percent))

        try:
            result = self.pipeline.run(image, settings, progress=progress,
                                       cancel_event=cancel_event, **kwargs)
        except ProcessingCancelled:
            self._emit(CancelledMessage(job_id))
            raise
        except Exception as e:
            logger.error("Job %d failed: %s", job_id, e)
            self._emit(ErrorMessage(job_id, str(e), e))
            raise
        self._emit(CompletedMessage(job_id, result))
        return result

    def shutdown(self, wait: bool = True):
        with self._lock:
            if self._current is not None and not self._current.done:
                self._current.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
