import logging
import threading
from typing import Optional

import numpy as np

from .compositor import Compositor
from .errors import InvalidInputError, SessionBusyError
from .image_buffer import ImageBuffer, as_image, check_mask, empty_mask
from .manual_tools import BrushStroke, StrokeOverlay, apply_brush_stroke, flood_fill
from .processing_pipeline import BackgroundWorker, Job, PipelineResult, ProcessingPipeline
from .settings import Settings

logger = logging.getLogger(__name__)


class EditingSession:
    """
    Holds the current mask and settings for one image being edited.

    Automatic processing and manual edits share the mask, so manual tools
    raise SessionBusyError while a processing run is active. The session
    composite uses hard defringing, which keeps manual edits crisp.
    """

    def __init__(self, image, settings: Optional[Settings] = None,
                 worker: Optional[BackgroundWorker] = None):
        self.image: ImageBuffer = as_image(image)
        self.settings = settings if settings is not None else Settings()
        self.mask = empty_mask(self.image, 1.0)
        self.last_result: Optional[PipelineResult] = None
        self._worker = worker
        self._overlay = StrokeOverlay(self.image.shape)
        self._lock = threading.Lock()
        self._active_job: Optional[Job] = None
        self._processing = False

    @property
    def processing(self) -> bool:
        with self._lock:
            return self._processing

    def _ensure_idle(self):
        if self.processing:
            raise SessionBusyError("Manual tools are disabled while automatic processing runs")

    def _start(self):
        with self._lock:
            if self._processing:
                raise SessionBusyError("Automatic processing is already running")
            self._processing = True

    def _finish(self, result: Optional[PipelineResult]):
        with self._lock:
            if result is not None:
                self.mask = result.mask.copy()
                self.last_result = result
            self._processing = False
            self._active_job = None

    def process(self, **kwargs) -> PipelineResult:
        """Run the pipeline on the calling thread and adopt its mask."""
        self._start()
        result = None
        try:
            result = ProcessingPipeline().run(self.image, self.settings, **kwargs)
            return result
        finally:
            self._finish(result)

    def process_async(self, **kwargs) -> Job:
        """Run the pipeline on the background worker; the mask updates on completion."""
        if self._worker is None:
            self._worker = BackgroundWorker()
        self._start()
        try:
            job = self._worker.submit(self.image, self.settings, **kwargs)
        except Exception:
            self._finish(None)
            raise
        with self._lock:
            self._active_job = job

        def on_done(future):
            result = None
            if not future.cancelled() and future.exception() is None:
                result = future.result()
            self._finish(result)

        job.future.add_done_callback(on_done)
        return job

    def cancel(self):
        with self._lock:
            job = self._active_job
        if job is not None:
            job.cancel()

    def update_settings(self, **changes):
        self.settings = self.settings.replace(**changes)

    def set_mask(self, mask: np.ndarray):
        self._ensure_idle()
        self.mask = np.clip(check_mask(mask, self.image), 0.0, 1.0).copy()

    def begin_stroke(self, tool: str, radius: int, softness: float = 0.0):
        self._ensure_idle()
        self._overlay.begin(tool, radius, softness)

    def extend_stroke(self, x: int, y: int):
        self._ensure_idle()
        self._overlay.add_point(x, y)

    def end_stroke(self) -> np.ndarray:
        self._ensure_idle()
        self.mask = self._overlay.commit(self.mask)
        return self.mask

    def paint(self, stroke: BrushStroke) -> np.ndarray:
        """Apply a complete stroke in one call."""
        self._ensure_idle()
        self.mask = apply_brush_stroke(self.mask, stroke)
        return self.mask

    def magic_wand(self, x: int, y: int, tolerance: float) -> np.ndarray:
        self._ensure_idle()
        self.mask = flood_fill(self.image, self.mask, x, y, tolerance)
        return self.mask

    def render(self) -> np.ndarray:
        """Composite the current mask with the session settings."""
        if self.mask.shape != self.image.shape:
            raise InvalidInputError("Session mask no longer matches the image")
        return Compositor(self.settings, hard_defringe=True).render(self.image, self.mask)
