from .errors import CutoutError, InvalidInputError, ProcessingCancelled, ProcessingError, SessionBusyError
from .image_buffer import ImageBuffer
from .settings import Settings
from .color_math import color_distance, hex_to_rgb, k_means_clustering, rgb_to_hex
from .image_stats import ImageStats, compute_image_stats
from .background_detector import detect_background_color, detect_foreground_color
from .segmentation_engine import SegmentationEngine, color_key_mask
from .mask_refiner import MaskRefiner
from .compositor import Compositor, composite, defringe_hard, defringe_soft
from .manual_tools import BrushStroke, StrokeOverlay, apply_brush_stroke, flood_fill
from .processing_pipeline import (
    BackgroundWorker,
    CancelledMessage,
    CompletedMessage,
    ErrorMessage,
    PipelineResult,
    ProcessingPipeline,
    ProgressMessage,
)
from .session import EditingSession
from .image_io import decode_image, encode_image

__version__ = "1.0.0"

__all__ = [
    'CutoutError', 'InvalidInputError', 'ProcessingCancelled', 'ProcessingError', 'SessionBusyError',
    'ImageBuffer', 'Settings',
    'color_distance', 'hex_to_rgb', 'k_means_clustering', 'rgb_to_hex',
    'ImageStats', 'compute_image_stats',
    'detect_background_color', 'detect_foreground_color',
    'SegmentationEngine', 'color_key_mask', 'MaskRefiner',
    'Compositor', 'composite', 'defringe_hard', 'defringe_soft',
    'BrushStroke', 'StrokeOverlay', 'apply_brush_stroke', 'flood_fill',
    'BackgroundWorker', 'CancelledMessage', 'CompletedMessage', 'ErrorMessage',
    'PipelineResult', 'ProcessingPipeline', 'ProgressMessage',
    'EditingSession', 'decode_image', 'encode_image',
]
