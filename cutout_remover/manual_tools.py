import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .color_math import color_distance_map
from .errors import InvalidInputError
from .image_buffer import ImageBuffer, check_mask

logger = logging.getLogger(__name__)

TOOLS = ("brush", "eraser")

# opacity = 1 - softness / 100 * SOFTNESS_FALLOFF
SOFTNESS_FALLOFF = 0.8

# Seed mask value above which the wand clears instead of selecting
WAND_TOGGLE_LEVEL = 0.5


@dataclass
class BrushStroke:
    tool: str
    radius: int
    softness: float = 0.0
    points: List[Tuple[int, int]] = field(default_factory=list)

    def __post_init__(self):
        if self.tool not in TOOLS:
            raise InvalidInputError(f"Unknown tool {self.tool!r}, expected one of {TOOLS}")
        if isinstance(self.radius, bool) or not isinstance(self.radius, (int, np.integer)) or self.radius <= 0:
            raise InvalidInputError(f"Brush radius must be a positive integer, got {self.radius!r}")
        if not 0 <= self.softness <= 100:
            raise InvalidInputError(f"Brush softness must be between 0 and 100, got {self.softness}")

    @property
    def opacity(self) -> float:
        return 1.0 - self.softness / 100.0 * SOFTNESS_FALLOFF


def rasterize_stroke(shape: Tuple[int, int], stroke: BrushStroke) -> np.ndarray:
    """
    Coverage map of a stroke: filled circles at every point joined by
    round-capped segments of the same width. Parts outside the image are
    clipped.
    """
    coverage = np.zeros(shape, dtype=np.uint8)
    points = [(int(x), int(y)) for x, y in stroke.points]
    for point in points:
        cv2.circle(coverage, point, stroke.radius, 255, thickness=-1)
    for start, end in zip(points, points[1:]):
        cv2.line(coverage, start, end, 255, thickness=2 * stroke.radius + 1)
    return coverage.astype(np.float32) / 255.0


def merge_stroke(mask: np.ndarray, coverage: np.ndarray, tool: str, opacity: float) -> np.ndarray:
    """Blend a stroke's coverage into the mask; brush raises it, eraser lowers it."""
    amount = coverage * opacity
    if tool == "brush":
        merged = mask + (1.0 - mask) * amount
    else:
        merged = mask - mask * amount
    return np.clip(merged, 0.0, 1.0).astype(np.float32)


def apply_brush_stroke(mask: np.ndarray, stroke: BrushStroke) -> np.ndarray:
    mask = np.asarray(mask, dtype=np.float32)
    if mask.ndim != 2:
        raise InvalidInputError(f"Mask must be 2D, got shape {mask.shape}")
    coverage = rasterize_stroke(mask.shape, stroke)
    return merge_stroke(mask, coverage, stroke.tool, stroke.opacity)


class StrokeOverlay:
    """
    Accumulates an in-progress stroke without touching the mask.

    Points are added while the pointer moves; ``commit`` merges the whole
    stroke into the mask when the pointer is released.
    """

    def __init__(self, shape: Tuple[int, int]):
        self.shape = shape
        self.stroke: Optional[BrushStroke] = None
        self.coverage = np.zeros(shape, dtype=np.uint8)

    @property
    def active(self) -> bool:
        return self.stroke is not None

    def begin(self, tool: str, radius: int, softness: float = 0.0):
        self.stroke = BrushStroke(tool=tool, radius=radius, softness=softness)
        self.coverage[:] = 0

    def add_point(self, x: int, y: int):
        if self.stroke is None:
            raise InvalidInputError("No stroke in progress")
        point = (int(x), int(y))
        cv2.circle(self.coverage, point, self.stroke.radius, 255, thickness=-1)
        if self.stroke.points:
            cv2.line(self.coverage, self.stroke.points[-1], point, 255,
                     thickness=2 * self.stroke.radius + 1)
        self.stroke.points.append(point)

    def preview(self) -> np.ndarray:
        return self.coverage.astype(np.float32) / 255.0

    def cancel(self):
        self.stroke = None
        self.coverage[:] = 0

    def commit(self, mask: np.ndarray) -> np.ndarray:
        if self.stroke is None:
            return mask
        if mask.shape != self.shape:
            raise InvalidInputError(f"Mask shape {mask.shape} does not match overlay shape {self.shape}")
        merged = merge_stroke(np.asarray(mask, dtype=np.float32), self.preview(),
                              self.stroke.tool, self.stroke.opacity)
        self.cancel()
        return merged


def flood_region(image: ImageBuffer, x: int, y: int, tolerance: float) -> np.ndarray:
    """
    Pixels 4-connected to (x, y) whose color is within ``tolerance`` of the
    clicked pixel's color.

    The candidate pixels are found in one pass and the seed's connected
    component is extracted with OpenCV, which visits the same pixels a
    queue-based fill would.
    """
    target = image.color_at(x, y)
    within = (color_distance_map(image.rgb, target) <= tolerance).astype(np.uint8)
    _, labels = cv2.connectedComponents(within, connectivity=4)
    return labels == labels[y, x]


def flood_fill(image: ImageBuffer, mask: np.ndarray, x: int, y: int, tolerance: float) -> np.ndarray:
    """
    Magic wand: toggle the color region under the click.

    If the clicked pixel is currently foreground the region becomes
    background, otherwise it becomes foreground. Clicks outside the image
    leave the mask unchanged.

    Args:
        image: Source image (colors are read from here, not from the mask)
        mask: Current mask
        x, y: Click position in image pixels
        tolerance: Maximum color distance from the clicked color

    Returns:
        New mask
    """
    mask = check_mask(mask, image)
    if isinstance(tolerance, bool) or not isinstance(tolerance, (int, float, np.number)) or tolerance < 0:
        raise InvalidInputError(f"Tolerance must be a non-negative number, got {tolerance!r}")
    if not image.contains(x, y):
        logger.debug("Magic wand click (%s, %s) outside image, ignoring", x, y)
        return mask.copy()

    x, y = int(x), int(y)
    region = flood_region(image, x, y, tolerance)
    value = 0.0 if mask[y, x] > WAND_TOGGLE_LEVEL else 1.0
    result = mask.copy()
    result[region] = value
    logger.debug("Magic wand set %d pixels to %.0f", int(np.count_nonzero(region)), value)
    return result
