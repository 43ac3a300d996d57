import logging
from collections import deque
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .background_detector import border_band_mask, border_width, detect_foreground_color
from .color_math import MAX_WEIGHTED_DISTANCE, color_distance_map
from .errors import InvalidInputError
from .image_buffer import Color, ImageBuffer, shift_array
from .image_stats import ImageStats
from .settings import Settings

logger = logging.getLogger(__name__)

# Adaptive strategy selection
EDGE_RATIO_THRESHOLD = 0.1        # busier than this -> edge based
COLOR_RANGE_THRESHOLD = 300       # wider total channel range -> color based (wins over edge)

# Color based classification: threshold = base - sensitivity * scale
COLOR_THRESHOLD_BASE = 0.3
COLOR_THRESHOLD_SCALE = 0.2

# Blended probability classification
BLENDED_THRESHOLD_BASE = 0.5
BLENDED_THRESHOLD_SCALE = 0.3
BLENDED_EDGE_WEIGHT = 0.5

# Edge based region growing
EDGE_NORMALIZER = 765.0           # 3 channels * 255
EDGE_SEED_THRESHOLD = 0.2
EDGE_GROW_DISTANCE = 30
EDGE_BIAS_DIVISOR = 200.0

# Trimap matting
TRIMAP_UNKNOWN = 0.5
TRIMAP_SNAP_DISTANCE = 20
TRIMAP_VOTE_RADIUS = 2            # 5x5 window
TRIMAP_ITERATIONS = 3
TRIMAP_COLOR_SCALE = 30.0
TRIMAP_SIGMOID_SLOPE = 12.0

# Brightness quick mode (levels 1-10 like the editor sliders)
BRIGHTNESS_MID = 127
BRIGHTNESS_LEVEL_STEP = 10

NEIGHBORS_8 = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))


def edge_strength_map(rgb: np.ndarray) -> np.ndarray:
    """
    Normalized edge value per pixel.

    Sums the Manhattan RGB difference between the left/right neighbors and
    between the top/bottom neighbors (sampling clamps at the image border),
    divided by 765 and capped at 1.
    """
    data = np.pad(rgb.astype(np.int32), ((1, 1), (1, 1), (0, 0)), mode="edge")
    dx = np.abs(data[1:-1, 2:] - data[1:-1, :-2]).sum(axis=2)
    dy = np.abs(data[2:, 1:-1] - data[:-2, 1:-1]).sum(axis=2)
    return np.minimum(1.0, (dx + dy) / EDGE_NORMALIZER).astype(np.float32)


def choose_strategy(stats: ImageStats) -> str:
    """
    Pick the concrete algorithm for adaptive mode.

    Edge ratio is checked first, then a wide color range overrides it.
    Anything else uses the blended probability classifier.
    """
    strategy = "blended"
    if stats.edge_ratio > EDGE_RATIO_THRESHOLD:
        strategy = "edge"
    if stats.total_range > COLOR_RANGE_THRESHOLD:
        strategy = "color"
    return strategy


def level_from_percent(value: float) -> float:
    """Map a 0-100 slider to the 1-10 scale of the quick mode."""
    return 1.0 + value * 9.0 / 100.0


def color_key_mask(image: ImageBuffer, color: Color, tolerance: int) -> np.ndarray:
    """
    Click-to-pick color key.

    A pixel is background when every channel is within ``tolerance`` of the
    picked color.
    """
    if tolerance < 0:
        raise InvalidInputError(f"Tolerance must be non-negative, got {tolerance}")
    diff = np.abs(image.rgb.astype(np.int32) - np.asarray(color[:3], dtype=np.int32))
    background = np.all(diff <= tolerance, axis=2)
    return np.where(background, 0.0, 1.0).astype(np.float32)


def _neighbor_similarity(rgb: np.ndarray, max_distance: float) -> Dict[Tuple[int, int], np.ndarray]:
    """For each 8-neighbor offset, True where that neighbor exists and is similar."""
    data = rgb.astype(np.float32)
    h, w = data.shape[:2]
    padded = np.pad(data, ((1, 1), (1, 1), (0, 0)), mode="edge")
    inside = np.pad(np.ones((h, w), dtype=bool), 1, constant_values=False)
    limit = float(max_distance) ** 2

    similarity = {}
    for dy, dx in NEIGHBORS_8:
        neighbor = padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
        exists = inside[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
        diff = neighbor - data
        similarity[(dy, dx)] = exists & (np.sum(diff * diff, axis=2) < limit)
    return similarity


class SegmentationEngine:
    """
    Produces the initial foreground mask (1 = foreground, 0 = background).

    Nothing is kept between calls: every ``segment`` call is a function of
    the image, the settings, the image statistics and the reference colors.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def resolve_algorithm(self, stats: ImageStats) -> str:
        if self.settings.algorithm == "adaptive":
            return choose_strategy(stats)
        return self.settings.algorithm

    def segment(self, image: ImageBuffer, stats: ImageStats, background: Color,
                foreground: Optional[Color] = None, algorithm: Optional[str] = None) -> np.ndarray:
        """
        Run one segmentation algorithm.

        Args:
            image: Source image
            stats: Statistics of ``image``
            background: Reference background color
            foreground: Reference foreground color (trimap only, detected
                from the image center when omitted)
            algorithm: Concrete algorithm; resolved from the settings if None

        Returns:
            float32 mask with the image's dimensions, values in [0, 1]
        """
        algorithm = algorithm or self.resolve_algorithm(stats)
        logger.debug("Segmenting %dx%d image with %s algorithm", image.width, image.height, algorithm)

        if algorithm == "color":
            mask = self._color_based(image, background)
        elif algorithm == "blended":
            mask = self._blended(image, background)
        elif algorithm == "edge":
            mask = self._edge_based(image)
        elif algorithm == "trimap":
            if foreground is None:
                foreground = detect_foreground_color(
                    image, background, stride=self.settings.sample_stride, random_state=self.settings.seed
                )
            mask = self._trimap_matting(image, background, foreground)
        elif algorithm == "brightness":
            mask = self._brightness_based(image)
        else:
            raise InvalidInputError(f"Unknown segmentation algorithm {algorithm!r}")

        return np.clip(mask, 0.0, 1.0).astype(np.float32)

    def _color_based(self, image: ImageBuffer, background: Color) -> np.ndarray:
        """Threshold the perceptual distance to the background color."""
        distance = color_distance_map(image.rgb, background, weighted=True) / MAX_WEIGHTED_DISTANCE
        distance += self.settings.bias_shift
        threshold = COLOR_THRESHOLD_BASE - self.settings.sensitivity_norm * COLOR_THRESHOLD_SCALE
        return np.where(distance < threshold, 0.0, 1.0).astype(np.float32)

    def _blended(self, image: ImageBuffer, background: Color) -> np.ndarray:
        """Background probability from color similarity, lowered near edges."""
        distance = color_distance_map(image.rgb, background, weighted=True) / MAX_WEIGHTED_DISTANCE
        probability = 1.0 - np.minimum(distance, 1.0)
        if self.settings.edge_detection:
            probability -= edge_strength_map(image.rgb) * BLENDED_EDGE_WEIGHT
        probability -= self.settings.bias_shift
        threshold = BLENDED_THRESHOLD_BASE - self.settings.sensitivity_norm * BLENDED_THRESHOLD_SCALE
        return np.where(probability > threshold, 0.0, 1.0).astype(np.float32)

    def _edge_based(self, image: ImageBuffer) -> np.ndarray:
        """
        Seed foreground on strong edges and grow it over similar colors.

        Growth is breadth first over 8-connected neighbors whose color is
        within EDGE_GROW_DISTANCE of the pixel they are reached from.
        """
        rgb = image.rgb
        h, w = image.shape
        edges = edge_strength_map(rgb)
        foreground = edges > EDGE_SEED_THRESHOLD

        similarity = _neighbor_similarity(rgb, EDGE_GROW_DISTANCE)
        queue = deque(zip(*np.nonzero(foreground)))
        while queue:
            y, x = queue.popleft()
            for (dy, dx), similar in similarity.items():
                if not similar[y, x]:
                    continue
                ny, nx = y + dy, x + dx
                if not foreground[ny, nx]:
                    foreground[ny, nx] = True
                    queue.append((ny, nx))

        mask = foreground.astype(np.float32)
        mask += (self.settings.foreground_bias - 50) / EDGE_BIAS_DIVISOR
        return np.clip(mask, 0.0, 1.0)

    def _trimap_matting(self, image: ImageBuffer, background: Color, foreground: Color) -> np.ndarray:
        rgb = image.rgb.astype(np.float32)
        trimap = self._build_trimap(image, background, foreground)
        unknown = trimap == TRIMAP_UNKNOWN
        logger.debug("Trimap has %d unknown cells", int(np.count_nonzero(unknown)))
        if not unknown.any():
            return trimap
        return self._solve_alpha(rgb, trimap, unknown)

    def _build_trimap(self, image: ImageBuffer, background: Color, foreground: Color) -> np.ndarray:
        """Border band is background, the rest is unknown until snapped to a reference color."""
        trimap = np.full(image.shape, TRIMAP_UNKNOWN, dtype=np.float32)
        trimap[border_band_mask(image.shape, border_width(image))] = 0.0

        unknown = trimap == TRIMAP_UNKNOWN
        to_foreground_distance = color_distance_map(image.rgb, foreground)
        to_background_distance = color_distance_map(image.rgb, background)

        snap_foreground = (unknown & (to_foreground_distance < TRIMAP_SNAP_DISTANCE)
                           & (to_foreground_distance <= to_background_distance))
        snap_background = unknown & (to_background_distance < TRIMAP_SNAP_DISTANCE) & ~snap_foreground
        trimap[snap_foreground] = 1.0
        trimap[snap_background] = 0.0
        return trimap

    def _solve_alpha(self, rgb: np.ndarray, trimap: np.ndarray, unknown: np.ndarray) -> np.ndarray:
        """
        Simplified closed-form matting.

        Unknown cells start from a color-weighted vote of the definite cells
        in a 5x5 window, are relaxed by a 3x3 color-weighted average and
        finally pushed apart with a steep sigmoid. Definite cells are copied.
        """
        alpha = trimap.copy()
        definite = ~unknown

        radius = TRIMAP_VOTE_RADIUS
        votes = np.zeros_like(alpha)
        weights = np.zeros_like(alpha)
        for dy in range(-radius, radius + 1):
            for dx in range(-radius, radius + 1):
                if dy == 0 and dx == 0:
                    continue
                neighbor_definite = shift_array(definite, dy, dx, radius, fill=False)
                neighbor_value = shift_array(trimap, dy, dx, radius)
                neighbor_color = shift_array(rgb, dy, dx, radius)
                weight = self._color_weight(rgb, neighbor_color) * neighbor_definite
                votes += weight * neighbor_value
                weights += weight

        has_votes = weights > 0
        initial = np.full_like(alpha, TRIMAP_UNKNOWN)
        initial[has_votes] = votes[has_votes] / weights[has_votes]
        alpha[unknown] = initial[unknown]

        # The color weights do not change between iterations
        kernel = []
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                inside = shift_array(np.ones(alpha.shape, dtype=bool), dy, dx, 1, fill=False)
                kernel.append((dy, dx, self._color_weight(rgb, shift_array(rgb, dy, dx, 1)) * inside))

        for _ in range(TRIMAP_ITERATIONS):
            total = np.zeros_like(alpha)
            norm = np.zeros_like(alpha)
            for dy, dx, weight in kernel:
                total += weight * shift_array(alpha, dy, dx, 1)
                norm += weight
            alpha[unknown] = total[unknown] / norm[unknown]

        sharpened = 1.0 / (1.0 + np.exp(-TRIMAP_SIGMOID_SLOPE * (alpha - 0.5)))
        alpha[unknown] = sharpened[unknown]
        return alpha

    @staticmethod
    def _color_weight(rgb: np.ndarray, other: np.ndarray) -> np.ndarray:
        diff = rgb - other
        distance = np.sqrt(np.sum(diff * diff, axis=2))
        return np.exp(-distance / TRIMAP_COLOR_SCALE).astype(np.float32)

    def _brightness_based(self, image: ImageBuffer) -> np.ndarray:
        """
        Quick mode: opacity falls off with distance from a brightness boundary.

        The boundary moves with sensitivity and the result is box-averaged
        over a radius that grows with smoothing.
        """
        level = level_from_percent(self.settings.sensitivity)
        boundary = BRIGHTNESS_MID + (level - 5) * BRIGHTNESS_LEVEL_STEP
        brightness = image.rgb.astype(np.float32).mean(axis=2)
        raw = np.clip(255.0 - np.abs(brightness - boundary) * (11 - level) / 3.0, 0, 255)
        raw = np.floor(raw).astype(np.float32)

        radius = max(1, int(level_from_percent(self.settings.smoothing) // 2))
        size = (2 * radius + 1, 2 * radius + 1)
        # Average over in-bounds pixels only
        sums = cv2.boxFilter(raw, -1, size, normalize=False, borderType=cv2.BORDER_CONSTANT)
        counts = cv2.boxFilter(np.ones_like(raw), -1, size, normalize=False, borderType=cv2.BORDER_CONSTANT)
        smoothed = np.round(sums / counts)
        return (smoothed / 255.0).astype(np.float32)
