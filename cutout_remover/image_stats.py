from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .image_buffer import Color, ImageBuffer

# Manhattan gradient above which an interior pixel counts as an edge pixel
EDGE_PIXEL_GRADIENT = 100


@dataclass(frozen=True, eq=False)
class ImageStats:
    """Read-only statistics computed once per image."""

    average_color: Color
    min_color: Color
    max_color: Color
    color_range: Color
    edge_pixels: int
    total_pixels: int
    histograms: Tuple[np.ndarray, np.ndarray, np.ndarray]

    @property
    def edge_ratio(self) -> float:
        return self.edge_pixels / self.total_pixels if self.total_pixels else 0.0

    @property
    def total_range(self) -> int:
        return int(sum(self.color_range))


def manhattan_gradients(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Horizontal and vertical Manhattan color gradients of the interior pixels.

    Each value is the sum of absolute per-channel differences between the
    left/right (or top/bottom) neighbors of a pixel. The returned arrays have
    shape (H-2, W-2) and are empty for images thinner than 3 pixels.
    """
    data = rgb.astype(np.int32)
    dx = np.abs(data[1:-1, 2:] - data[1:-1, :-2]).sum(axis=2)
    dy = np.abs(data[2:, 1:-1] - data[:-2, 1:-1]).sum(axis=2)
    return dx, dy


def compute_image_stats(image: ImageBuffer) -> ImageStats:
    """
    Gather color statistics and the edge-pixel tally for an image.

    Border pixels are skipped for the edge tally, but the ratio is taken over
    all pixels.
    """
    rgb = image.rgb
    flat = rgb.reshape(-1, 3)
    total = flat.shape[0]

    sums = flat.sum(axis=0, dtype=np.int64)
    average = tuple(int(round(s / total)) for s in sums)
    mins = tuple(int(v) for v in flat.min(axis=0))
    maxs = tuple(int(v) for v in flat.max(axis=0))
    ranges = tuple(hi - lo for lo, hi in zip(mins, maxs))

    histograms = tuple(np.bincount(flat[:, c], minlength=256) for c in range(3))

    dx, dy = manhattan_gradients(rgb)
    edge_pixels = int(np.count_nonzero((dx > EDGE_PIXEL_GRADIENT) | (dy > EDGE_PIXEL_GRADIENT)))

    return ImageStats(
        average_color=average,
        min_color=mins,
        max_color=maxs,
        color_range=ranges,
        edge_pixels=edge_pixels,
        total_pixels=total,
        histograms=histograms,
    )
