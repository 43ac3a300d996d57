import logging
from typing import Optional, Tuple

import numpy as np

from .color_math import color_distance_map, complement_color, k_means_clustering
from .errors import InvalidInputError
from .image_buffer import Color, ImageBuffer

logger = logging.getLogger(__name__)

# Border band: at least this many pixels, otherwise a fraction of the short side
MIN_BORDER_WIDTH = 2
BORDER_FRACTION = 0.01

BACKGROUND_CLUSTERS = 3
FOREGROUND_CLUSTERS = 2

# Centered foreground sampling square, as a fraction of the short side
CENTER_FRACTION = 0.2
# Center samples this close to the background color are not foreground
FOREGROUND_EXCLUSION_DISTANCE = 50


def border_width(image: ImageBuffer) -> int:
    short_side = min(image.width, image.height)
    return max(MIN_BORDER_WIDTH, int(short_side * BORDER_FRACTION))


def border_band_mask(shape: Tuple[int, int], width: int) -> np.ndarray:
    """Boolean mask that is True within ``width`` pixels of the image edge."""
    h, w = shape
    band = np.zeros((h, w), dtype=bool)
    band[:width, :] = True
    band[-width:, :] = True
    band[:, :width] = True
    band[:, -width:] = True
    return band


def sample_border(image: ImageBuffer, stride: int = 1) -> np.ndarray:
    """
    Collect the border band colors as an (N, 3) array.

    With a stride above 1 each side is subsampled along its own length, so
    all four sides contribute whatever the image size.
    """
    width = border_width(image)
    if stride <= 1:
        return image.rgb[border_band_mask(image.shape, width)]

    rgb = image.rgb
    h, w = image.shape
    bottom = max(width, h - width)
    right = max(width, w - width)
    sides = [
        rgb[:width, ::stride],
        rgb[bottom:, ::stride],
        rgb[width:bottom:stride, :width],
        rgb[width:bottom:stride, right:],
    ]
    return np.concatenate([side.reshape(-1, 3) for side in sides])


def sample_center(image: ImageBuffer, stride: int = 1) -> np.ndarray:
    """Colors of the centered square used for foreground estimation."""
    h, w = image.shape
    side = max(1, int(np.ceil(min(h, w) * CENTER_FRACTION)))
    top = (h - side) // 2
    left = (w - side) // 2
    region = image.rgb[top:top + side:stride, left:left + side:stride]
    return region.reshape(-1, 3)


def pick_color(image: ImageBuffer, x: int, y: int) -> Color:
    """Exact color of a clicked pixel."""
    return image.color_at(x, y)


def detect_background_color(image: ImageBuffer,
                            picked: Optional[Color] = None,
                            method: str = "cluster",
                            stride: int = 1,
                            random_state=None) -> Color:
    """
    Estimate the background color of an image.

    A user-picked color always wins. Otherwise the border band is sampled and
    reduced either to its average or to the center of the largest k-means
    cluster.

    Args:
        image: Source image
        picked: Color sampled by the user, if any
        method: "cluster" or "average"
        stride: Sampling stride over the border band
        random_state: Seed for the clustering step

    Returns:
        (r, g, b) background color
    """
    if picked is not None:
        return tuple(int(c) for c in picked[:3])

    samples = sample_border(image, stride)
    if samples.size == 0:
        samples = image.rgb.reshape(-1, 3)

    if method == "average":
        mean = samples.reshape(-1, 3).mean(axis=0)
        return tuple(int(round(v)) for v in mean)
    if method != "cluster":
        raise InvalidInputError(f"Unknown background detection method {method!r}")

    clusters = k_means_clustering(samples, BACKGROUND_CLUSTERS, random_state=random_state)
    color = clusters.largest()
    logger.debug("Detected background color %s from %d border samples", color, len(samples))
    return color


def detect_foreground_color(image: ImageBuffer,
                            background: Color,
                            stride: int = 1,
                            random_state=None) -> Color:
    """
    Estimate the dominant subject color from the image center.

    Center samples close to the background color are discarded; when none are
    left the complement of the background is returned.
    """
    samples = sample_center(image, stride)
    distances = color_distance_map(samples, background)
    samples = samples[distances > FOREGROUND_EXCLUSION_DISTANCE]

    if samples.shape[0] == 0:
        logger.debug("No foreground samples in image center, using complement of %s", background)
        return complement_color(background)

    clusters = k_means_clustering(samples, FOREGROUND_CLUSTERS, random_state=random_state)
    return clusters.largest()
