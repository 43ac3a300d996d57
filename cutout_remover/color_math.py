import re
import warnings
from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from .errors import InvalidInputError
from .image_buffer import Color

# Perceptual channel weights (r, g, b) for the weighted distance
PERCEPTUAL_WEIGHTS = (3.0, 4.0, 2.0)

# Largest possible distances, used to normalize to 0-1
MAX_DISTANCE = float(np.sqrt(3 * 255.0 ** 2))    # ~441.67
MAX_WEIGHTED_DISTANCE = 765.0                    # sqrt(9 * 255^2)

# Lloyd's iterations for color clustering
KMEANS_ITERATIONS = 10

_HEX_PATTERN = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


@dataclass(frozen=True)
class ClusterResult:
    centers: Tuple[Color, ...]
    sizes: Tuple[int, ...]

    def largest(self) -> Color:
        """Center of the most populated cluster."""
        return self.centers[int(np.argmax(self.sizes))]


def color_distance(c1: Sequence[float], c2: Sequence[float], weighted: bool = False) -> float:
    """
    Euclidean distance between two RGB colors.

    Args:
        c1, c2: (r, g, b) triples
        weighted: Use the perceptual 3/4/2 channel weighting

    Returns:
        Distance in RGB units (0-441.67 unweighted, 0-765 weighted)
    """
    dr = float(c1[0]) - float(c2[0])
    dg = float(c1[1]) - float(c2[1])
    db = float(c1[2]) - float(c2[2])
    if weighted:
        wr, wg, wb = PERCEPTUAL_WEIGHTS
        return float(np.sqrt(wr * dr * dr + wg * dg * dg + wb * db * db))
    return float(np.sqrt(dr * dr + dg * dg + db * db))


def color_distance_map(pixels: np.ndarray, color: Sequence[float], weighted: bool = False) -> np.ndarray:
    """Per-pixel distance from an (..., 3) array to a single color, as float32."""
    diff = pixels[..., :3].astype(np.float32) - np.asarray(color[:3], dtype=np.float32)
    if weighted:
        diff *= diff
        weights = np.asarray(PERCEPTUAL_WEIGHTS, dtype=np.float32)
        return np.sqrt(np.sum(diff * weights, axis=-1))
    return np.sqrt(np.sum(diff * diff, axis=-1))


def k_means_clustering(points: np.ndarray, k: int, random_state=None) -> ClusterResult:
    """
    Partition color samples into k clusters with Lloyd's algorithm.

    Initial centers are drawn from random input points and the centroids are
    updated for a fixed number of iterations. Randomness comes only from
    ``random_state`` (int seed or numpy RandomState).

    Args:
        points: (N, 3) array of color samples
        k: Number of clusters
        random_state: Seed for the initial center selection

    Returns:
        ClusterResult with k centers and k sizes. Empty input yields zero
        centers of size zero; if there are fewer points than k the missing
        clusters are zero centers of size zero.
    """
    if k <= 0:
        raise InvalidInputError(f"Cluster count must be positive, got {k}")

    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n_points = points.shape[0]
    if n_points == 0:
        return ClusterResult(centers=((0, 0, 0),) * k, sizes=(0,) * k)

    n_clusters = min(k, n_points)
    kmeans = KMeans(
        n_clusters=n_clusters,
        init="random",
        n_init=1,
        max_iter=KMEANS_ITERATIONS,
        random_state=random_state,
    )

    # Flat backgrounds produce many duplicate samples, so fewer distinct
    # clusters than requested is expected here
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        labels = kmeans.fit_predict(points)

    sizes = np.bincount(labels, minlength=n_clusters)
    centers = [tuple(int(v) for v in np.clip(np.round(c), 0, 255)) for c in kmeans.cluster_centers_]

    centers.extend([(0, 0, 0)] * (k - n_clusters))
    size_list = [int(s) for s in sizes] + [0] * (k - n_clusters)
    return ClusterResult(centers=tuple(centers), sizes=tuple(size_list))


def rgb_to_hex(color: Sequence[int]) -> str:
    """Convert an (r, g, b) triple to a lowercase ``#rrggbb`` string."""
    channels = [int(v) for v in color[:3]]
    for value in channels:
        if not 0 <= value <= 255:
            raise InvalidInputError(f"Color channel out of range: {value}")
    return "#{:02x}{:02x}{:02x}".format(*channels)


def hex_to_rgb(value: str) -> Color:
    """Parse ``#rgb`` / ``#rrggbb`` (leading ``#`` optional, any case)."""
    match = _HEX_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidInputError(f"Invalid hex color: {value!r}")
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def parse_color(value: Union[str, Sequence[int]]) -> Color:
    """Accept a hex string or an (r, g, b) sequence and return a checked triple."""
    if isinstance(value, str):
        return hex_to_rgb(value)
    try:
        channels = tuple(int(v) for v in value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid color: {value!r}")
    if len(channels) not in (3, 4):
        raise InvalidInputError(f"Color must have 3 channels, got {len(channels)}")
    for channel in channels[:3]:
        if not 0 <= channel <= 255:
            raise InvalidInputError(f"Color channel out of range: {channel}")
    return channels[0], channels[1], channels[2]


def complement_color(color: Sequence[int]) -> Color:
    return 255 - int(color[0]), 255 - int(color[1]), 255 - int(color[2])
