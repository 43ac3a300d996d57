#!/usr/bin/env python3
"""
Tests for image statistics, background detection and the segmentation
algorithms, using synthetic images with a known subject.
"""
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cutout_remover.background_detector import (
    border_width,
    detect_background_color,
    detect_foreground_color,
    sample_border,
)
from cutout_remover.errors import InvalidInputError
from cutout_remover.image_buffer import ImageBuffer
from cutout_remover.image_stats import ImageStats, compute_image_stats
from cutout_remover.segmentation_engine import (
    SegmentationEngine,
    choose_strategy,
    color_key_mask,
    edge_strength_map,
)
from cutout_remover.settings import Settings


def create_test_image(size=100, square=60, foreground=(255, 0, 0), background=(255, 255, 255)):
    """White canvas with a centered solid square."""
    image = np.zeros((size, size, 3), dtype=np.uint8)
    image[:, :] = background
    start = (size - square) // 2
    image[start:start + square, start:start + square] = foreground
    return ImageBuffer.from_array(image)


def square_region(size=100, square=60):
    region = np.zeros((size, size), dtype=bool)
    start = (size - square) // 2
    region[start:start + square, start:start + square] = True
    return region


def make_stats(edge_pixels=0, total_pixels=100, color_range=(0, 0, 0)):
    zeros = np.zeros(256, dtype=np.int64)
    return ImageStats(
        average_color=(0, 0, 0),
        min_color=(0, 0, 0),
        max_color=color_range,
        color_range=color_range,
        edge_pixels=edge_pixels,
        total_pixels=total_pixels,
        histograms=(zeros, zeros, zeros),
    )


def test_image_buffer_promotes_rgb_and_is_read_only():
    image = create_test_image()
    assert image.pixels.shape == (100, 100, 4)
    assert np.all(image.pixels[:, :, 3] == 255)
    with pytest.raises(ValueError):
        image.pixels[0, 0, 0] = 1


def test_image_buffer_rejects_empty_image():
    with pytest.raises(InvalidInputError):
        ImageBuffer.from_array(np.zeros((0, 10, 3), dtype=np.uint8))


def test_image_stats_of_square_image():
    stats = compute_image_stats(create_test_image())
    assert stats.total_pixels == 10000
    assert stats.min_color == (255, 0, 0)
    assert stats.max_color == (255, 255, 255)
    assert stats.color_range == (0, 255, 255)
    assert stats.total_range == 510
    # 6400 white and 3600 red pixels
    assert stats.average_color == (255, round(6400 * 255 / 10000), round(6400 * 255 / 10000))
    assert stats.histograms[0][255] == 10000
    assert stats.histograms[1][0] == 3600
    assert stats.histograms[1][255] == 6400


def test_image_stats_edge_pixels_are_interior_boundary_pixels():
    stats = compute_image_stats(create_test_image())
    # The boundary ring of the square: pixels on either side of each edge
    # whose neighbors straddle the color change
    assert stats.edge_pixels > 0
    assert stats.edge_pixels < 1000
    assert 0 < stats.edge_ratio < 0.1

    flat = compute_image_stats(ImageBuffer.from_array(np.full((20, 20, 3), 90, dtype=np.uint8)))
    assert flat.edge_pixels == 0
    assert flat.edge_ratio == 0.0


def test_border_band_width():
    assert border_width(create_test_image()) == 2
    big = ImageBuffer.from_array(np.zeros((500, 800, 3), dtype=np.uint8))
    assert border_width(big) == 5


def test_border_samples_are_background():
    samples = sample_border(create_test_image())
    assert samples.shape[1] == 3
    assert np.all(samples == 255)


def test_strided_border_samples_cover_every_side():
    for size in (100, 101, 102, 103):
        for side in ("top", "bottom", "left", "right"):
            pixels = np.full((size, size, 3), 255, dtype=np.uint8)
            if side == "top":
                pixels[:2] = 0
            elif side == "bottom":
                pixels[-2:] = 0
            elif side == "left":
                pixels[:, :2] = 0
            else:
                pixels[:, -2:] = 0
            samples = sample_border(ImageBuffer.from_array(pixels), stride=4)
            black = np.count_nonzero(np.all(samples == 0, axis=1))
            assert black > 0, (size, side)


def test_low_detail_background_uses_right_and_bottom_bands():
    pixels = np.full((100, 100, 3), 255, dtype=np.uint8)
    pixels[:, -2:] = 0
    pixels[-2:, :] = 0
    samples = sample_border(ImageBuffer.from_array(pixels), stride=4)
    black = np.count_nonzero(np.all(samples == 0, axis=1))
    # 24 rows of the right band and 25 columns of the bottom band, 2 px deep
    assert black == 98
    assert len(samples) == 2 * 50 + 2 * 48


def test_detect_background_prefers_user_pick():
    image = create_test_image()
    assert detect_background_color(image, picked=(1, 2, 3)) == (1, 2, 3)
    assert detect_background_color(image, random_state=0) == (255, 255, 255)
    assert detect_background_color(image, method="average") == (255, 255, 255)
    with pytest.raises(InvalidInputError):
        detect_background_color(image, method="median")


def test_detect_foreground_from_center():
    image = create_test_image(foreground=(20, 40, 200))
    assert detect_foreground_color(image, (255, 255, 255), random_state=0) == (20, 40, 200)


def test_detect_foreground_falls_back_to_complement():
    image = ImageBuffer.from_array(np.full((50, 50, 3), 200, dtype=np.uint8))
    assert detect_foreground_color(image, (200, 200, 200), random_state=0) == (55, 55, 55)


def test_color_segmentation_scenario():
    image = create_test_image()
    stats = compute_image_stats(image)
    background = detect_background_color(image, random_state=0)
    engine = SegmentationEngine(Settings(algorithm="color", sensitivity=50))
    mask = engine.segment(image, stats, background)

    region = square_region()
    assert mask.shape == (100, 100)
    assert mask.dtype == np.float32
    assert np.all(mask[region] == 1.0)
    assert np.all(mask[~region] == 0.0)


def test_color_segmentation_bias_shift():
    image = create_test_image(foreground=(240, 240, 240))
    stats = compute_image_stats(image)
    # Normalized weighted distance of (240,240,240) from white is ~0.059,
    # below the 0.2 threshold, so the square is background...
    neutral = SegmentationEngine(Settings(algorithm="color")).segment(image, stats, (255, 255, 255))
    assert not neutral[square_region()].any()
    # ...until the bias pushes distances past the threshold
    biased = SegmentationEngine(Settings(algorithm="color", foreground_bias=70)).segment(
        image, stats, (255, 255, 255))
    assert biased[square_region()].all()


def test_color_and_edge_segmentation_are_deterministic():
    image = create_test_image()
    stats = compute_image_stats(image)
    for algorithm in ("color", "edge"):
        engine = SegmentationEngine(Settings(algorithm=algorithm))
        first = engine.segment(image, stats, (255, 255, 255))
        second = engine.segment(image, stats, (255, 255, 255))
        assert first.tobytes() == second.tobytes()


def test_edge_strength_map():
    image = create_test_image()
    edges = edge_strength_map(image.rgb)
    assert edges.shape == (100, 100)
    assert edges.min() >= 0.0 and edges.max() <= 1.0
    assert edges[0, 0] == 0.0
    assert edges[50, 50] == 0.0
    # Left/right neighbors of (19, 50) are white and red: 510 / 765
    assert edges[50, 19] == pytest.approx(510 / 765)


def test_edge_segmentation_grows_from_edges_only():
    image = ImageBuffer.from_array(np.full((30, 30, 3), 128, dtype=np.uint8))
    stats = compute_image_stats(image)
    mask = SegmentationEngine(Settings(algorithm="edge")).segment(image, stats, (128, 128, 128))
    # No edges means no seeds
    assert not mask.any()

    image = create_test_image(size=40, square=20, foreground=(0, 0, 0))
    stats = compute_image_stats(image)
    mask = SegmentationEngine(Settings(algorithm="edge")).segment(image, stats, (255, 255, 255))
    # Seeds sit on both sides of the square's outline and spread over both
    # flat regions
    assert mask.min() >= 0.0 and mask.max() <= 1.0
    assert mask[20, 20] == 1.0
    assert mask[0, 0] == 1.0


def test_edge_segmentation_bias_is_uniform_and_clamped():
    image = ImageBuffer.from_array(np.full((10, 10, 3), 128, dtype=np.uint8))
    stats = compute_image_stats(image)
    mask = SegmentationEngine(Settings(algorithm="edge", foreground_bias=100)).segment(
        image, stats, (128, 128, 128))
    assert np.allclose(mask, 0.25)


def test_trimap_two_color_image_converges():
    image = create_test_image(foreground=(30, 60, 200))
    stats = compute_image_stats(image)
    background = detect_background_color(image, random_state=0)
    engine = SegmentationEngine(Settings(algorithm="trimap", seed=0))
    mask = engine.segment(image, stats, background)

    assert mask.shape == (100, 100)
    assert np.all((mask < 0.05) | (mask > 0.95))
    assert np.all(mask[square_region()] > 0.95)


def test_trimap_soft_edges_are_resolved():
    image = create_test_image(foreground=(30, 60, 200))
    pixels = image.rgb.copy()
    # One column of anti-aliased pixels along the left side of the square,
    # too far from either reference color to be snapped
    pixels[20:80, 19] = (50, 75, 205)
    image = ImageBuffer.from_array(pixels)
    stats = compute_image_stats(image)
    engine = SegmentationEngine(Settings(algorithm="trimap"))
    mask = engine.segment(image, stats, (255, 255, 255), foreground=(30, 60, 200))

    assert mask.min() >= 0.0 and mask.max() <= 1.0
    assert np.all(mask[square_region()] == 1.0)
    # The unknown column resembles the subject and is pulled toward it
    assert np.all(mask[20:80, 19] > 0.9)


def test_blended_segmentation_separates_square():
    image = create_test_image(foreground=(120, 120, 120), background=(200, 200, 200))
    stats = compute_image_stats(image)
    assert choose_strategy(stats) == "blended"
    # Low contrast subjects need a strong foreground bias in this mode
    mask = SegmentationEngine(Settings(foreground_bias=100)).segment(image, stats, (200, 200, 200))
    region = square_region()
    assert np.all(mask[region] == 1.0)
    assert mask[0, 0] == 0.0


def test_adaptive_strategy_choice():
    assert choose_strategy(make_stats()) == "blended"
    assert choose_strategy(make_stats(edge_pixels=20)) == "edge"
    assert choose_strategy(make_stats(color_range=(200, 200, 0))) == "color"
    # Both conditions hold: color wins
    assert choose_strategy(make_stats(edge_pixels=20, color_range=(200, 200, 0))) == "color"


def test_brightness_quick_mode():
    image = create_test_image(foreground=(127, 127, 127), background=(0, 0, 0))
    stats = compute_image_stats(image)
    mask = SegmentationEngine(Settings(algorithm="brightness", smoothing=0)).segment(
        image, stats, (0, 0, 0))
    assert mask.shape == (100, 100)
    assert mask.min() >= 0.0 and mask.max() <= 1.0
    assert mask[50, 50] > mask[5, 5]


def test_color_key_mask():
    image = create_test_image()
    mask = color_key_mask(image, (250, 250, 250), 10)
    region = square_region()
    assert np.all(mask[~region] == 0.0)
    assert np.all(mask[region] == 1.0)
    with pytest.raises(InvalidInputError):
        color_key_mask(image, (250, 250, 250), -1)


def test_unknown_algorithm_rejected():
    image = create_test_image()
    stats = compute_image_stats(image)
    with pytest.raises(InvalidInputError):
        SegmentationEngine(Settings()).segment(image, stats, (255, 255, 255), algorithm="magic")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
