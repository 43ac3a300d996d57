#!/usr/bin/env python3
"""
Tests for the brush, eraser and magic wand tools.
"""
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cutout_remover.errors import InvalidInputError
from cutout_remover.image_buffer import ImageBuffer
from cutout_remover.manual_tools import (
    BrushStroke,
    StrokeOverlay,
    apply_brush_stroke,
    flood_fill,
    rasterize_stroke,
)
from cutout_remover.compositor import Compositor
from cutout_remover.session import EditingSession
from cutout_remover.settings import Settings


def create_test_image(size=100, square=60):
    """White canvas with a centered red square."""
    image = np.full((size, size, 3), 255, dtype=np.uint8)
    start = (size - square) // 2
    image[start:start + square, start:start + square] = (255, 0, 0)
    return ImageBuffer.from_array(image)


def square_region(size=100, square=60):
    region = np.zeros((size, size), dtype=bool)
    start = (size - square) // 2
    region[start:start + square, start:start + square] = True
    return region


def test_magic_wand_selects_square():
    image = create_test_image()
    mask = np.zeros((100, 100), dtype=np.float32)
    result = flood_fill(image, mask, 50, 50, tolerance=10)

    region = square_region()
    assert np.count_nonzero(result == 1.0) == 3600
    assert np.all(result[region] == 1.0)
    assert np.all(result[~region] == 0.0)
    # The input mask is left alone
    assert not mask.any()


def test_magic_wand_exact_color_is_bounded():
    pixels = np.full((40, 40, 3), 30, dtype=np.uint8)
    pixels[10:20, 5:25] = (200, 100, 50)
    # Same color elsewhere but not connected
    pixels[30:35, 30:35] = (200, 100, 50)
    image = ImageBuffer.from_array(pixels)
    result = flood_fill(image, np.zeros((40, 40), dtype=np.float32), 10, 12, tolerance=0)

    expected = np.zeros((40, 40), dtype=bool)
    expected[10:20, 5:25] = True
    assert np.array_equal(result == 1.0, expected)


def test_magic_wand_is_four_connected():
    pixels = np.zeros((10, 10, 3), dtype=np.uint8)
    pixels[2, 2] = (255, 255, 255)
    pixels[3, 3] = (255, 255, 255)  # touches only diagonally
    image = ImageBuffer.from_array(pixels)
    result = flood_fill(image, np.zeros((10, 10), dtype=np.float32), 2, 2, tolerance=0)
    assert result[2, 2] == 1.0
    assert result[3, 3] == 0.0


def test_magic_wand_toggles():
    image = create_test_image()
    rng = np.random.RandomState(5)
    original = (rng.rand(100, 100) < 0.2).astype(np.float32) * 0.3
    selected = flood_fill(image, original, 50, 50, tolerance=10)
    restored = flood_fill(image, selected, 50, 50, tolerance=10)

    region = square_region()
    assert np.all(selected[region] == 1.0)
    assert np.all(restored[region] == 0.0)
    assert np.array_equal(restored[~region], original[~region])

    background = np.zeros((100, 100), dtype=np.float32)
    once = flood_fill(image, background, 50, 50, tolerance=10)
    twice = flood_fill(image, once, 50, 50, tolerance=10)
    assert np.array_equal(twice, background)


def test_magic_wand_on_foreground_clears_region():
    image = create_test_image()
    mask = np.ones((100, 100), dtype=np.float32)
    result = flood_fill(image, mask, 0, 0, tolerance=10)
    assert np.all(result[square_region()] == 1.0)
    assert np.all(result[~square_region()] == 0.0)


def test_magic_wand_outside_image_is_noop():
    image = create_test_image()
    mask = np.full((100, 100), 0.4, dtype=np.float32)
    for x, y in ((-1, 5), (5, -1), (100, 5), (5, 100)):
        result = flood_fill(image, mask, x, y, tolerance=10)
        assert np.array_equal(result, mask)


def test_magic_wand_validates_inputs():
    image = create_test_image()
    with pytest.raises(InvalidInputError):
        flood_fill(image, np.zeros((100, 100)), 5, 5, tolerance=-1)
    with pytest.raises(InvalidInputError):
        flood_fill(image, np.zeros((50, 100)), 5, 5, tolerance=10)


def test_brush_stroke_validation():
    with pytest.raises(InvalidInputError):
        BrushStroke(tool="brush", radius=0)
    with pytest.raises(InvalidInputError):
        BrushStroke(tool="pencil", radius=5)
    with pytest.raises(InvalidInputError):
        BrushStroke(tool="eraser", radius=5, softness=150)


def test_brush_opacity_from_softness():
    assert BrushStroke(tool="brush", radius=3, softness=0).opacity == pytest.approx(1.0)
    assert BrushStroke(tool="brush", radius=3, softness=50).opacity == pytest.approx(0.6)
    assert BrushStroke(tool="brush", radius=3, softness=100).opacity == pytest.approx(0.2)


def test_rasterize_stroke_covers_path():
    stroke = BrushStroke(tool="brush", radius=3, points=[(10, 10), (30, 10)])
    coverage = rasterize_stroke((40, 40), stroke)
    assert coverage[10, 10] == 1.0
    assert coverage[10, 20] == 1.0
    assert coverage[10, 30] == 1.0
    assert coverage[30, 30] == 0.0
    # Clipped at the image border without error
    edge = rasterize_stroke((40, 40), BrushStroke(tool="brush", radius=5, points=[(0, 0)]))
    assert edge[0, 0] == 1.0


def test_brush_and_eraser_blend_toward_target():
    mask = np.full((40, 40), 0.5, dtype=np.float32)
    painted = apply_brush_stroke(mask, BrushStroke(tool="brush", radius=4, softness=50, points=[(20, 20)]))
    assert painted[20, 20] == pytest.approx(0.5 + 0.5 * 0.6)
    assert painted[0, 0] == pytest.approx(0.5)

    erased = apply_brush_stroke(mask, BrushStroke(tool="eraser", radius=4, softness=0, points=[(20, 20)]))
    assert erased[20, 20] == pytest.approx(0.0)
    assert erased.min() >= 0.0 and painted.max() <= 1.0


def test_brush_raises_alpha_in_background_region():
    image = create_test_image()
    region = square_region()
    mask = region.astype(np.float32)

    for softness in (0, 50, 100):
        stroke = BrushStroke(tool="brush", radius=10, softness=softness, points=[(50, 8)])
        painted = apply_brush_stroke(mask, stroke)
        rgba = Compositor(Settings(defringing=False)).render(image, painted)

        expected = round(stroke.opacity * 255)
        ys, xs = np.ogrid[:100, :100]
        disk = (xs - 50) ** 2 + (ys - 8) ** 2 <= 81
        assert np.all(rgba[:, :, 3][disk] == expected)
        # The square is untouched and far background stays transparent
        assert np.all(rgba[:, :, 3][region] == 255)
        assert rgba[8, 80, 3] == 0
        assert rgba[50, 5, 3] == 0

    assert round(BrushStroke(tool="brush", radius=10, softness=50).opacity * 255) == 153


def test_session_brush_stroke_renders_partial_alpha():
    session = EditingSession(create_test_image(), Settings(defringing=False))
    session.set_mask(square_region().astype(np.float32))
    session.begin_stroke("brush", 10, softness=50)
    session.extend_stroke(50, 8)
    session.end_stroke()

    rgba = session.render()
    assert rgba[8, 50, 3] == 153
    assert rgba[8, 45, 3] == 153
    assert rgba[8, 80, 3] == 0
    assert rgba[50, 50, 3] == 255


def test_overlay_merges_only_on_commit():
    mask = np.zeros((30, 30), dtype=np.float32)
    overlay = StrokeOverlay(mask.shape)
    overlay.begin("brush", radius=2)
    overlay.add_point(5, 5)
    overlay.add_point(15, 5)
    assert overlay.active
    assert overlay.preview()[5, 10] == 1.0
    assert not mask.any()

    merged = overlay.commit(mask)
    assert merged[5, 10] == 1.0
    assert merged[20, 20] == 0.0
    assert not overlay.active
    assert not overlay.preview().any()


def test_overlay_requires_begin():
    overlay = StrokeOverlay((10, 10))
    with pytest.raises(InvalidInputError):
        overlay.add_point(1, 1)


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
