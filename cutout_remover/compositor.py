import logging
from typing import Optional

import cv2
import numpy as np

from .color_math import MAX_DISTANCE, parse_color
from .errors import InvalidInputError
from .image_buffer import ImageBuffer, check_mask, shift_array

logger = logging.getLogger(__name__)

# Soft defringing: which mask values count as an edge, background or foreground
FUZZY_LOW = 0.05
FUZZY_HIGH = 0.95
STRONG_BACKGROUND = 0.1
STRONG_FOREGROUND = 0.9
DEFRINGE_RADIUS = 2               # 5x5 neighborhood
DEFRINGE_STRENGTH = 0.2

# Hard defringing cut-off on the 0-255 alpha scale
HARD_DEFRINGE_CUTOFF = 128


def mask_to_alpha(mask: np.ndarray) -> np.ndarray:
    return np.clip(np.round(np.asarray(mask, dtype=np.float32) * 255.0), 0, 255).astype(np.uint8)


def defringe_soft(image: ImageBuffer, mask: np.ndarray) -> np.ndarray:
    """
    Pull soft edge pixels toward whichever side their color resembles.

    For every fuzzy pixel the 5x5 window is scanned row by row for the first
    strongly background and the first strongly foreground neighbor. When both
    exist the pixel's mask value moves toward the closer one by
    ``0.2 * (1 - normalized distance)``.

    Returns:
        New mask, clamped to [0, 1]
    """
    mask = check_mask(mask, image)
    rgb = image.rgb.astype(np.float32)
    fuzzy = (mask > FUZZY_LOW) & (mask < FUZZY_HIGH)
    if not fuzzy.any():
        return mask.copy()

    radius = DEFRINGE_RADIUS
    inside = np.ones(mask.shape, dtype=bool)
    background_found = np.zeros(mask.shape, dtype=bool)
    foreground_found = np.zeros(mask.shape, dtype=bool)
    background_color = np.zeros_like(rgb)
    foreground_color = np.zeros_like(rgb)

    # Offsets in row-major order so the first hit matches a window scan
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            exists = shift_array(inside, dy, dx, radius, fill=False)
            value = shift_array(mask, dy, dx, radius)
            color = shift_array(rgb, dy, dx, radius)

            hit = exists & (value < STRONG_BACKGROUND) & ~background_found
            background_color = np.where(hit[:, :, None], color, background_color)
            background_found |= hit

            hit = exists & (value > STRONG_FOREGROUND) & ~foreground_found
            foreground_color = np.where(hit[:, :, None], color, foreground_color)
            foreground_found |= hit

    target = fuzzy & background_found & foreground_found
    to_background = np.sqrt(np.sum((rgb - background_color) ** 2, axis=2))
    to_foreground = np.sqrt(np.sum((rgb - foreground_color) ** 2, axis=2))
    toward_background = to_background < to_foreground
    step = np.where(
        toward_background,
        -DEFRINGE_STRENGTH * (1.0 - to_background / MAX_DISTANCE),
        DEFRINGE_STRENGTH * (1.0 - to_foreground / MAX_DISTANCE),
    )

    result = mask.copy()
    result[target] += step[target].astype(np.float32)
    return np.clip(result, 0.0, 1.0)


def defringe_hard(alpha: np.ndarray) -> np.ndarray:
    """Snap every partially transparent alpha value to 0 or 255."""
    alpha = np.asarray(alpha)
    return np.where(alpha < HARD_DEFRINGE_CUTOFF, 0, 255).astype(np.uint8)


def _fit_background_image(background: np.ndarray, height: int, width: int) -> np.ndarray:
    background = np.asarray(background)
    if background.ndim != 3 or background.shape[2] not in (3, 4):
        raise InvalidInputError(f"Background image must be RGB or RGBA, got shape {background.shape}")
    background = background[:, :, :3]
    if background.dtype != np.uint8:
        background = np.clip(background, 0, 255).astype(np.uint8)
    if background.shape[:2] != (height, width):
        shrinking = background.shape[0] > height or background.shape[1] > width
        interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        background = cv2.resize(background, (width, height), interpolation=interpolation)
    return background


def composite(image: ImageBuffer, alpha: np.ndarray, background_color=None,
              background_image: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Place the cut-out over the chosen background.

    Without a background the alpha is written into the RGBA output. With a
    solid color or an image the background is laid down first and the
    foreground is blended over it, giving an opaque result.

    Args:
        image: Source image
        alpha: uint8 alpha (0-255) with the image's dimensions
        background_color: Hex string or (r, g, b), optional
        background_image: RGB/RGBA array, resized to the image, optional

    Returns:
        (H, W, 4) uint8 RGBA array
    """
    alpha = np.asarray(alpha)
    if alpha.shape != image.shape:
        raise InvalidInputError(f"Alpha shape {alpha.shape} does not match image size {image.width}x{image.height}")

    h, w = image.shape
    output = np.empty((h, w, 4), dtype=np.uint8)

    if background_image is None and background_color is None:
        output[:, :, :3] = image.rgb
        output[:, :, 3] = alpha
        return output

    if background_image is not None:
        base = _fit_background_image(background_image, h, w).astype(np.float32)
    else:
        base = np.empty((h, w, 3), dtype=np.float32)
        base[:] = parse_color(background_color)

    weight = alpha.astype(np.float32)[:, :, None] / 255.0
    blended = image.rgb.astype(np.float32) * weight + base * (1.0 - weight)
    output[:, :, :3] = np.clip(np.round(blended), 0, 255).astype(np.uint8)
    output[:, :, 3] = 255
    return output


class Compositor:
    """Turns a mask into the final RGBA output according to the settings."""

    def __init__(self, settings, hard_defringe: bool = False):
        self.settings = settings
        self.hard_defringe = hard_defringe

    def render(self, image: ImageBuffer, mask: np.ndarray) -> np.ndarray:
        mask = check_mask(mask, image)
        if self.settings.defringing and not self.hard_defringe:
            mask = defringe_soft(image, mask)
        alpha = mask_to_alpha(mask)
        if self.settings.defringing and self.hard_defringe:
            alpha = defringe_hard(alpha)

        mode = self.settings.background_mode
        logger.debug("Compositing %dx%d result over %s background", image.width, image.height, mode)
        if mode == "image":
            return composite(image, alpha, background_image=self.settings.background_image)
        if mode == "color":
            return composite(image, alpha, background_color=self.settings.background_color)
        return composite(image, alpha)
