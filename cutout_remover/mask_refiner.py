import math

import cv2
import numpy as np

from .errors import InvalidInputError

# sigma = SIGMA_BASE + smoothing / 100 * SIGMA_SCALE
SIGMA_BASE = 1.0
SIGMA_SCALE = 2.0
MIN_KERNEL_SIZE = 3

BIAS_SIGMOID_SLOPE = 10.0


def gaussian_kernel_size(sigma: float) -> int:
    """Odd kernel size covering about two sigmas each side, never below 3."""
    size = 2 * int(math.ceil(2 * sigma)) + 1
    return max(MIN_KERNEL_SIZE, size)


def smoothing_sigma(smoothing: float) -> float:
    return SIGMA_BASE + smoothing / 100.0 * SIGMA_SCALE


def _check_percent(name: str, value: float):
    if not 0 <= value <= 100:
        raise InvalidInputError(f"{name} must be between 0 and 100, got {value}")


def gaussian_smooth(mask: np.ndarray, smoothing: float) -> np.ndarray:
    """
    Blur the mask with a normalized Gaussian kernel.

    Borders are sampled by clamping to the nearest edge pixel. A smoothing of
    0 leaves the mask untouched.
    """
    _check_percent("smoothing", smoothing)
    mask = np.asarray(mask, dtype=np.float32)
    if smoothing <= 0:
        return mask.copy()

    sigma = smoothing_sigma(smoothing)
    size = gaussian_kernel_size(sigma)
    blurred = cv2.GaussianBlur(mask, (size, size), sigmaX=sigma, sigmaY=sigma,
                               borderType=cv2.BORDER_REPLICATE)
    return np.clip(blurred, 0.0, 1.0)


def sigmoid_sharpen(mask: np.ndarray, slope: float, shift: float = 0.0) -> np.ndarray:
    """Logistic curve centered on 0.5 (moved by ``shift``)."""
    mask = np.asarray(mask, dtype=np.float32)
    return (1.0 / (1.0 + np.exp(-slope * (mask - 0.5 + shift)))).astype(np.float32)


def apply_foreground_bias(mask: np.ndarray, foreground_bias: float) -> np.ndarray:
    """
    Re-threshold the mask around 0.5, shifted toward foreground by the bias.

    A bias of 50 is neutral; higher values keep more of the subject.
    """
    _check_percent("foreground_bias", foreground_bias)
    shift = (foreground_bias - 50) / 100.0
    return np.clip(sigmoid_sharpen(mask, BIAS_SIGMOID_SLOPE, shift), 0.0, 1.0)


class MaskRefiner:
    """Post-processing of a segmentation mask: smoothing then bias re-threshold."""

    def __init__(self, smoothing: float = 50, foreground_bias: float = 50):
        _check_percent("smoothing", smoothing)
        _check_percent("foreground_bias", foreground_bias)
        self.smoothing = smoothing
        self.foreground_bias = foreground_bias

    @classmethod
    def from_settings(cls, settings) -> "MaskRefiner":
        return cls(smoothing=settings.smoothing, foreground_bias=settings.foreground_bias)

    def refine(self, mask: np.ndarray) -> np.ndarray:
        refined = gaussian_smooth(mask, self.smoothing)
        return apply_foreground_bias(refined, self.foreground_bias)
