from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from .errors import InvalidInputError

Color = Tuple[int, int, int]


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """
    Read-only RGBA pixel buffer.

    Pixels are stored row-major as an (height, width, 4) uint8 array. The
    array is flagged non-writeable on construction so a captured image
    cannot change while a processing run holds it.
    """

    pixels: np.ndarray

    def __post_init__(self):
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray):
            raise InvalidInputError("Image pixels must be a numpy array")
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise InvalidInputError(f"Expected RGBA image (H, W, 4), got shape {pixels.shape}")
        if pixels.shape[0] <= 0 or pixels.shape[1] <= 0:
            raise InvalidInputError(f"Image dimensions must be positive, got {pixels.shape[1]}x{pixels.shape[0]}")
        if pixels.dtype != np.uint8:
            raise InvalidInputError(f"Expected uint8 pixels, got {pixels.dtype}")
        if pixels.flags.writeable:
            pixels = np.ascontiguousarray(pixels).copy()
            pixels.flags.writeable = False
            object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "ImageBuffer":
        """
        Build a buffer from a grayscale, RGB or RGBA array.

        Float arrays are assumed to be in the 0-1 range.
        """
        if array is None:
            raise InvalidInputError("No input image provided")
        array = np.asarray(array)
        if array.ndim not in (2, 3):
            raise InvalidInputError(f"Expected 2D or 3D image array, got {array.ndim}D")
        if array.shape[0] <= 0 or array.shape[1] <= 0:
            raise InvalidInputError(f"Image dimensions must be positive, got shape {array.shape}")

        if np.issubdtype(array.dtype, np.floating):
            array = np.clip(array * 255.0 + 0.5, 0, 255).astype(np.uint8)
        elif array.dtype != np.uint8:
            array = np.clip(array, 0, 255).astype(np.uint8)

        if array.ndim == 2:
            array = cv2.cvtColor(array, cv2.COLOR_GRAY2RGBA)
        elif array.shape[2] == 3:
            array = cv2.cvtColor(array, cv2.COLOR_RGB2RGBA)
        elif array.shape[2] != 4:
            raise InvalidInputError(f"Unsupported channel count: {array.shape[2]}")

        return cls(array)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.pixels.shape[:2]

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def color_at(self, x: int, y: int) -> Color:
        if not self.contains(x, y):
            raise InvalidInputError(f"Coordinate ({x}, {y}) outside {self.width}x{self.height} image")
        r, g, b = self.pixels[y, x, :3]
        return int(r), int(g), int(b)


def as_image(image) -> ImageBuffer:
    if isinstance(image, ImageBuffer):
        return image
    return ImageBuffer.from_array(image)


def empty_mask(image: ImageBuffer, value: float = 0.0) -> np.ndarray:
    return np.full(image.shape, value, dtype=np.float32)


def check_mask(mask: np.ndarray, image: ImageBuffer) -> np.ndarray:
    """Validate a mask against its image and return it as float32."""
    if mask is None:
        raise InvalidInputError("Mask is required")
    mask = np.asarray(mask)
    if mask.shape != image.shape:
        raise InvalidInputError(
            f"Mask shape {mask.shape} does not match image size {image.width}x{image.height}"
        )
    if mask.dtype != np.float32:
        mask = mask.astype(np.float32)
    return mask


def shift_array(array: np.ndarray, dy: int, dx: int, radius: int, fill=0) -> np.ndarray:
    """out[y, x] = array[y + dy, x + dx], ``fill`` outside the image."""
    h, w = array.shape[:2]
    pad = ((radius, radius), (radius, radius)) + ((0, 0),) * (array.ndim - 2)
    padded = np.pad(array, pad, mode="constant", constant_values=fill)
    return padded[radius + dy:radius + dy + h, radius + dx:radius + dx + w]
