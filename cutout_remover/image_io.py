import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import InvalidInputError
from .image_buffer import ImageBuffer

_PIL_FORMATS = {"png": "PNG", "webp": "WEBP", "jpeg": "JPEG"}


def decode_image(data: bytes) -> ImageBuffer:
    """Decode PNG/JPEG/WebP bytes into an RGBA buffer."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            rgba = np.array(image.convert("RGBA"))
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidInputError(f"Could not decode image: {str(e)}") from e
    return ImageBuffer.from_array(rgba)


def encode_image(rgba: np.ndarray, format: str = "png", quality: float = 0.92) -> bytes:
    """
    Encode an RGBA result.

    Args:
        rgba: (H, W, 4) uint8 array
        format: "png", "webp" or "jpeg"
        quality: 0-1 compression quality for the lossy formats

    Returns:
        Encoded bytes. JPEG has no alpha channel, so transparent pixels are
        flattened onto white.
    """
    if format not in _PIL_FORMATS:
        raise InvalidInputError(f"Unsupported output format {format!r}")
    if not 0 < quality <= 1:
        raise InvalidInputError(f"quality must be in (0, 1], got {quality}")
    rgba = np.asarray(rgba)
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise InvalidInputError(f"Expected uint8 RGBA array, got shape {rgba.shape} ({rgba.dtype})")

    image = Image.fromarray(rgba)
    if format == "jpeg":
        flattened = Image.new("RGB", image.size, (255, 255, 255))
        flattened.paste(image, mask=image.getchannel("A"))
        image = flattened

    buffer = io.BytesIO()
    options = {}
    if format in ("jpeg", "webp"):
        options["quality"] = max(1, int(round(quality * 100)))
    image.save(buffer, format=_PIL_FORMATS[format], **options)
    return buffer.getvalue()
