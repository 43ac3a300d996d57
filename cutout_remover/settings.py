import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from .color_math import parse_color
from .errors import InvalidInputError
from .image_buffer import Color

logger = logging.getLogger(__name__)

ALGORITHMS = ("adaptive", "color", "edge", "trimap", "brightness")
DETAIL_LEVELS = ("low", "medium", "high")
OUTPUT_FORMATS = ("png", "webp", "jpeg")

# Sampling stride used by the detectors for each detail level
DETAIL_STRIDE = {"low": 4, "medium": 2, "high": 1}

# Host-side (camelCase) option names
_KEY_ALIASES = {
    "foregroundBias": "foreground_bias",
    "edgeDetection": "edge_detection",
    "detailLevel": "detail_level",
    "backgroundColor": "background_color",
    "backgroundImage": "background_image",
    "outputFormat": "format",
    "autoAdjust": "auto_adjust",
}


@dataclass(frozen=True, eq=False)
class Settings:
    """
    Options for one background removal run.

    Numeric sliders use the 0-100 range of the editor controls;
    ``foreground_bias`` of 50 is neutral. ``seed`` fixes the clustering
    randomness of the background/foreground detectors.
    """

    algorithm: str = "adaptive"
    sensitivity: float = 50
    foreground_bias: float = 50
    smoothing: float = 50
    edge_detection: bool = True
    detail_level: str = "medium"
    defringing: bool = True
    background_color: Optional[Any] = None
    background_image: Optional[np.ndarray] = None
    transparent: bool = True
    quality: float = 0.92
    format: str = "png"
    seed: Optional[int] = None
    auto_adjust: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.algorithm not in ALGORITHMS:
            raise InvalidInputError(f"Unknown algorithm {self.algorithm!r}, expected one of {ALGORITHMS}")
        for name in ("sensitivity", "foreground_bias", "smoothing"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                raise InvalidInputError(f"{name} must be a number, got {value!r}")
            if not 0 <= value <= 100:
                raise InvalidInputError(f"{name} must be between 0 and 100, got {value}")
        if self.detail_level not in DETAIL_LEVELS:
            raise InvalidInputError(f"Unknown detail level {self.detail_level!r}")
        if isinstance(self.quality, bool) or not isinstance(self.quality, (int, float, np.number)):
            raise InvalidInputError(f"quality must be a number, got {self.quality!r}")
        if not 0 < self.quality <= 1:
            raise InvalidInputError(f"quality must be in (0, 1], got {self.quality}")
        for name in ("edge_detection", "defringing", "transparent", "auto_adjust"):
            if not isinstance(getattr(self, name), (bool, np.bool_)):
                raise InvalidInputError(f"{name} must be true or false, got {getattr(self, name)!r}")
        if self.seed is not None and (isinstance(self.seed, bool)
                                      or not isinstance(self.seed, (int, np.integer)) or self.seed < 0):
            raise InvalidInputError(f"seed must be a non-negative integer, got {self.seed!r}")
        if self.format not in OUTPUT_FORMATS:
            raise InvalidInputError(f"Unsupported output format {self.format!r}")
        if self.background_color is not None:
            parse_color(self.background_color)
        if self.background_image is not None:
            image = np.asarray(self.background_image)
            if image.ndim != 3 or image.shape[2] not in (3, 4):
                raise InvalidInputError(f"Background image must be RGB or RGBA, got shape {image.shape}")

    @property
    def sensitivity_norm(self) -> float:
        return self.sensitivity / 100.0

    @property
    def bias_shift(self) -> float:
        """Foreground bias as a signed shift, 0 when neutral."""
        return (self.foreground_bias - 50) / 100.0

    @property
    def sample_stride(self) -> int:
        return DETAIL_STRIDE[self.detail_level]

    @property
    def background_rgb(self) -> Optional[Color]:
        if self.background_color is None:
            return None
        return parse_color(self.background_color)

    @property
    def background_mode(self) -> str:
        """'transparent', 'color' or 'image', in that order of precedence."""
        if self.transparent:
            return "transparent"
        if self.background_image is not None:
            return "image"
        if self.background_color is not None:
            return "color"
        return "transparent"

    def replace(self, **changes) -> "Settings":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "Settings":
        """
        Build settings from a host options record.

        Accepts snake_case and the editor's camelCase names. Unknown keys are
        ignored.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in (options or {}).items():
            name = _KEY_ALIASES.get(key, key)
            if name not in known:
                logger.debug("Ignoring unknown setting %r", key)
                continue
            kwargs[name] = value
        return cls(**kwargs)
