"""Image transform processing for kiln.

An image reference such as ``hero.jpg?w=100&h=50&fit=crop`` asks for a
transformed copy of the image. This module parses and validates those query
parameters, expands named presets and performs the transformation with
Pillow.

Key classes:
- TransformParams: Validated, canonical transform parameters.
- ImagePresetResolver: Expands ``preset``/``p`` into concrete parameters.
- BaseImageTransformer: Base class for transformation services.
- PillowImageTransformer: Default transformer backed by Pillow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from urllib.parse import parse_qsl

from PIL import Image, ImageOps

from .config import FIT_MODES

TRANSFORM_KEYS = ("w", "h", "fit", "q", "fm")
PRESET_KEYS = ("preset", "p")
SOURCE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
OUTPUT_FORMATS = ("jpg", "png", "gif", "webp")
MAX_DIMENSION = 10000

# Pillow format names per output extension
_PILLOW_FORMATS = {"jpg": "JPEG", "png": "PNG", "gif": "GIF", "webp": "WEBP"}


class TransformParamError(ValueError):
    """Raised when image transform parameters are invalid."""


@dataclass(frozen=True)
class TransformParams:
    """Validated transform parameters.

    Attributes:
        width: Target width in pixels, or None.
        height: Target height in pixels, or None.
        fit: Fit mode, one of ``FIT_MODES``.
        quality: Encoder quality (1..100).
        format: Output format extension, or None to keep the source format.
    """

    width: int | None = None
    height: int | None = None
    fit: str = "contain"
    quality: int = 85
    format: str | None = None

    def canonical(self) -> str:
        """Return a stable string form used for cache keys."""
        parts = [
            f"w={self.width or ''}",
            f"h={self.height or ''}",
            f"fit={self.fit}",
            f"q={self.quality}",
            f"fm={self.format or ''}",
        ]
        return "&".join(parts)

    def output_extension(self, source: Path) -> str:
        """Return the output file extension (without dot) for a source image."""
        if self.format:
            return self.format
        ext = source.suffix.lower().lstrip(".")
        return "jpg" if ext == "jpeg" else ext


def is_transformable(path: str) -> bool:
    return Path(path).suffix.lower() in SOURCE_EXTENSIONS


def has_transform_query(query: str) -> bool:
    """Check whether a query string asks for an image transform."""
    keys = {key for key, _ in parse_qsl(query, keep_blank_values=True)}
    return bool(keys & set(TRANSFORM_KEYS + PRESET_KEYS))


class ImagePresetResolver:
    """Expands named presets in transform queries.

    Explicit query parameters override the preset's values.

    Attributes:
        presets: Mapping of preset name to parameter mapping.
    """

    def __init__(self, presets: dict[str, dict[str, str]] | None = None):
        self.presets = presets or {}

    def resolve(self, query: str) -> dict[str, str]:
        """Turn a query string into a flat parameter mapping.

        Raises:
            TransformParamError: If a named preset does not exist.
        """
        explicit = dict(parse_qsl(query, keep_blank_values=True))
        name = explicit.pop("preset", None) or explicit.pop("p", None)
        explicit.pop("p", None)
        params: dict[str, str] = {}
        if name:
            if name not in self.presets:
                raise TransformParamError(f"unknown image preset '{name}'")
            params.update(self.presets[name])
        params.update(explicit)
        return params


def parse_transform_params(params: dict[str, str], default_quality: int = 85) -> TransformParams:
    """Validate a flat parameter mapping.

    Args:
        params: Parameters after preset expansion.
        default_quality: Quality used when ``q`` is not given.

    Returns:
        Validated TransformParams.

    Raises:
        TransformParamError: If any parameter is out of range or unknown.
    """
    fit = params.get("fit", "contain").lower()
    if fit not in FIT_MODES:
        raise TransformParamError(
            f"invalid fit '{fit}'; expected one of {', '.join(FIT_MODES)}"
        )
    width = _dimension(params.get("w"), "w")
    height = _dimension(params.get("h"), "h")
    if width is None and height is None and fit in ("crop", "fill", "stretch"):
        raise TransformParamError(f"fit '{fit}' needs a width or a height")

    quality = default_quality
    if params.get("q"):
        quality = _integer(params["q"], "q")
        if not 1 <= quality <= 100:
            raise TransformParamError("q must be between 1 and 100")

    fmt = params.get("fm")
    if fmt:
        fmt = fmt.lower()
        if fmt == "jpeg":
            fmt = "jpg"
        if fmt not in OUTPUT_FORMATS:
            raise TransformParamError(
                f"invalid fm '{fmt}'; expected one of {', '.join(OUTPUT_FORMATS)}"
            )
    return TransformParams(width=width, height=height, fit=fit, quality=quality, format=fmt or None)


def _dimension(value: str | None, name: str) -> int | None:
    if value is None or value == "":
        return None
    number = _integer(value, name)
    if not 1 <= number <= MAX_DIMENSION:
        raise TransformParamError(f"{name} must be between 1 and {MAX_DIMENSION}")
    return number


def _integer(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise TransformParamError(f"{name} must be an integer, got '{value}'") from exc


class BaseImageTransformer(ABC):
    """Base class for image transformation services."""

    @abstractmethod
    def transform(self, source: Path, params: TransformParams) -> bytes:
        """Transform ``source`` and return the encoded result."""
        ...


class PillowImageTransformer(BaseImageTransformer):
    """Transforms images with Pillow.

    Fit modes:
        contain: Scale down to fit inside the box, keeping the aspect ratio.
        max: Like contain, but never upscale.
        fill: Fit inside the box and pad the remainder.
        stretch: Resize to exactly the box, ignoring the aspect ratio.
        crop: Scale and crop to exactly fill the box.
    """

    def transform(self, source: Path, params: TransformParams) -> bytes:
        fmt = params.output_extension(source)
        with Image.open(source) as img:
            img.load()
            result = self._resize(img, params)
            if fmt == "jpg" and result.mode not in ("RGB", "L"):
                result = result.convert("RGB")
            buffer = BytesIO()
            save_kwargs: dict[str, object] = {}
            if fmt in ("jpg", "webp"):
                save_kwargs["quality"] = params.quality
            result.save(buffer, format=_PILLOW_FORMATS[fmt], **save_kwargs)
        return buffer.getvalue()

    def _resize(self, img: Image.Image, params: TransformParams) -> Image.Image:
        width, height = img.size
        target_w = params.width or (
            round(width * params.height / height) if params.height else width
        )
        target_h = params.height or (
            round(height * params.width / width) if params.width else height
        )
        box = (max(1, target_w), max(1, target_h))

        if params.fit == "crop":
            return ImageOps.fit(img, box)
        if params.fit == "fill":
            return ImageOps.pad(img, box)
        if params.fit == "stretch":
            return img.resize(box)
        if params.fit == "max":
            result = img.copy()
            result.thumbnail(box)
            return result
        # contain may upscale
        scale = min(box[0] / width, box[1] / height)
        return img.resize((max(1, round(width * scale)), max(1, round(height * scale))))
