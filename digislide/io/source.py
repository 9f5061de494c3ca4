"""
SlideSource capability shared by all pixel backends.

A source is bound to one slide when it is constructed (a server image ID, a
local file path) and answers four requests: metadata, a rectangular region, a
native tile, and an associated image. RegionAccessor depends only on this
protocol, never on a concrete backend.
"""

import math
from enum import Enum
from io import BytesIO
from typing import Optional, Protocol, Tuple, runtime_checkable

import numpy as np
from PIL import Image

from digislide.errors import InvalidParameter, MalformedResponse
from digislide.io.metadata import PyramidMetadata


class Unit(str, Enum):
    """Unit of region coordinates. Values match the server query strings."""
    PIXEL = "pixel"
    MICROMETER = "um"
    MILLIMETER = "mm"

    @classmethod
    def parse(cls, value) -> "Unit":
        if isinstance(value, cls):
            return value
        aliases = {
            'pixel': cls.PIXEL, 'px': cls.PIXEL, 'pixels': cls.PIXEL,
            'um': cls.MICROMETER, 'micrometer': cls.MICROMETER, 'micron': cls.MICROMETER,
            'mm': cls.MILLIMETER, 'millimeter': cls.MILLIMETER,
        }
        key = str(value).strip().lower()
        if key not in aliases:
            raise InvalidParameter(
                f"Unknown unit '{value}'. Use one of: pixel, um, mm",
                parameter="unit",
            )
        return aliases[key]


# Millimetres per unit
_MM_PER_UNIT = {
    Unit.MILLIMETER: 1.0,
    Unit.MICROMETER: 1e-3,
}


def to_millimeters(value: float, unit: Unit) -> float:
    """
    Convert a physical length to millimetres.

    Args:
        value: Length in `unit`
        unit: MILLIMETER or MICROMETER

    Raises:
        InvalidParameter: If unit is PIXEL (pixels have no fixed physical length)
    """
    unit = Unit.parse(unit)
    if unit not in _MM_PER_UNIT:
        raise InvalidParameter("Pixel lengths have no physical size without a level",
                               operation="to_millimeters", parameter="unit")
    return float(value) * _MM_PER_UNIT[unit]


def region_to_pixels(x, y, width, height, spacing, unit=Unit.PIXEL) -> Tuple[int, int, int, int]:
    """
    Floor a region given in `unit` to integer pixels of a level with `spacing` (mm/px).

    Returns:
        (x, y, width, height) in level pixels
    """
    unit = Unit.parse(unit)
    if unit is Unit.PIXEL:
        values = (x, y, width, height)
    else:
        sx, sy = float(spacing[0]), float(spacing[1])
        values = (
            to_millimeters(x, unit) / sx,
            to_millimeters(y, unit) / sy,
            to_millimeters(width, unit) / sx,
            to_millimeters(height, unit) / sy,
        )
    return tuple(int(math.floor(float(v))) for v in values)


class AssociatedImageKind(str, Enum):
    LABEL = "label"
    MACRO = "macro"
    THUMBNAIL = "thumbnail"

    @classmethod
    def parse(cls, value) -> "AssociatedImageKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidParameter(
                f"Unknown associated image '{value}'. Use one of: label, macro, thumbnail",
                parameter="kind",
            ) from None


class ImageFormat(str, Enum):
    """Transfer encoding requested from a backend (MIME type values)."""
    JPEG = "image/jpeg"
    PNG = "image/png"

    @classmethod
    def parse(cls, value) -> Optional["ImageFormat"]:
        if value is None or isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in ('jpeg', 'jpg', 'image/jpeg'):
            return cls.JPEG
        if key in ('png', 'image/png'):
            return cls.PNG
        raise InvalidParameter(
            f"Unknown image format '{value}'. Use 'jpeg' or 'png'",
            parameter="format",
        )


@runtime_checkable
class SlideSource(Protocol):
    """Capability implemented by every pixel backend."""

    def load_metadata(self) -> PyramidMetadata:
        ...

    def fetch_region(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        level: int,
        unit: Unit = Unit.PIXEL,
        image_format: Optional[ImageFormat] = None,
    ) -> np.ndarray:
        """Return an (height, width, 3) uint8 RGB array."""
        ...

    def fetch_tile(
        self,
        col: int,
        row: int,
        level: int,
        image_format: Optional[ImageFormat] = None,
    ) -> np.ndarray:
        ...

    def fetch_associated(
        self,
        kind: AssociatedImageKind,
        image_format: Optional[ImageFormat] = None,
    ) -> np.ndarray:
        ...


def decode_image_bytes(data: bytes, operation: str = "decode") -> np.ndarray:
    """
    Decode encoded image bytes (JPEG, PNG, GIF) into an RGB uint8 array.

    Args:
        data: Encoded image payload
        operation: Name of the request, used in error messages

    Returns:
        (height, width, 3) uint8 array

    Raises:
        MalformedResponse: If the payload cannot be decoded
    """
    if not data:
        raise MalformedResponse("Empty image payload", operation=operation)
    try:
        with Image.open(BytesIO(data)) as img:
            return np.asarray(img.convert('RGB'), dtype=np.uint8)
    except (OSError, ValueError) as e:
        raise MalformedResponse(f"Could not decode image payload: {e}",
                                operation=operation) from e


def rgba_to_rgb(rgba: np.ndarray) -> np.ndarray:
    """Drop the alpha channel, painting fully transparent pixels white."""
    rgb = np.ascontiguousarray(rgba[..., :3], dtype=np.uint8)
    if rgba.shape[-1] == 4:
        transparent = rgba[..., 3] == 0
        if transparent.any():
            rgb = rgb.copy()
            rgb[transparent] = 255
    return rgb
