"""
Viewport reading for slide viewers.

A viewer asks for the part of the slide that is currently visible, given as
level-0 pixel limits. The viewport is padded, clamped to the slide, read
from the coarsest level that still shows at least `target_resolution` pixels,
and returned together with the level-0 extent the image actually covers.
Only `select_level_for_target_area` and `get_region` of the slide are used.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from digislide.errors import InvalidParameter
from digislide.utils.config import DEFAULT_CONFIG


@dataclass(frozen=True)
class Viewport:
    """Image of a viewport and the level-0 limits it covers."""
    image: np.ndarray
    level: int
    x_limits: Tuple[float, float]
    y_limits: Tuple[float, float]


def pad_and_clamp(limits, padding: float, size: int) -> Tuple[float, float]:
    """Grow (lo, hi) by padding * (hi - lo) on each side and clamp to [0, size - 1]."""
    lo, hi = float(limits[0]), float(limits[1])
    delta = hi - lo
    lo, hi = lo - delta * padding, hi + delta * padding
    return max(0.0, min(lo, size - 1.0)), max(0.0, min(hi, size - 1.0))


def read_viewport(
    slide,
    x_limits: Tuple[float, float],
    y_limits: Tuple[float, float],
    target_resolution: float = DEFAULT_CONFIG["display"]["target_resolution"],
    padding: float = DEFAULT_CONFIG["display"]["padding"],
) -> Viewport:
    """
    Read the visible part of a slide at an appropriate level.

    Args:
        slide: DigitalSlide (or anything with metadata, select_level_for_target_area
            and get_region)
        x_limits: (left, right) in level-0 pixels
        y_limits: (top, bottom) in level-0 pixels
        target_resolution: Minimum number of pixels to show
        padding: Fraction of the viewport added on every side (0-1)

    Returns:
        Viewport with the image, the level read and its level-0 limits
    """
    if not 0 <= padding <= 1:
        raise InvalidParameter(f"padding must be in [0, 1], got {padding}",
                               operation="read_viewport", parameter="padding")
    if x_limits[1] <= x_limits[0] or y_limits[1] <= y_limits[0]:
        raise InvalidParameter("Viewport limits must be increasing",
                               operation="read_viewport", parameter="x_limits/y_limits")

    width0, height0 = slide.metadata.pixel_size[0]
    x_lo, x_hi = pad_and_clamp(x_limits, padding, width0)
    y_lo, y_hi = pad_and_clamp(y_limits, padding, height0)

    level = slide.select_level_for_target_area(x_hi - x_lo, y_hi - y_lo, target_resolution)
    ds_x, ds_y = slide.metadata.downsampling[level]

    x = int(round(x_lo / ds_x))
    y = int(round(y_lo / ds_y))
    width = max(1, int(round((x_hi - x_lo) / ds_x)))
    height = max(1, int(round((y_hi - y_lo) / ds_y)))
    image = slide.get_region(x, y, width, height, level)

    return Viewport(
        image=image,
        level=level,
        x_limits=(x * ds_x, (x + width - 1) * ds_x),
        y_limits=(y * ds_y, (y + height - 1) * ds_y),
    )
