"""
Coordinate handling across pyramid levels.

Convention: coordinates are (x, y) = (horizontal, vertical) with the origin at
the top-left corner. Three spaces are involved:

    - level-0 pixels: full-resolution pixel grid
    - level-L pixels: pixel grid of pyramid level L
    - physical: millimetres, identical for every level

Conversions between them only use per-level physical spacing, so all
functions here are pure given a PyramidMetadata.
"""

import math
from typing import Tuple

import numpy as np

from digislide.errors import InvalidLevel, InvalidParameter
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import Unit, region_to_pixels


class CoordinateMapper:
    """
    Stateless geometric conversions over one slide's PyramidMetadata.

    Example:
        mapper = CoordinateMapper(metadata)
        level = mapper.select_level_for_target_area(4000, 3000, 800 ** 2)
        x, y = mapper.rescale_between_levels((120, 80), level, 0)
    """

    def __init__(self, metadata: PyramidMetadata):
        self.metadata = metadata
        self._spacing = np.asarray(metadata.physical_spacing, dtype=np.float64)
        self._downsampling = np.asarray(metadata.downsampling, dtype=np.float64)

    @property
    def level_count(self) -> int:
        return self.metadata.level_count

    def check_level(self, level, operation: str = "check_level") -> int:
        """
        Validate a level index and return it as int.

        Raises:
            InvalidLevel: If level is not an integer in [0, level_count - 1]
        """
        if isinstance(level, bool) or not isinstance(level, (int, np.integer)):
            raise InvalidLevel(f"Level must be an integer, got {level!r}",
                               operation=operation, parameter="level",
                               bounds=(0, self.level_count - 1))
        level = int(level)
        if level < 0 or level >= self.level_count:
            raise InvalidLevel(f"Level {level} outside pyramid",
                               operation=operation, parameter="level", level=level,
                               bounds=(0, self.level_count - 1))
        return level

    def select_level_for_target_area(
        self,
        viewport_width: float,
        viewport_height: float,
        target_resolution_pixels: float,
    ) -> int:
        """
        Pick the coarsest level that still shows more than the target pixel count.

        area[L] = viewport_width * viewport_height / (downsampling[L].x * downsampling[L].y)

        The last (highest-index) level with area[L] > target wins; level 0 if none.

        Args:
            viewport_width: Viewport width in level-0 pixels
            viewport_height: Viewport height in level-0 pixels
            target_resolution_pixels: Minimum number of pixels to show (> 0)

        Returns:
            Selected level index
        """
        if not target_resolution_pixels > 0:
            raise InvalidParameter(
                f"target_resolution_pixels must be positive, got {target_resolution_pixels}",
                operation="select_level_for_target_area", parameter="target_resolution_pixels",
            )
        area = (float(viewport_width) * float(viewport_height)) / np.prod(self._downsampling, axis=1)
        qualifying = np.flatnonzero(area > target_resolution_pixels)
        if qualifying.size == 0:
            return 0
        return int(qualifying[-1])

    def feature_size_in_pixels(self, feature_physical_size: float) -> np.ndarray:
        """Per-level size in pixels of a physical length (horizontal spacing only)."""
        return float(feature_physical_size) / self._spacing[:, 0]

    def select_level_for_physical_feature_size(
        self,
        feature_physical_size: float,
        target_feature_pixels: float,
    ) -> int:
        """
        Pick the coarsest level on which a physical feature spans more than N pixels.

        featurePixels[L] = feature_physical_size / physical_spacing[L].x

        Only the horizontal spacing is used. The last level with
        featurePixels[L] > target wins; the coarsest level if none qualifies.

        Args:
            feature_physical_size: Feature size in mm
            target_feature_pixels: Minimum feature size in pixels (> 0)

        Returns:
            Selected level index
        """
        if not target_feature_pixels > 0:
            raise InvalidParameter(
                f"target_feature_pixels must be positive, got {target_feature_pixels}",
                operation="select_level_for_physical_feature_size",
                parameter="target_feature_pixels",
            )
        feature_pixels = self.feature_size_in_pixels(feature_physical_size)
        qualifying = np.flatnonzero(feature_pixels > target_feature_pixels)
        if qualifying.size == 0:
            return self.level_count - 1
        return int(qualifying[-1])

    def to_level_pixels(
        self,
        physical_coord: Tuple[float, float],
        level: int,
        floor: bool = True,
    ) -> Tuple[float, float]:
        """
        Convert a physical (mm) coordinate to pixels of a level.

        Args:
            physical_coord: (x, y) in mm
            level: Target level
            floor: Truncate to the pixel grid (read paths use this so requested
                regions stay inside bounds)

        Returns:
            (x, y) in level pixels (ints when floor=True)
        """
        level = self.check_level(level, "to_level_pixels")
        sx, sy = self._spacing[level]
        x = float(physical_coord[0]) / sx
        y = float(physical_coord[1]) / sy
        if floor:
            return (int(math.floor(x)), int(math.floor(y)))
        return (x, y)

    def to_physical(self, pixel_coord: Tuple[float, float], level: int) -> Tuple[float, float]:
        """Convert level pixels to a physical (mm) coordinate."""
        level = self.check_level(level, "to_physical")
        sx, sy = self._spacing[level]
        return (float(pixel_coord[0]) * sx, float(pixel_coord[1]) * sy)

    def rescale_between_levels(
        self,
        coord: Tuple[float, float],
        from_level: int,
        to_level: int,
    ) -> Tuple[float, float]:
        """
        Rescale a pixel coordinate from one level to another.

        coord' = coord * physical_spacing[from_level] / physical_spacing[to_level]
        (independent ratios for x and y)
        """
        from_level = self.check_level(from_level, "rescale_between_levels")
        to_level = self.check_level(to_level, "rescale_between_levels")
        ratio = self._spacing[from_level] / self._spacing[to_level]
        return (float(coord[0]) * ratio[0], float(coord[1]) * ratio[1])

    def spacing_ratio(self, from_level: int, to_level: int) -> Tuple[float, float]:
        """(x, y) factor that maps from_level pixels to to_level pixels."""
        return self.rescale_between_levels((1.0, 1.0), from_level, to_level)

    def region_to_level_pixels(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        level: int,
        unit: Unit = Unit.PIXEL,
    ) -> Tuple[int, int, int, int]:
        """
        Normalize a region request to integer pixels of its level.

        Pixel regions are floored as-is. Physical regions (mm, um) are divided by
        the level spacing and floored.

        Returns:
            (x, y, width, height) in level pixels
        """
        level = self.check_level(level, "region_to_level_pixels")
        return region_to_pixels(x, y, width, height, self._spacing[level], unit)
