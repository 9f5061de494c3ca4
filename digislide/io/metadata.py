"""
Pyramid metadata for multi-resolution digital slides.

Convention: all per-level pairs are (x, y) = (horizontal, vertical).

    - pixel_size[level]:       (width, height) in pixels
    - physical_spacing[level]: (sx, sy) in millimetres per pixel
    - downsampling[level]:     physical_spacing[level] / physical_spacing[0]

Level 0 is the highest resolution. Physical spacing uses the same unit for
every level, so downsampling[0] is always (1, 1).
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from digislide.errors import InvalidParameter


Pair = Tuple[float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Non-empty region of a slide in level-0 pixels."""
    x: int
    y: int
    width: int
    height: int


def _as_pairs(values, name: str) -> Tuple[Pair, ...]:
    pairs = []
    for i, value in enumerate(values):
        if len(value) != 2:
            raise InvalidParameter(
                f"{name}[{i}] must be a pair, got {value!r}",
                operation="PyramidMetadata", parameter=name,
            )
        pairs.append((float(value[0]), float(value[1])))
    return tuple(pairs)


@dataclass(frozen=True)
class PyramidMetadata:
    """
    Per-level geometric and format facts about a slide.

    Attributes:
        level_count: Number of pyramid levels (>= 1)
        pixel_size: Per-level (width, height) in pixels
        physical_spacing: Per-level (sx, sy) in mm/px
        physical_origin: Optional per-level offset of level 0 in slide coordinates
        tile_size: Optional per-level (tile_width, tile_height); None entries
            (or None overall) mean the level is region-only
        is_native_level: Optional per-level flag
        is_lossy_compressed: Optional per-level flag
        scan_factor: Optional per-level scan factor reported by the server
        bounding_box: Optional non-empty region (local backend only)
    """
    level_count: int
    pixel_size: Tuple[Pair, ...]
    physical_spacing: Tuple[Pair, ...]
    physical_origin: Optional[Tuple[Pair, ...]] = None
    tile_size: Optional[Tuple[Optional[Tuple[int, int]], ...]] = None
    is_native_level: Optional[Tuple[bool, ...]] = None
    is_lossy_compressed: Optional[Tuple[bool, ...]] = None
    scan_factor: Optional[Tuple[float, ...]] = None
    bounding_box: Optional[BoundingBox] = None
    downsampling: Tuple[Pair, ...] = field(init=False)

    def __post_init__(self):
        if int(self.level_count) < 1:
            raise InvalidParameter(
                f"level_count must be >= 1, got {self.level_count}",
                operation="PyramidMetadata", parameter="level_count",
            )
        object.__setattr__(self, 'level_count', int(self.level_count))

        pixel_size = tuple((int(w), int(h)) for w, h in _as_pairs(self.pixel_size, 'pixel_size'))
        spacing = _as_pairs(self.physical_spacing, 'physical_spacing')
        object.__setattr__(self, 'pixel_size', pixel_size)
        object.__setattr__(self, 'physical_spacing', spacing)

        if self.physical_origin is not None:
            object.__setattr__(self, 'physical_origin',
                               _as_pairs(self.physical_origin, 'physical_origin'))
        if self.tile_size is not None:
            object.__setattr__(self, 'tile_size', tuple(
                None if t is None or int(t[0]) <= 0 or int(t[1]) <= 0
                else (int(t[0]), int(t[1]))
                for t in self.tile_size
            ))
        for name in ('is_native_level', 'is_lossy_compressed'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, tuple(bool(v) for v in value))
        if self.scan_factor is not None:
            object.__setattr__(self, 'scan_factor', tuple(float(v) for v in self.scan_factor))

        for name in ('pixel_size', 'physical_spacing', 'physical_origin', 'tile_size',
                     'is_native_level', 'is_lossy_compressed', 'scan_factor'):
            value = getattr(self, name)
            if value is not None and len(value) != self.level_count:
                raise InvalidParameter(
                    f"{name} has {len(value)} entries, expected {self.level_count}",
                    operation="PyramidMetadata", parameter=name,
                )

        spacing_arr = np.asarray(spacing, dtype=np.float64)
        if np.any(spacing_arr <= 0) or not np.all(np.isfinite(spacing_arr)):
            raise InvalidParameter(
                f"physical_spacing must be finite and positive, got {spacing}",
                operation="PyramidMetadata", parameter="physical_spacing",
            )

        downsampling = spacing_arr / spacing_arr[0]
        if np.any(np.diff(downsampling, axis=0) < 0):
            raise InvalidParameter(
                "downsampling must be non-decreasing with level, "
                f"got {downsampling.tolist()}",
                operation="PyramidMetadata", parameter="physical_spacing",
            )
        object.__setattr__(self, 'downsampling',
                           tuple((float(dx), float(dy)) for dx, dy in downsampling))

    @classmethod
    def from_downsampling(
        cls,
        pixel_size: Sequence[Sequence[float]],
        downsampling: Sequence[Sequence[float]],
        base_spacing: Sequence[float],
        **kwargs,
    ) -> "PyramidMetadata":
        """
        Build metadata from per-level downsampling factors and level-0 spacing.

        Local readers report downsampling directly; physical spacing is then
        downsampling * level-0 spacing.

        Args:
            pixel_size: Per-level (width, height)
            downsampling: Per-level (dx, dy) factors
            base_spacing: Level-0 (sx, sy) in mm/px

        Returns:
            PyramidMetadata instance
        """
        spacing = [
            (float(dx) * float(base_spacing[0]), float(dy) * float(base_spacing[1]))
            for dx, dy in downsampling
        ]
        return cls(
            level_count=len(pixel_size),
            pixel_size=tuple(tuple(p) for p in pixel_size),
            physical_spacing=tuple(spacing),
            **kwargs,
        )

    def is_tiled(self, level: int) -> bool:
        """True when the level can be addressed by tile (col, row)."""
        return self.tile_size is not None and self.tile_size[level] is not None

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly dictionary."""
        return {
            'level_count': self.level_count,
            'pixel_size': [list(p) for p in self.pixel_size],
            'physical_spacing': [list(p) for p in self.physical_spacing],
            'downsampling': [list(p) for p in self.downsampling],
            'physical_origin': (
                [list(p) for p in self.physical_origin]
                if self.physical_origin is not None else None
            ),
            'tile_size': (
                [list(t) if t is not None else None for t in self.tile_size]
                if self.tile_size is not None else None
            ),
            'is_native_level': list(self.is_native_level) if self.is_native_level else None,
            'is_lossy_compressed': (
                list(self.is_lossy_compressed) if self.is_lossy_compressed else None
            ),
            'scan_factor': list(self.scan_factor) if self.scan_factor else None,
            'bounding_box': (
                vars(self.bounding_box).copy() if self.bounding_box is not None else None
            ),
        }
