"""
Pyramid coordinate handling and region access.

Provides:
- CoordinateMapper: level selection and conversions between pixel,
  level and physical coordinates
- RegionAccessor: region, tile and element access over a SlideSource
- Element selectors: ALL, Last, Indices
"""

from .coordinates import CoordinateMapper

from .region import (
    ALL,
    Indices,
    Last,
    RegionAccessor,
)

__all__ = [
    'CoordinateMapper',
    'RegionAccessor',
    'ALL',
    'Indices',
    'Last',
]
