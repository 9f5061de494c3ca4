"""
TMA core detection.

Provides:
- frst: dark orientation-only fast radial symmetry transform
- nonmaxsupp: non-maxima suppression over a strength map
- TMACoreLocator: end-to-end core detection and per-core regions
"""

from .frst import frst
from .nonmax import nonmaxsupp

from .tma import (
    DetectionParameters,
    TMACore,
    TMACoreLocator,
)

__all__ = [
    'frst',
    'nonmaxsupp',
    'DetectionParameters',
    'TMACore',
    'TMACoreLocator',
]
