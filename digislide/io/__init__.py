"""
Slide sources for digislide.

Provides:
- PyramidMetadata and the SlideSource protocol
- Remote TEPIS image server client
- Local OpenSlide reader (call openslide_source.initialize() first)
- Zeiss CZI reader with a virtual pyramid
"""

from .metadata import (
    BoundingBox,
    PyramidMetadata,
)

from .source import (
    AssociatedImageKind,
    ImageFormat,
    SlideSource,
    Unit,
    decode_image_bytes,
    to_millimeters,
)

from .tepis_source import (
    TepisClient,
    TepisSource,
    parse_metadata_xml,
)

from . import openslide_source
from .openslide_source import OpenSlideSource

from .czi_source import CziSource

__all__ = [
    # Metadata
    'BoundingBox',
    'PyramidMetadata',
    # Source protocol
    'AssociatedImageKind',
    'ImageFormat',
    'SlideSource',
    'Unit',
    'decode_image_bytes',
    'to_millimeters',
    # Backends
    'TepisClient',
    'TepisSource',
    'parse_metadata_xml',
    'openslide_source',
    'OpenSlideSource',
    'CziSource',
]
