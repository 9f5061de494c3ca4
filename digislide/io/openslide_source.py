"""
Local pyramid files (SVS, NDPI, MRXS, tiled TIFF, ...) through OpenSlide.

The OpenSlide shared library must be loaded once per process with
`initialize()` before any OpenSlideSource is created:

    from digislide.io import openslide_source

    openslide_source.initialize()                 # library on the default path
    openslide_source.initialize("C:/openslide/bin")  # explicit DLL directory
    source = openslide_source.OpenSlideSource("slide.svs")
"""

import math
import os
from pathlib import Path
from typing import Optional, Union

import numpy as np

from digislide.errors import BackendFailure, MalformedResponse, UnsupportedOperation
from digislide.io.metadata import BoundingBox, PyramidMetadata
from digislide.io.source import (
    AssociatedImageKind,
    ImageFormat,
    Unit,
    region_to_pixels,
    rgba_to_rgb,
)
from digislide.utils.logging import get_logger

logger = get_logger(__name__)

# The openslide module once initialize() has loaded it
_openslide = None


def initialize(library_path: Optional[Union[str, Path]] = None):
    """
    Load the OpenSlide library.

    Args:
        library_path: Directory holding the OpenSlide shared library, for
            platforms where it is not on the loader path (Windows)

    Returns:
        The imported openslide module

    Raises:
        BackendFailure: If the library cannot be loaded
    """
    global _openslide
    if _openslide is not None:
        logger.warning("OpenSlide is already initialized")
        return _openslide

    if library_path:
        if hasattr(os, 'add_dll_directory'):
            os.add_dll_directory(str(library_path))
        else:
            os.environ['PATH'] = str(library_path) + os.pathsep + os.environ.get('PATH', '')

    try:
        import openslide
    except (ImportError, OSError) as e:
        raise BackendFailure(f"Could not load the OpenSlide library: {e}",
                             operation="initialize") from e

    _openslide = openslide
    logger.info("OpenSlide %s initialized", getattr(openslide, '__library_version__', '?'))
    return _openslide


def is_initialized() -> bool:
    return _openslide is not None


def _float_property(properties, key: str) -> Optional[float]:
    value = properties.get(key)
    if value in (None, ''):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


class OpenSlideSource:
    """
    SlideSource over a file readable by OpenSlide.

    Args:
        path: Slide file path
        mpp: Level-0 (x, y) micrometres per pixel, used when the file does not
            declare openslide.mpp-x / openslide.mpp-y

    Raises:
        BackendFailure: If initialize() was not called or OpenSlide cannot open
            the file
    """

    def __init__(self, path: Union[str, Path], mpp: Optional[tuple] = None):
        if _openslide is None:
            raise BackendFailure("OpenSlide is not initialized. Call initialize() first",
                                 operation="open")
        self.path = Path(path)
        self.mpp = mpp
        try:
            self._slide = _openslide.OpenSlide(str(self.path))
        except (_openslide.OpenSlideError, OSError) as e:
            raise BackendFailure(f"OpenSlide cannot open {self.path}: {e}",
                                 operation="open") from e
        self._metadata: Optional[PyramidMetadata] = None

    @property
    def bounding_box(self) -> Optional[BoundingBox]:
        """Non-empty region in level-0 pixels from openslide.bounds-*, when declared."""
        props = self._slide.properties
        values = [props.get(f'openslide.bounds-{k}') for k in ('x', 'y', 'width', 'height')]
        if any(v in (None, '') for v in values):
            return None
        return BoundingBox(*(int(v) for v in values))

    def load_metadata(self) -> PyramidMetadata:
        if self._metadata is not None:
            return self._metadata

        props = self._slide.properties
        mpp_x = _float_property(props, 'openslide.mpp-x')
        mpp_y = _float_property(props, 'openslide.mpp-y')
        if mpp_x is None or mpp_y is None:
            if self.mpp is None:
                raise MalformedResponse(
                    f"{self.path.name} declares no pixel size; pass mpp=(x, y)",
                    operation="load_metadata", parameter="openslide.mpp-x",
                )
            mpp_x, mpp_y = (float(v) for v in self.mpp)

        downsamples = [float(d) for d in self._slide.level_downsamples]
        self._metadata = PyramidMetadata.from_downsampling(
            [tuple(d) for d in self._slide.level_dimensions],
            [(d, d) for d in downsamples],
            # micrometres to millimetres
            (mpp_x * 1e-3, mpp_y * 1e-3),
            bounding_box=self.bounding_box,
        )
        return self._metadata

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
        metadata = self.load_metadata()
        x, y, width, height = region_to_pixels(x, y, width, height,
                                               metadata.physical_spacing[level], unit)
        # OpenSlide addresses the region origin in level-0 pixels
        ds_x, ds_y = metadata.downsampling[level]
        origin = (int(math.floor(x * ds_x)), int(math.floor(y * ds_y)))
        try:
            region = self._slide.read_region(origin, level, (width, height))
        except (_openslide.OpenSlideError, OSError) as e:
            raise BackendFailure(f"OpenSlide read failed: {e}", operation="fetch_region",
                                 level=level, bounds=(origin[0], origin[1], width, height)) from e
        return rgba_to_rgb(np.asarray(region))

    def fetch_tile(self, col, row, level, image_format=None):
        raise UnsupportedOperation("OpenSlide slides are read by region, not by tile",
                                   operation="get_tile")

    def fetch_associated(
        self,
        kind: AssociatedImageKind,
        image_format: Optional[ImageFormat] = None,
    ) -> np.ndarray:
        kind = AssociatedImageKind.parse(kind)
        images = self._slide.associated_images
        if kind.value not in images:
            raise UnsupportedOperation(
                f"{self.path.name} has no '{kind.value}' image "
                f"(available: {sorted(images.keys())})",
                operation="get_associated_image", parameter="kind",
            )
        return rgba_to_rgb(np.asarray(images[kind.value].convert('RGBA')))

    def close(self):
        self._slide.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"OpenSlideSource('{self.path.name}')"
