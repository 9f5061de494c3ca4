"""
Zeiss CZI slides as a SlideSource.

CZI mosaics carry a single full-resolution plane per scene, so this backend
exposes a virtual pyramid: level k is the mosaic downsampled by 2**k, down to
the last level whose sides are both at least `min_level_size` pixels.
aicspylibczi reads each request at the level's scale factor, and the result is
resized to the exact requested size.
"""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np
from aicspylibczi import CziFile

from digislide.errors import BackendFailure, MalformedResponse, UnsupportedOperation
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import (
    AssociatedImageKind,
    ImageFormat,
    Unit,
    region_to_pixels,
)
from digislide.utils.config import DEFAULT_CONFIG
from digislide.utils.logging import get_logger

logger = get_logger(__name__)

# Fallback level-0 pixel size (mm/px) when the file carries no Scaling block
DEFAULT_PIXEL_SIZE_MM = 0.22e-3


def _squeeze_batch_dims(arr: np.ndarray) -> np.ndarray:
    """Remove leading singleton (batch) dimensions, keeping (H, W) or (H, W, C)."""
    while arr.ndim > 3 or (arr.ndim == 3 and arr.shape[0] == 1 and arr.shape[-1] not in (3, 4)):
        if arr.shape[0] != 1:
            break
        arr = arr.squeeze(axis=0)
    return arr


def to_rgb8(data: np.ndarray) -> np.ndarray:
    """
    Normalize a CZI mosaic read to (H, W, 3) uint8 RGB.

    16-bit data is shifted down by 8 bits. Colour planes arrive as BGR(A);
    grayscale is replicated into three channels.
    """
    data = _squeeze_batch_dims(np.asarray(data))
    if data.dtype == np.uint16:
        data = (data >> 8).astype(np.uint8)
    elif data.dtype != np.uint8:
        data = np.clip(data, 0, 255).astype(np.uint8)

    if data.ndim == 2:
        return np.repeat(data[:, :, None], 3, axis=2)
    if data.ndim == 3 and data.shape[2] in (3, 4):
        return np.ascontiguousarray(data[:, :, 2::-1])
    raise MalformedResponse(f"Unexpected CZI pixel layout {data.shape}",
                            operation="fetch_region")


def read_pixel_size_mm(meta) -> Optional[tuple]:
    """(sx, sy) level-0 pixel size in mm from CZI metadata XML, or None."""
    if meta is None:
        return None
    root = ET.fromstring(meta) if isinstance(meta, (str, bytes)) else meta
    values = []
    for axis in ('X', 'Y'):
        node = root.find(f'.//Scaling/Items/Distance[@Id="{axis}"]/Value')
        if node is None or not node.text:
            return None
        # Scaling is in metres
        values.append(float(node.text) * 1e3)
    return tuple(values)


class CziSource:
    """
    SlideSource over one scene of a CZI file.

    Args:
        czi_path: Path to the .czi file
        scene: Scene index (0-based)
        min_level_size: Smallest side length (px) a virtual level may have

    Raises:
        FileNotFoundError: If the path does not exist
        BackendFailure: If aicspylibczi cannot open the file
    """

    def __init__(
        self,
        czi_path: Union[str, Path],
        scene: int = 0,
        min_level_size: int = DEFAULT_CONFIG["czi"]["min_level_size"],
    ):
        self.czi_path = Path(czi_path)
        if not self.czi_path.is_file():
            raise FileNotFoundError(f"CZI file not found: {self.czi_path}")

        self.scene = scene
        self.min_level_size = min_level_size
        try:
            self.reader = CziFile(str(self.czi_path))
            self.bbox = self.reader.get_mosaic_scene_bounding_box(index=self.scene)
        except Exception as e:
            raise BackendFailure(f"Could not open {self.czi_path.name}: {e}",
                                 operation="open") from e
        self._metadata: Optional[PyramidMetadata] = None

    def load_metadata(self) -> PyramidMetadata:
        if self._metadata is not None:
            return self._metadata

        width, height = int(self.bbox.w), int(self.bbox.h)
        sizes = [(width, height)]
        while min(width >> len(sizes), height >> len(sizes)) >= self.min_level_size:
            k = len(sizes)
            sizes.append((width >> k, height >> k))

        pixel_size = read_pixel_size_mm(self.reader.meta)
        if pixel_size is None:
            logger.warning("No Scaling in CZI metadata for %s, assuming %.2f um/px",
                           self.czi_path.name, DEFAULT_PIXEL_SIZE_MM * 1e3)
            pixel_size = (DEFAULT_PIXEL_SIZE_MM, DEFAULT_PIXEL_SIZE_MM)

        self._metadata = PyramidMetadata.from_downsampling(
            sizes,
            [(2.0 ** k, 2.0 ** k) for k in range(len(sizes))],
            pixel_size,
            physical_origin=tuple((float(self.bbox.x) * pixel_size[0],
                                   float(self.bbox.y) * pixel_size[1]) for _ in sizes),
        )
        logger.debug("CZI %s scene %d: %d virtual levels, level 0 %dx%d",
                     self.czi_path.name, self.scene, len(sizes), width, height)
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
        factor = 2 ** level
        region = (
            int(self.bbox.x) + x * factor,
            int(self.bbox.y) + y * factor,
            width * factor,
            height * factor,
        )
        try:
            data = self.reader.read_mosaic(region=region, scale_factor=1.0 / factor)
        except Exception as e:
            raise BackendFailure(f"CZI read failed for region {region}: {e}",
                                 operation="fetch_region", level=level, bounds=region) from e

        rgb = to_rgb8(data)
        if rgb.shape[:2] != (height, width):
            rgb = cv2.resize(rgb, (width, height), interpolation=cv2.INTER_AREA)
        return rgb

    def fetch_tile(self, col, row, level, image_format=None):
        raise UnsupportedOperation("CZI mosaics are not tile-addressable", operation="get_tile")

    def fetch_associated(self, kind: AssociatedImageKind, image_format=None):
        raise UnsupportedOperation(f"Associated image '{AssociatedImageKind.parse(kind).value}' "
                                   "is not available for CZI files",
                                   operation="get_associated_image")

    def close(self):
        """Release the CziFile reader."""
        self.reader = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"CziSource('{self.czi_path.name}', scene={self.scene})"
