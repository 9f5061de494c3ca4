"""
Pytest fixtures for digislide tests.

Provides an in-memory SlideSource, pyramid metadata and synthetic TMA images.
"""

import shutil
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from digislide.errors import UnsupportedOperation
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import AssociatedImageKind, Unit, region_to_pixels


class FakeSlideSource:
    """
    In-memory SlideSource.

    Levels without an image return white pixels of the requested size. Reads
    outside an image are padded with white. Every call is recorded in `calls`.
    """

    def __init__(self, metadata, images=None, associated=None):
        self.metadata = metadata
        self.images = images or {}
        self.associated = associated or {}
        self.calls = []
        self.metadata_loads = 0

    def load_metadata(self):
        self.metadata_loads += 1
        return self.metadata

    def fetch_region(self, x, y, width, height, level, unit=Unit.PIXEL, image_format=None):
        self.calls.append(('region', x, y, width, height, level, unit, image_format))
        x, y, width, height = region_to_pixels(x, y, width, height,
                                               self.metadata.physical_spacing[level], unit)
        out = np.full((height, width, 3), 255, dtype=np.uint8)
        image = self.images.get(level)
        if image is None:
            return out
        img_h, img_w = image.shape[:2]
        x0, y0 = max(x, 0), max(y, 0)
        x1, y1 = min(x + width, img_w), min(y + height, img_h)
        if x1 > x0 and y1 > y0:
            out[y0 - y:y1 - y, x0 - x:x1 - x] = image[y0:y1, x0:x1, :3]
        return out

    def fetch_tile(self, col, row, level, image_format=None):
        self.calls.append(('tile', col, row, level, image_format))
        tw, th = self.metadata.tile_size[level]
        return self.fetch_region(col * tw, row * th, tw, th, level)

    def fetch_associated(self, kind, image_format=None):
        self.calls.append(('associated', kind, image_format))
        kind = AssociatedImageKind.parse(kind)
        if kind.value not in self.associated:
            raise UnsupportedOperation(f"No {kind.value} image", operation="get_associated_image")
        return self.associated[kind.value]


def draw_dark_disks(height, width, centers, radius, background=230, foreground=60):
    """RGB image with dark disks at (x, y) centers on a bright background."""
    image = np.full((height, width, 3), background, dtype=np.uint8)
    yy, xx = np.ogrid[:height, :width]
    for cx, cy in centers:
        mask = (xx - cx) ** 2 + (yy - cy) ** 2 <= radius ** 2
        image[mask] = foreground
    return image


@pytest.fixture
def three_level_metadata():
    """
    Three levels, 4x downsampling per step.

    spacing (mm/px): 0.25, 1.0, 4.0; sizes: 4000, 1000, 250 square
    """
    return PyramidMetadata(
        level_count=3,
        pixel_size=[(4000, 4000), (1000, 1000), (250, 250)],
        physical_spacing=[(0.25, 0.25), (1.0, 1.0), (4.0, 4.0)],
    )


@pytest.fixture
def small_pyramid():
    """
    Two-level pyramid with position-coded pixels.

    Level 0 is 64x48, level 1 is 32x24. Pixel value at (row, col, ch) is
    (row * 7 + col * 3 + ch) % 256 so gathered elements can be checked exactly.
    Level 0 is tiled with 16x16 tiles.
    """
    metadata = PyramidMetadata(
        level_count=2,
        pixel_size=[(64, 48), (32, 24)],
        physical_spacing=[(0.001, 0.001), (0.002, 0.002)],
        tile_size=[(16, 16), None],
    )
    images = {}
    for level, (w, h) in enumerate(metadata.pixel_size):
        rr, cc, ch = np.meshgrid(np.arange(h), np.arange(w), np.arange(3), indexing='ij')
        images[level] = ((rr * 7 + cc * 3 + ch + level) % 256).astype(np.uint8)
    label = np.zeros((10, 20, 3), dtype=np.uint8)
    return FakeSlideSource(metadata, images, associated={'label': label})


# Synthetic TMA: 3x3 grid of cores, 15 px wide on level 1, 60 px on level 0
TMA_GRID = [100, 250, 400]
TMA_LEVEL1_RADIUS = 7.5


@pytest.fixture
def tma_source():
    """
    Two-level TMA slide: level 0 2000x2000 at 0.01 mm/px, level 1 500x500 at 0.04 mm/px.

    A 0.6 mm core is 60 px on level 0 and 15 px on level 1.
    """
    metadata = PyramidMetadata(
        level_count=2,
        pixel_size=[(2000, 2000), (500, 500)],
        physical_spacing=[(0.01, 0.01), (0.04, 0.04)],
    )
    centers = [(x, y) for y in TMA_GRID for x in TMA_GRID]
    level1 = draw_dark_disks(500, 500, centers, TMA_LEVEL1_RADIUS)
    level0 = np.repeat(np.repeat(level1, 4, axis=0), 4, axis=1)
    return FakeSlideSource(metadata, {0: level0, 1: level1})


@pytest.fixture
def tma_centers_level0():
    """True core centres (x, y) in level-0 pixels."""
    return [(x * 4, y * 4) for y in TMA_GRID for x in TMA_GRID]


@pytest.fixture
def temp_output_dir():
    """
    Temporary directory for test outputs.

    Yields:
        Path: Path to temporary directory
    """
    temp_dir = tempfile.mkdtemp(prefix="digislide_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)
