"""
Region, tile and element access on top of a SlideSource.

RegionAccessor normalizes every request into integer pixels of the requested
level, delegates to the source and checks what comes back. Nothing is cached:
every call is a fresh fetch.

Element addressing uses explicit selectors instead of subscripts:

    accessor.get_element(ALL, Indices([1, 5, 9]), level=2)
    accessor.get_element(Indices([1, Last()]), ALL, channels=Indices([2]))

Row, column and channel indices are 1-based and inclusive. The level is the
0-based pyramid index used everywhere else in the package.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm import tqdm

from digislide.errors import InvalidParameter, MalformedResponse, UnsupportedOperation
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import AssociatedImageKind, ImageFormat, SlideSource, Unit
from digislide.processing.coordinates import CoordinateMapper
from digislide.utils.logging import get_logger

logger = get_logger(__name__)

CHANNEL_COUNT = 3


class _AllSelector:
    """Every index along a dimension."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "ALL"


ALL = _AllSelector()


@dataclass(frozen=True)
class Last:
    """The last index of a dimension, optionally minus an offset (``Last(1)`` is end-1)."""
    offset: int = 0

    def resolve(self, last: int) -> int:
        return last - int(self.offset)


@dataclass(frozen=True)
class Indices:
    """Explicit 1-based indices; entries may be ``Last`` markers. Order and repeats are kept."""
    values: Tuple[Union[int, Last], ...]

    def __init__(self, values):
        if isinstance(values, (int, np.integer, Last)):
            values = [values]
        object.__setattr__(self, 'values', tuple(values))


Selector = Union[_AllSelector, Last, Indices, int, Sequence[int]]


def _resolve_indices(selector, last: int, name: str) -> np.ndarray:
    """Resolve a selector to a 1-based int array, given the dimension's last index."""
    if selector is ALL:
        return np.arange(1, last + 1, dtype=np.int64)
    if isinstance(selector, Last):
        values = [selector]
    elif isinstance(selector, Indices):
        values = list(selector.values)
    elif isinstance(selector, (int, np.integer)) and not isinstance(selector, bool):
        values = [selector]
    elif isinstance(selector, (list, tuple, np.ndarray)):
        values = list(selector)
    else:
        raise InvalidParameter(f"Unsupported selector {selector!r}",
                               operation="get_element", parameter=name)

    if not values:
        raise InvalidParameter("Selector is empty", operation="get_element", parameter=name)

    resolved = []
    for value in values:
        if isinstance(value, Last):
            resolved.append(value.resolve(last))
        elif isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            resolved.append(int(value))
        elif isinstance(value, float) and value.is_integer():
            resolved.append(int(value))
        else:
            raise InvalidParameter(f"Index {value!r} is not an integer",
                                   operation="get_element", parameter=name)
    return np.asarray(resolved, dtype=np.int64)


class RegionAccessor:
    """
    Uniform region/tile/element access over one slide.

    Args:
        source: Any object implementing the SlideSource protocol
        metadata: Pre-loaded metadata (loaded from the source when omitted)
    """

    def __init__(self, source: SlideSource, metadata: Optional[PyramidMetadata] = None):
        self.source = source
        self.metadata = metadata if metadata is not None else source.load_metadata()
        self.mapper = CoordinateMapper(self.metadata)

    def get_region(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        level: int = 0,
        unit: Union[Unit, str] = Unit.PIXEL,
        image_format: Optional[Union[ImageFormat, str]] = None,
    ) -> np.ndarray:
        """
        Read a rectangle of one level.

        Args:
            x, y: Top-left corner in `unit`, relative to the level
            width, height: Extent in `unit` (> 0)
            level: Pyramid level (0 = full resolution)
            unit: pixel, um or mm
            image_format: Transfer encoding hint for backends that support it

        Returns:
            (height, width, 3) uint8 RGB array, sizes in level pixels

        Raises:
            InvalidParameter: Non-positive size (before or after unit conversion)
            InvalidLevel: Level outside the pyramid
            MalformedResponse: Backend returned an array of the wrong shape
        """
        level = self.mapper.check_level(level, "get_region")
        if not (width > 0 and height > 0):
            raise InvalidParameter(
                f"Region size must be positive, got {width}x{height}",
                operation="get_region", parameter="width/height", level=level,
            )
        px, py, pw, ph = self.mapper.region_to_level_pixels(x, y, width, height, level, unit)
        if pw <= 0 or ph <= 0:
            raise InvalidParameter(
                f"Region {width}x{height} {Unit.parse(unit).value} is smaller than one pixel",
                operation="get_region", parameter="width/height", level=level,
            )

        pixels = self.source.fetch_region(px, py, pw, ph, level, Unit.PIXEL,
                                          ImageFormat.parse(image_format))
        expected = (ph, pw, CHANNEL_COUNT)
        if not isinstance(pixels, np.ndarray) or pixels.shape != expected:
            got = getattr(pixels, 'shape', type(pixels).__name__)
            raise MalformedResponse(
                f"Backend returned {got}, expected {expected}",
                operation="get_region", level=level,
                bounds=(px, py, pw, ph),
            )
        return pixels

    def get_tile(
        self,
        col: int,
        row: int,
        level: int = 0,
        image_format: Optional[Union[ImageFormat, str]] = None,
    ) -> np.ndarray:
        """
        Read one native tile.

        Raises:
            UnsupportedOperation: The level has no tile size (not a tiled format)
        """
        level = self.mapper.check_level(level, "get_tile")
        if not self.metadata.is_tiled(level):
            raise UnsupportedOperation("Not a tiled format", operation="get_tile", level=level)
        for name, value in (('col', col), ('row', row)):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
                raise InvalidParameter(f"Tile {name} must be a non-negative integer, got {value!r}",
                                       operation="get_tile", parameter=name, level=level)

        pixels = self.source.fetch_tile(int(col), int(row), level, ImageFormat.parse(image_format))
        if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] != CHANNEL_COUNT:
            raise MalformedResponse(
                f"Backend returned {getattr(pixels, 'shape', None)} for a tile",
                operation="get_tile", level=level,
            )
        return pixels

    def get_associated_image(
        self,
        kind: Union[AssociatedImageKind, str],
        image_format: Optional[Union[ImageFormat, str]] = None,
    ) -> np.ndarray:
        """Read the label, macro or thumbnail image. Backends may raise UnsupportedOperation."""
        kind = AssociatedImageKind.parse(kind)
        return self.source.fetch_associated(kind, ImageFormat.parse(image_format))

    def resolve_level(self, level) -> int:
        """Resolve a level argument (int or ``Last``) to a 0-based level index."""
        if level is ALL:
            raise InvalidParameter("Level must be explicit, not a range",
                                   operation="get_element", parameter="level")
        if isinstance(level, Last):
            level = level.resolve(self.metadata.level_count - 1)
        elif isinstance(level, Indices):
            if len(level.values) != 1:
                raise InvalidParameter("Exactly one level can be addressed",
                                       operation="get_element", parameter="level")
            return self.resolve_level(level.values[0])
        return self.mapper.check_level(level, "get_element")

    def get_element(
        self,
        rows: Selector = ALL,
        cols: Selector = ALL,
        level=0,
        channels: Selector = ALL,
    ) -> np.ndarray:
        """
        Element-style addressing: rows x cols x channels of one level.

        The bounding box of the row and column selections is fetched once with
        get_region, then the requested elements are gathered from it, so
        non-contiguous and unordered selections cost a single read.

        Args:
            rows: Row selector (1-based)
            cols: Column selector (1-based)
            level: Level index or ``Last()``; ``ALL`` is rejected
            channels: Channel selector (1-based, 1..3)

        Returns:
            (len(rows), len(cols), len(channels)) uint8 array

        Raises:
            InvalidParameter: An index outside the level or the channel range
        """
        level = self.resolve_level(level)
        width, height = self.metadata.pixel_size[level]

        row_idx = _resolve_indices(rows, height, "rows")
        col_idx = _resolve_indices(cols, width, "cols")
        ch_idx = _resolve_indices(channels, CHANNEL_COUNT, "channels")
        for name, idx, last in (("rows", row_idx, height), ("cols", col_idx, width),
                                ("channels", ch_idx, CHANNEL_COUNT)):
            if idx.min() < 1 or idx.max() > last:
                raise InvalidParameter(f"Indices for {name} must be in 1..{last}",
                                       operation="get_element", parameter=name,
                                       level=level, bounds=(1, last))

        r0, r1 = int(row_idx.min()), int(row_idx.max())
        c0, c1 = int(col_idx.min()), int(col_idx.max())
        box = self.get_region(c0 - 1, r0 - 1, c1 - c0 + 1, r1 - r0 + 1, level)
        return box[np.ix_(row_idx - r0, col_idx - c0, ch_idx - 1)]

    def block_grid(self, level: int, block_size: int) -> List[Tuple[int, int, int, int]]:
        """(x, y, width, height) of the edge-clipped blocks covering one level."""
        level = self.mapper.check_level(level, "iter_blocks")
        if isinstance(block_size, bool) or not isinstance(block_size, (int, np.integer)) \
                or block_size < 1:
            raise InvalidParameter(f"block_size must be a positive integer, got {block_size!r}",
                                   operation="iter_blocks", parameter="block_size")
        width, height = self.metadata.pixel_size[level]
        return [
            (x, y, min(block_size, width - x), min(block_size, height - y))
            for y in range(0, height, block_size)
            for x in range(0, width, block_size)
        ]

    def iter_blocks(
        self,
        level: int = 0,
        block_size: int = 1000,
        progress: bool = True,
    ) -> Iterator[Tuple[Tuple[int, int, int, int], np.ndarray]]:
        """
        Iterate over one level in non-overlapping blocks.

        Yields:
            ((x, y, width, height), pixels) with blocks clipped at the right and
            bottom edges
        """
        grid = self.block_grid(level, block_size)
        logger.debug("Iterating level %d in %d blocks of %d px", level, len(grid), block_size)
        iterator = tqdm(grid, desc=f"Level {level} blocks") if progress else grid
        for x, y, w, h in iterator:
            yield (x, y, w, h), self.get_region(x, y, w, h, level)
