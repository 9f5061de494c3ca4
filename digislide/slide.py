"""
DigitalSlide: the consumer-facing surface of digislide.

Usage:
    from digislide.slide import DigitalSlide
    from digislide.io import openslide_source

    openslide_source.initialize()
    slide = DigitalSlide.from_openslide("tma.svs")

    thumb = slide.get_region(0, 0, 2, 2, level=2, unit="mm")
    cores = slide.detect_cores(core_diameter=0.6, strictness=85)
    core_pixels = slide.get_core_region(cores[0].id, level=1)
    slide.save_cores("/path/to/output/tma_cores.json")
"""

from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

import numpy as np

from digislide.detection.tma import DetectionParameters, TMACore, TMACoreLocator
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import AssociatedImageKind, ImageFormat, SlideSource, Unit
from digislide.processing.coordinates import CoordinateMapper
from digislide.processing.region import ALL, RegionAccessor, Selector
from digislide.reporting.overlay import draw_tma_cores
from digislide.utils.json_utils import atomic_json_dump
from digislide.utils.logging import get_logger
from digislide.utils.schemas import CoreRegistryFile, load_core_file

logger = get_logger(__name__)


class DigitalSlide:
    """
    One multi-resolution slide: region access plus TMA core detection.

    Args:
        source: Any SlideSource implementation
        name: Display name (defaults to the source's image id or file stem)
        n_workers: Threads used by the symmetry transform during detection
    """

    def __init__(self, source: SlideSource, name: Optional[str] = None, n_workers: int = 1):
        self.source = source
        self.accessor = RegionAccessor(source)
        self.locator = TMACoreLocator(self.accessor, n_workers=n_workers)
        self.name = name or self._default_name(source)
        logger.debug("Opened %s: %d levels, level 0 %dx%d", self.name,
                     self.metadata.level_count, *self.metadata.pixel_size[0])

    @staticmethod
    def _default_name(source) -> str:
        if getattr(source, 'image_id', None):
            return str(source.image_id)
        for attr in ('path', 'czi_path'):
            if getattr(source, attr, None):
                return Path(getattr(source, attr)).stem
        return type(source).__name__

    @classmethod
    def from_tepis(cls, client, image_id: str, **kwargs) -> "DigitalSlide":
        """Slide on a TEPIS server; `client` must already be authenticated."""
        return cls(client.open(image_id), **kwargs)

    @classmethod
    def from_openslide(cls, path: Union[str, Path], mpp: Optional[tuple] = None,
                       **kwargs) -> "DigitalSlide":
        """Local slide through OpenSlide; openslide_source.initialize() must have run."""
        from digislide.io.openslide_source import OpenSlideSource
        return cls(OpenSlideSource(path, mpp=mpp), **kwargs)

    @classmethod
    def from_czi(cls, path: Union[str, Path], scene: int = 0,
                 min_level_size: Optional[int] = None, **kwargs) -> "DigitalSlide":
        """Zeiss CZI file exposed as a virtual 2x pyramid."""
        from digislide.io.czi_source import CziSource
        source_kwargs = {'scene': scene}
        if min_level_size is not None:
            source_kwargs['min_level_size'] = min_level_size
        return cls(CziSource(path, **source_kwargs), **kwargs)

    @property
    def metadata(self) -> PyramidMetadata:
        return self.accessor.metadata

    @property
    def mapper(self) -> CoordinateMapper:
        return self.accessor.mapper

    @property
    def level_count(self) -> int:
        return self.metadata.level_count

    # Region access

    def get_region(self, x, y, width, height, level: int = 0,
                   unit: Union[Unit, str] = Unit.PIXEL,
                   image_format: Optional[Union[ImageFormat, str]] = None) -> np.ndarray:
        return self.accessor.get_region(x, y, width, height, level, unit, image_format)

    def get_tile(self, col: int, row: int, level: int = 0,
                 image_format: Optional[Union[ImageFormat, str]] = None) -> np.ndarray:
        return self.accessor.get_tile(col, row, level, image_format)

    def get_associated_image(self, kind: Union[AssociatedImageKind, str],
                             image_format: Optional[Union[ImageFormat, str]] = None) -> np.ndarray:
        return self.accessor.get_associated_image(kind, image_format)

    def get_element(self, rows: Selector = ALL, cols: Selector = ALL, level=0,
                    channels: Selector = ALL) -> np.ndarray:
        return self.accessor.get_element(rows, cols, level, channels)

    def iter_blocks(self, level: int = 0, block_size: int = 1000,
                    progress: bool = True) -> Iterator[Tuple[Tuple[int, int, int, int], np.ndarray]]:
        return self.accessor.iter_blocks(level, block_size, progress)

    def select_level_for_target_area(self, viewport_width, viewport_height,
                                     target_resolution_pixels) -> int:
        return self.mapper.select_level_for_target_area(
            viewport_width, viewport_height, target_resolution_pixels)

    # TMA cores

    def detect_cores(self, params: Optional[DetectionParameters] = None,
                     **overrides) -> Tuple[TMACore, ...]:
        """
        Detect TMA cores, replacing any previous result.

        Args:
            params: Full parameter set (defaults when None)
            **overrides: Individual parameters, e.g. core_diameter=1.0

        Returns:
            Detected cores, ids 1..N, in level-0 pixels
        """
        params = params if params is not None else DetectionParameters()
        if overrides:
            params = params.replace(**overrides)
        return self.locator.detect(params)

    @property
    def tma_cores(self) -> Tuple[TMACore, ...]:
        """Cores of the last detection run (NotDetected before the first one)."""
        return self.locator.cores

    def get_core_region(self, core_id: int, level: int = 0) -> np.ndarray:
        return self.locator.get_core_region(core_id, level)

    def core_overlay(self, level: Optional[int] = None) -> np.ndarray:
        """
        A whole level with every detected core outlined and labelled.

        Args:
            level: Level to draw on (defaults to the detection level)
        """
        level = self.locator.detection_level if level is None else level
        level = self.mapper.check_level(level, "core_overlay")
        width, height = self.metadata.pixel_size[level]
        image = self.get_region(0, 0, width, height, level)
        scale = self.mapper.spacing_ratio(0, level)[0]
        return draw_tma_cores(image, self.tma_cores, scale)

    def save_cores(self, file_path: Union[str, Path]) -> Path:
        """Write the current registry to JSON (atomic). Returns the path."""
        cores = self.tma_cores
        record = CoreRegistryFile(
            slide=self.name,
            detection_level=self.locator.detection_level,
            level0_spacing_mm=list(self.metadata.physical_spacing[0]),
            parameters=self.locator.parameters.to_dict(),
            cores=[vars(core).copy() for core in cores],
        )
        file_path = Path(file_path)
        atomic_json_dump(record.model_dump(), file_path)
        logger.info("Saved %d cores to %s", len(cores), file_path)
        return file_path

    def load_cores(self, file_path: Union[str, Path]) -> Tuple[TMACore, ...]:
        """Replace the registry with one saved by save_cores."""
        record = load_core_file(file_path)
        cores = tuple(TMACore(**core.model_dump()) for core in record.cores)
        level = record.detection_level if record.detection_level is not None else 0
        self.locator.restore(DetectionParameters.from_dict(record.parameters.model_dump()),
                             cores, level)
        return cores

    def __repr__(self) -> str:
        return f"DigitalSlide('{self.name}', levels={self.level_count})"
