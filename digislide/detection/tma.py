"""
Tissue microarray (TMA) core detection.

Pipeline (one call to TMACoreLocator.detect):

    1. Pick the detection level: the coarsest level on which a core is still
       wider than `target_core_diameter_pixels` (horizontal spacing only).
    2. Read that whole level and average the RGB channels to grayscale.
    3. Fast radial symmetry transform over radii round(d)/2 +- tolerance.
    4. Non-maxima suppression with radius round(d) and a percentile threshold
       over the positive symmetry values.
    5. Rescale peak positions to level-0 pixels. Every core gets the same
       nominal level-0 radius.

The registry is rebuilt from scratch on every run and swapped in only once
complete, so readers never see a partial result.
"""

import dataclasses
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from digislide.detection.frst import frst, round_half_away
from digislide.detection.nonmax import nonmaxsupp
from digislide.errors import InvalidParameter, NotDetected
from digislide.processing.region import RegionAccessor
from digislide.utils.config import DETECTION_DEFAULTS
from digislide.utils.logging import ProcessingTimer, get_logger, log_parameters

logger = get_logger(__name__)


@dataclass(frozen=True)
class DetectionParameters:
    """
    Parameters of one TMA detection run.

    Attributes:
        core_diameter: Physical core diameter in mm
        radius_tolerance: Radius tolerance in percent of the diameter
        strictness: Percentile (0-100) of positive symmetry values used as the
            peak threshold
        target_core_diameter_pixels: Minimum core diameter in pixels on the
            detection level (only used to choose that level)
    """
    core_diameter: float = DETECTION_DEFAULTS["core_diameter"]
    radius_tolerance: float = DETECTION_DEFAULTS["radius_tolerance"]
    strictness: float = DETECTION_DEFAULTS["strictness"]
    target_core_diameter_pixels: float = DETECTION_DEFAULTS["target_core_diameter_pixels"]

    def __post_init__(self):
        for name in ('core_diameter', 'target_core_diameter_pixels'):
            value = getattr(self, name)
            if not _is_real(value) or not value > 0:
                raise InvalidParameter(f"{name} must be positive, got {value!r}",
                                       operation="detect_cores", parameter=name)
        for name in ('radius_tolerance', 'strictness'):
            value = getattr(self, name)
            if not _is_real(value) or not 0 <= value <= 100:
                raise InvalidParameter(f"{name} must be a percentage in [0, 100], got {value!r}",
                                       operation="detect_cores", parameter=name)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "DetectionParameters":
        """Build from a dict (e.g. the "detection" config section); unknown keys raise."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise InvalidParameter(f"Unknown detection parameters: {sorted(unknown)}",
                                   operation="detect_cores", parameter=sorted(unknown)[0])
        return cls(**values)

    def replace(self, **overrides) -> "DetectionParameters":
        """Copy with some fields overridden (validated again)."""
        return self.from_dict({**self.to_dict(), **overrides})

    def to_dict(self) -> Dict[str, float]:
        return dataclasses.asdict(self)


def _is_real(value) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool) \
        and math.isfinite(value)


@dataclass(frozen=True)
class TMACore:
    """One detected core; centre and radius in level-0 pixels. IDs start at 1."""
    id: int
    center_x: float
    center_y: float
    radius: float


def radius_range(radius: float, tolerance: float) -> np.ndarray:
    """Radii from radius - tolerance to radius + tolerance in unit steps (inclusive)."""
    count = int(math.floor((2 * tolerance) + 1e-9)) + 1
    return radius - tolerance + np.arange(count, dtype=np.float64)


def positive_percentile(strength: np.ndarray, percentile: float) -> Optional[float]:
    """Midpoint percentile of the strictly positive values; None when there are none."""
    positive = strength[strength > 0]
    if positive.size == 0:
        return None
    return float(np.percentile(positive, percentile, method='hazen'))


class TMACoreLocator:
    """
    Detects TMA cores on a slide and serves per-core regions.

    Undetected until the first detect(); each detect() replaces the previous
    parameters and registry as a whole.
    """

    def __init__(self, accessor: RegionAccessor, n_workers: int = 1):
        self.accessor = accessor
        self.n_workers = n_workers
        # (parameters, cores, detection level), replaced in one assignment
        self._state: Optional[Tuple[DetectionParameters, Tuple[TMACore, ...], int]] = None

    @property
    def is_detected(self) -> bool:
        return self._state is not None

    @property
    def parameters(self) -> DetectionParameters:
        return self._require_state("parameters")[0]

    @property
    def cores(self) -> Tuple[TMACore, ...]:
        return self._require_state("cores")[1]

    @property
    def detection_level(self) -> int:
        return self._require_state("detection_level")[2]

    def _require_state(self, operation: str):
        state = self._state
        if state is None:
            raise NotDetected(
                "No TMA cores. Run core detection first",
                operation=operation,
            )
        return state

    def select_detection_level(self, params: DetectionParameters) -> int:
        """Last level where the core is wider than the target pixel count, else the coarsest."""
        return self.accessor.mapper.select_level_for_physical_feature_size(
            params.core_diameter, params.target_core_diameter_pixels,
        )

    def detect(self, params: Optional[DetectionParameters] = None) -> Tuple[TMACore, ...]:
        """
        Run core detection and replace the registry.

        Args:
            params: Detection parameters (defaults when None)

        Returns:
            Tuple of TMACore sorted by detection order (column-major scan of
            the detection level), ids 1..N
        """
        params = params if params is not None else DetectionParameters()
        mapper = self.accessor.mapper
        metadata = self.accessor.metadata

        log_parameters(logger, params.to_dict(), "TMA core detection parameters")
        with ProcessingTimer(logger, "TMA core detection"):
            # Horizontal spacing only
            core_pixels = mapper.feature_size_in_pixels(params.core_diameter)
            level = self.select_detection_level(params)
            width, height = metadata.pixel_size[level]
            logger.info("Detection level %d (%dx%d px, core diameter %.2f px)",
                        level, width, height, core_pixels[level])

            pixels = self.accessor.get_region(0, 0, width, height, level)
            gray = pixels.astype(np.float64).mean(axis=2)

            diameter = float(core_pixels[level])
            radius = float(round_half_away(np.float64(diameter))) / 2
            tolerance = float(round_half_away(
                np.float64(diameter * params.radius_tolerance / 100))) / 2
            radii = radius_range(radius, tolerance)

            symmetry = frst(gray, radii, n_workers=self.n_workers)
            threshold = positive_percentile(symmetry, params.strictness)
            if threshold is None:
                logger.warning("Symmetry map has no positive values, no cores detected")
                peaks = np.empty((0, 2), dtype=np.int64)
            else:
                peaks = nonmaxsupp(symmetry, int(round(2 * radius)), threshold)

            ratio_x, ratio_y = mapper.spacing_ratio(level, 0)
            core_radius = float(core_pixels[0]) / 2
            cores = tuple(
                TMACore(id=i, center_x=float(col) * ratio_x,
                        center_y=float(row) * ratio_y, radius=core_radius)
                for i, (row, col) in enumerate(peaks, start=1)
            )

        self._state = (params, cores, level)
        logger.info("Detected %d TMA cores", len(cores))
        return cores

    def restore(self, params: DetectionParameters, cores, level: int) -> None:
        """Install a registry produced by an earlier run (e.g. loaded from disk)."""
        level = self.accessor.mapper.check_level(level, "restore")
        cores = tuple(cores)
        if [core.id for core in cores] != list(range(1, len(cores) + 1)):
            raise InvalidParameter("Core ids must run 1..N in order",
                                   operation="restore", parameter="cores")
        self._state = (params, cores, level)
        logger.info("Restored %d TMA cores", len(cores))

    def get_core(self, core_id: int) -> TMACore:
        """Registry entry for one id."""
        cores = self._require_state("get_core_region")[1]
        if isinstance(core_id, bool) or not isinstance(core_id, (int, np.integer)) \
                or not 1 <= core_id <= len(cores):
            raise InvalidParameter(
                f"Core id {core_id!r} out of range",
                operation="get_core_region", parameter="core_id", bounds=(1, len(cores)),
            )
        return cores[int(core_id) - 1]

    def core_bounds(self, core_id: int, level: int = 0) -> Tuple[int, int, int, int]:
        """
        Square (x, y, side, side) around one core in pixels of `level`.

        The centre x and the radius scale with the horizontal spacing ratio,
        the centre y with the vertical one.
        """
        core = self.get_core(core_id)
        mapper = self.accessor.mapper
        level = mapper.check_level(level, "get_core_region")
        ratio_x, ratio_y = mapper.spacing_ratio(0, level)
        cx = core.center_x * ratio_x
        cy = core.center_y * ratio_y
        r = core.radius * ratio_x
        side = max(1, int(round_half_away(np.float64(2 * r))))
        return int(math.floor(cx - r)), int(math.floor(cy - r)), side, side

    def get_core_region(self, core_id: int, level: int = 0) -> np.ndarray:
        """
        Pixels of the square bounding one core.

        Raises:
            NotDetected: Before any detection run
            InvalidParameter: Unknown core id
            InvalidLevel: Level outside the pyramid
        """
        x, y, w, h = self.core_bounds(core_id, level)
        return self.accessor.get_region(x, y, w, h, level)
