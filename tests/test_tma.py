"""
Tests for TMA core detection and the core registry.
"""

import numpy as np
import pytest

from conftest import FakeSlideSource
from digislide.detection.tma import (
    DetectionParameters,
    TMACore,
    TMACoreLocator,
    positive_percentile,
    radius_range,
)
from digislide.errors import InvalidLevel, InvalidParameter, NotDetected
from digislide.io.metadata import PyramidMetadata
from digislide.processing.region import RegionAccessor


@pytest.fixture
def tma_locator(tma_source):
    return TMACoreLocator(RegionAccessor(tma_source))


def nearest_distance(point, candidates):
    return min(np.hypot(point[0] - x, point[1] - y) for x, y in candidates)


class TestDetectionParameters:

    def test_defaults(self):
        """Test the default detection parameters."""
        params = DetectionParameters()
        assert params.core_diameter == pytest.approx(0.6)
        assert 0 <= params.strictness <= 100

    @pytest.mark.parametrize("overrides", [
        {"core_diameter": 0},
        {"core_diameter": -1.0},
        {"target_core_diameter_pixels": 0},
        {"strictness": 101},
        {"radius_tolerance": -5},
        {"strictness": True},
        {"core_diameter": float('inf')},
        {"core_diameter": "0.6"},
    ])
    def test_invalid(self, overrides):
        """Test that invalid parameter values raise InvalidParameter."""
        with pytest.raises(InvalidParameter):
            DetectionParameters(**overrides)

    def test_from_dict_rejects_unknown_keys(self):
        """Test that unknown keys are rejected."""
        with pytest.raises(InvalidParameter):
            DetectionParameters.from_dict({"core_diameter": 1.0, "diameter": 2})

    def test_replace_revalidates(self):
        """Test that replace validates the new values."""
        params = DetectionParameters().replace(core_diameter=1.2)
        assert params.core_diameter == 1.2
        with pytest.raises(InvalidParameter):
            params.replace(strictness=-1)

    def test_to_dict_round_trip(self):
        """Test that parameters survive to_dict and from_dict."""
        params = DetectionParameters(core_diameter=1.0, strictness=50)
        assert DetectionParameters.from_dict(params.to_dict()) == params


class TestHelpers:

    def test_radius_range(self):
        """Test radii in unit steps around the nominal radius."""
        np.testing.assert_allclose(radius_range(7.5, 1), [6.5, 7.5, 8.5])
        np.testing.assert_allclose(radius_range(3, 0), [3])
        np.testing.assert_allclose(radius_range(5, 0.5), [4.5, 5.5])

    def test_positive_percentile(self):
        """Test that the percentile only counts positive values."""
        strength = np.array([[0, -1, 1], [2, 3, 4]], dtype=float)
        assert positive_percentile(strength, 50) == pytest.approx(2.5)
        assert positive_percentile(strength, 100) == pytest.approx(4)

    def test_positive_percentile_none(self):
        """Test that a map without positive values gives None."""
        assert positive_percentile(np.zeros((3, 3)), 90) is None


class TestDetect:

    def test_coarsest_level_when_none_qualifies(self, three_level_metadata):
        """Test that detection falls back to the coarsest level."""
        # core diameter in px per level is 4, 1, 0.25: none exceeds 20
        source = FakeSlideSource(three_level_metadata)
        locator = TMACoreLocator(RegionAccessor(source))
        params = DetectionParameters(core_diameter=1.0, target_core_diameter_pixels=20)

        cores = locator.detect(params)

        assert locator.detection_level == 2
        assert source.calls[-1][:6] == ('region', 0, 0, 250, 250, 2)
        assert cores == ()
        assert locator.cores == ()

    def test_finds_synthetic_cores(self, tma_locator, tma_centers_level0):
        """Test that every synthetic core is found near its centre."""
        params = DetectionParameters(core_diameter=0.6, target_core_diameter_pixels=10)
        cores = tma_locator.detect(params)

        assert tma_locator.detection_level == 1
        assert len(cores) >= 9
        assert [core.id for core in cores] == list(range(1, len(cores) + 1))
        detected = [(core.center_x, core.center_y) for core in cores]
        for center in tma_centers_level0:
            assert nearest_distance(center, detected) <= 12
        for point in detected:
            assert nearest_distance(point, tma_centers_level0) <= 12

    def test_nominal_level0_radius(self, tma_locator):
        """Test that every core gets the nominal level-0 radius."""
        cores = tma_locator.detect(DetectionParameters(core_diameter=0.6,
                                                       target_core_diameter_pixels=10))
        # 0.6 mm at 0.01 mm/px
        assert all(core.radius == pytest.approx(30.0) for core in cores)

    def test_column_major_order(self, tma_locator):
        """Test that core ids follow column-major order."""
        cores = tma_locator.detect(DetectionParameters(core_diameter=0.6,
                                                       target_core_diameter_pixels=10))
        keys = [(round(core.center_x), round(core.center_y)) for core in cores]
        assert keys == sorted(keys)

    def test_threads_give_same_cores(self, tma_source):
        """Test that threaded detection finds the same cores."""
        params = DetectionParameters(core_diameter=0.6, target_core_diameter_pixels=10)
        serial = TMACoreLocator(RegionAccessor(tma_source)).detect(params)
        threaded = TMACoreLocator(RegionAccessor(tma_source), n_workers=3).detect(params)
        assert [(c.center_x, c.center_y) for c in threaded] == \
            [(c.center_x, c.center_y) for c in serial]

    def test_parameters_recorded(self, tma_locator):
        """Test that the detection parameters are kept with the registry."""
        params = DetectionParameters(core_diameter=0.6, target_core_diameter_pixels=10)
        tma_locator.detect(params)
        assert tma_locator.parameters == params

    def test_anisotropic_spacing_uses_horizontal(self, tma_source):
        """Test that the detection level and core radius come from horizontal spacing only."""
        # Horizontally a 0.6 mm core is 60 px and 15 px, vertically 15 px and 3.75 px
        metadata = PyramidMetadata(
            level_count=2,
            pixel_size=[(2000, 2000), (500, 500)],
            physical_spacing=[(0.01, 0.04), (0.04, 0.16)],
        )
        source = FakeSlideSource(metadata, tma_source.images)
        locator = TMACoreLocator(RegionAccessor(source))

        cores = locator.detect(DetectionParameters(core_diameter=0.6,
                                                   target_core_diameter_pixels=10))

        assert locator.detection_level == 1
        assert source.calls[-1][:6] == ('region', 0, 0, 500, 500, 1)
        assert len(cores) >= 9
        assert all(core.radius == pytest.approx(0.6 / 0.01 / 2) for core in cores)


class TestRegistry:

    def test_not_detected(self, tma_locator):
        """Test that registry access before detection raises NotDetected."""
        assert not tma_locator.is_detected
        with pytest.raises(NotDetected):
            tma_locator.cores
        with pytest.raises(NotDetected):
            tma_locator.get_core_region(1)

    def test_redetect_replaces_registry(self, tma_locator):
        """Test that a new detection replaces the registry."""
        params = DetectionParameters(core_diameter=0.6, target_core_diameter_pixels=10)
        assert len(tma_locator.detect(params)) >= 9
        tma_locator.get_core_region(1)

        # The threshold equals the maximum, so nothing is strictly above it
        assert tma_locator.detect(params.replace(strictness=100)) == ()
        assert tma_locator.parameters.strictness == 100
        with pytest.raises(InvalidParameter):
            tma_locator.get_core_region(1)

    def test_core_bounds(self, tma_locator):
        """Test core bounds on level 0 and level 1."""
        tma_locator.restore(DetectionParameters(), [TMACore(1, 400.0, 1000.0, 30.0)], 1)
        assert tma_locator.core_bounds(1, level=0) == (370, 970, 60, 60)
        # level 1 is 4x coarser: centre (100, 250), radius 7.5
        assert tma_locator.core_bounds(1, level=1) == (92, 242, 15, 15)

    def test_core_region_shape(self, tma_locator):
        """Test that the core region is centred on the core."""
        tma_locator.restore(DetectionParameters(), [TMACore(1, 400.0, 1000.0, 30.0)], 1)
        region = tma_locator.get_core_region(1, level=1)
        assert region.shape == (15, 15, 3)
        # centre of a synthetic core is dark
        assert region[7, 7].mean() < 100

    def test_minimum_side_is_one(self, tma_locator):
        """Test that a zero-radius core still gives one pixel."""
        tma_locator.restore(DetectionParameters(), [TMACore(1, 10.0, 10.0, 0.0)], 0)
        assert tma_locator.core_bounds(1, level=1)[2:] == (1, 1)

    @pytest.mark.parametrize("core_id", [0, 2, -1, 1.0, True])
    def test_bad_core_id(self, tma_locator, core_id):
        """Test that unknown or non-integer ids raise InvalidParameter."""
        tma_locator.restore(DetectionParameters(), [TMACore(1, 400.0, 1000.0, 30.0)], 1)
        with pytest.raises(InvalidParameter):
            tma_locator.get_core_region(core_id)

    def test_bad_level(self, tma_locator):
        """Test that a bad level raises InvalidLevel."""
        tma_locator.restore(DetectionParameters(), [TMACore(1, 400.0, 1000.0, 30.0)], 1)
        with pytest.raises(InvalidLevel):
            tma_locator.get_core_region(1, level=2)

    def test_restore_rejects_bad_ids(self, tma_locator):
        """Test that restore requires ids 1..N."""
        with pytest.raises(InvalidParameter):
            tma_locator.restore(DetectionParameters(), [TMACore(2, 1.0, 1.0, 1.0)], 0)
