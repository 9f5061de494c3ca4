"""
Tests for the fast radial symmetry transform.
"""

import numpy as np
import pytest

from digislide.detection.frst import (
    frst,
    gaussian_blur,
    odd_kernel_size,
    round_half_away,
    sobel_gradients,
)
from digislide.errors import InvalidInput, InvalidParameter


def dark_disk(size=101, center=(50, 50), radius=10, background=200.0, foreground=0.0):
    yy, xx = np.mgrid[:size, :size]
    image = np.full((size, size), background)
    image[(xx - center[0]) ** 2 + (yy - center[1]) ** 2 <= radius ** 2] = foreground
    return image


class TestHelpers:

    def test_round_half_away(self):
        """Test that ties round away from zero in both directions."""
        values = np.array([0.5, 1.5, 2.5, -0.5, -2.5, 0.49, -1.2])
        np.testing.assert_array_equal(round_half_away(values), [1, 2, 3, -1, -3, 0, -1])

    @pytest.mark.parametrize("sigma,expected", [(0.25, 1), (1.0, 5), (1.9, 9), (2.0, 9)])
    def test_odd_kernel_size(self, sigma, expected):
        """Test that the kernel size is the smallest odd integer >= ceil(4 * sigma)."""
        assert odd_kernel_size(sigma) == expected

    def test_blur_zero_sigma_is_identity(self):
        """Test that sigma 0 returns the input unchanged."""
        image = np.random.default_rng(0).random((8, 9))
        assert gaussian_blur(image, 0) is image

    def test_blur_keeps_constant_image(self):
        """Test that the normalized kernel preserves a constant image."""
        image = np.full((12, 10), 3.0)
        np.testing.assert_allclose(gaussian_blur(image, 1.5), image)

    def test_sobel_on_ramp(self):
        """Test that intensity falling to the right gives a negative horizontal gradient."""
        image = np.tile(np.arange(10, 0, -1, dtype=np.float64), (6, 1))
        gm, dx, dy = sobel_gradients(image)
        assert np.all(dx[:, 1:-1] < 0)
        np.testing.assert_allclose(dy[1:-1, :], 0)
        np.testing.assert_allclose(gm[:, 1:-1], np.abs(dx[:, 1:-1]))


class TestFrst:

    def test_same_shape_float(self):
        """Test that the symmetry map matches the input shape as float64."""
        out = frst(dark_disk(), [10])
        assert out.shape == (101, 101)
        assert out.dtype == np.float64

    def test_peak_at_dark_disk_centre(self):
        """Test that the strongest response lies at the centre of a dark disk."""
        out = frst(dark_disk(), [9, 10, 11])
        row, col = np.unravel_index(np.argmax(out), out.shape)
        assert abs(row - 50) <= 2
        assert abs(col - 50) <= 2

    def test_off_centre_disk(self):
        """Test that an off-centre disk is located in (row, col) order."""
        out = frst(dark_disk(size=120, center=(80, 35), radius=12), [12])
        row, col = np.unravel_index(np.argmax(out), out.shape)
        assert abs(col - 80) <= 2
        assert abs(row - 35) <= 2

    def test_bright_disk_centre_is_weak(self):
        """Test that only dark blobs attract votes."""
        bright = dark_disk(background=0.0, foreground=200.0)
        dark = dark_disk()
        assert frst(bright, [10])[50, 50] < frst(dark, [10])[50, 50]

    def test_flat_image_is_zero(self):
        """Test that an image without gradients gives an all-zero map."""
        out = frst(np.full((30, 40), 100.0), [3, 4])
        np.testing.assert_array_equal(out, 0)

    def test_zero_radius_contributes_nothing(self):
        """Test that radius 0 is weighted to zero."""
        np.testing.assert_array_equal(frst(dark_disk(), [0]), 0)

    def test_high_beta_suppresses_votes(self):
        """Test that no pixel votes when beta exceeds every gradient magnitude."""
        out = frst(dark_disk(), [10], beta=1e9)
        np.testing.assert_array_equal(out, 0)

    def test_border_clearing_keeps_last_column(self):
        """Test that borders clear rows 0/-1 and columns 0/-2 but keep column -1."""
        # Darker to the right: every pixel votes one column right, the last
        # column also receives its own clipped votes. Radius 1 has no blur.
        image = np.tile(np.linspace(200.0, 20.0, 10), (8, 1))
        out = frst(image, [1])

        np.testing.assert_array_equal(out[0, :], 0)
        np.testing.assert_array_equal(out[-1, :], 0)
        np.testing.assert_array_equal(out[:, 0], 0)
        np.testing.assert_array_equal(out[:, -2], 0)
        np.testing.assert_allclose(out[1:-1, -1], 0.2)
        np.testing.assert_allclose(out[1:-1, 1:-2], 0.1)

    def test_integer_input(self):
        """Test that integer images give the same peak as float images."""
        out = frst(dark_disk().astype(np.uint8), 10)
        assert np.argmax(out) == np.argmax(frst(dark_disk(), 10))

    def test_threads_match_serial(self):
        """Test that processing radii in threads gives the serial result."""
        image = dark_disk()
        serial = frst(image, [8, 9, 10, 11], n_workers=1)
        threaded = frst(image, [8, 9, 10, 11], n_workers=4)
        np.testing.assert_allclose(threaded, serial)

    def test_per_radius_kappa(self):
        """Test that a per-radius kappa list equal to the default changes nothing."""
        image = dark_disk()
        np.testing.assert_allclose(frst(image, [9, 10], kappa=[10, 10]), frst(image, [9, 10]))


class TestValidation:

    def test_color_image_rejected(self):
        """Test that a 3-channel image raises InvalidInput."""
        with pytest.raises(InvalidInput):
            frst(np.zeros((10, 10, 3)), [2])

    def test_bool_image_rejected(self):
        """Test that boolean images raise InvalidInput."""
        with pytest.raises(InvalidInput):
            frst(np.zeros((10, 10), dtype=bool), [2])

    def test_empty_image_rejected(self):
        """Test that an empty image raises InvalidInput."""
        with pytest.raises(InvalidInput):
            frst(np.zeros((0, 10)), [2])

    @pytest.mark.parametrize("radii", [[], [-1], [np.nan]])
    def test_bad_radii(self, radii):
        """Test that empty, negative or NaN radii raise InvalidParameter."""
        with pytest.raises(InvalidParameter):
            frst(np.zeros((10, 10)), radii)

    def test_kappa_length_mismatch(self):
        """Test that kappa must have one entry per radius."""
        with pytest.raises(InvalidParameter):
            frst(np.zeros((10, 10)), [2, 3], kappa=[1, 2, 3])

    def test_non_positive_kappa(self):
        """Test that kappa 0 raises InvalidParameter."""
        with pytest.raises(InvalidParameter):
            frst(np.zeros((10, 10)), [2], kappa=0)
