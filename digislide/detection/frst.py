"""
Fast radial symmetry transform (dark orientation only).

Highlights the centres of dark, roughly circular blobs: every pixel with a
strong enough gradient votes for the point `radius` pixels away in the
direction of decreasing intensity. Votes are saturated, normalized, smoothed
and summed over the candidate radii.

Reference: Loy & Zelinsky, "Fast radial symmetry for detecting points of
interest", IEEE TPAMI 2003.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence, Union

import cv2
import numpy as np
from scipy import ndimage

from digislide.errors import InvalidInput, InvalidParameter
from digislide.utils.logging import get_logger

logger = get_logger(__name__)

# Horizontal edge operator; its transpose gives the vertical gradient
SOBEL_KERNEL = np.array([[1, 0, -1],
                         [2, 0, -2],
                         [1, 0, -1]], dtype=np.float64)

DEFAULT_KAPPA = 10.0


def round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to nearest integer, ties away from zero (np.round rounds ties to even)."""
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


def odd_kernel_size(sigma: float) -> int:
    """Smallest odd integer >= ceil(4 * sigma)."""
    size = int(math.ceil(4.0 * sigma))
    if size % 2 == 0:
        size += 1
    return size


def sobel_gradients(image: np.ndarray):
    """
    Gradient components and magnitude with symmetric border handling.

    Returns:
        (magnitude, dx, dy) float64 arrays
    """
    dx = ndimage.convolve(image, SOBEL_KERNEL, mode='reflect')
    dy = ndimage.convolve(image, SOBEL_KERNEL.T, mode='reflect')
    return np.sqrt(dx ** 2 + dy ** 2), dx, dy


def gaussian_blur(image: np.ndarray, sigma: float) -> np.ndarray:
    """Normalized Gaussian smoothing with symmetric borders; identity for sigma == 0."""
    if sigma <= 0:
        return image
    kernel = cv2.getGaussianKernel(odd_kernel_size(sigma), sigma, cv2.CV_64F)
    return cv2.sepFilter2D(image, cv2.CV_64F, kernel, kernel,
                           borderType=cv2.BORDER_REFLECT)


def _validate_image(image) -> np.ndarray:
    arr = np.asarray(image)
    if arr.ndim != 2:
        raise InvalidInput(f"Expected a 2D grayscale image, got shape {arr.shape}",
                           operation="frst", parameter="image")
    if arr.dtype == bool or not np.issubdtype(arr.dtype, np.number) \
            or np.issubdtype(arr.dtype, np.complexfloating):
        raise InvalidInput(f"Expected a real numeric image, got dtype {arr.dtype}",
                           operation="frst", parameter="image")
    if arr.size == 0:
        raise InvalidInput("Image is empty", operation="frst", parameter="image")
    return arr.astype(np.float64)


def _validate_radii(radii) -> np.ndarray:
    radii = np.atleast_1d(np.asarray(radii, dtype=np.float64)).ravel()
    if radii.size == 0:
        raise InvalidParameter("radii must not be empty", operation="frst", parameter="radii")
    if not np.all(np.isfinite(radii)) or np.any(radii < 0):
        raise InvalidParameter(f"radii must be finite and non-negative, got {radii.tolist()}",
                               operation="frst", parameter="radii")
    return radii


def _validate_kappa(kappa, n_radii: int) -> np.ndarray:
    if kappa is None:
        return np.full(n_radii, DEFAULT_KAPPA)
    kappa = np.atleast_1d(np.asarray(kappa, dtype=np.float64)).ravel()
    if kappa.size == 1:
        kappa = np.full(n_radii, kappa[0])
    if kappa.size != n_radii:
        raise InvalidParameter(
            f"kappa has {kappa.size} entries for {n_radii} radii",
            operation="frst", parameter="kappa",
        )
    if np.any(kappa <= 0):
        raise InvalidParameter("kappa must be positive", operation="frst", parameter="kappa")
    return kappa


def _radius_response(
    radius: float,
    kappa: float,
    alpha: float,
    votes: np.ndarray,
    cols_grid: np.ndarray,
    rows_grid: np.ndarray,
    dx: np.ndarray,
    dy: np.ndarray,
) -> np.ndarray:
    """Smoothed, radius-weighted symmetry contribution of one radius."""
    rows, cols = dx.shape

    # Affected pixels lie against the gradient, i.e. towards darker values
    px = np.clip(cols_grid - round_half_away(radius * dx).astype(np.int64), 0, cols - 1)
    py = np.clip(rows_grid - round_half_away(radius * dy).astype(np.int64), 0, rows - 1)

    orientation = np.bincount((py * cols + px).ravel(), weights=votes,
                              minlength=rows * cols).reshape(rows, cols)
    np.minimum(orientation, kappa, out=orientation)
    response = (orientation / kappa) ** alpha

    # Border clearing keeps the second-to-last column, not the last one
    response[0, :] = 0
    response[-1, :] = 0
    response[:, 0] = 0
    if cols >= 2:
        response[:, -2] = 0

    return radius * gaussian_blur(response, 0.25 * radius)


def frst(
    image: np.ndarray,
    radii: Union[float, Sequence[float], np.ndarray],
    alpha: float = 1.0,
    beta: Optional[float] = None,
    kappa: Optional[Union[float, Sequence[float]]] = None,
    n_workers: int = 1,
) -> np.ndarray:
    """
    Dark orientation-only fast radial symmetry transform.

    Args:
        image: 2D grayscale intensity image
        radii: Candidate radii in pixels (non-empty, non-negative)
        alpha: Radial strictness exponent
        beta: Gradient magnitude threshold; pixels with magnitude <= beta do
            not vote (default: max(image) / 5)
        kappa: Saturation constant, scalar or one per radius (default: 10)
        n_workers: Threads used to process radii concurrently; the sum is
            always taken in radius order

    Returns:
        float64 symmetry map with the same shape as `image`; high values mark
        centres of dark circular blobs

    Raises:
        InvalidInput: Image is not a 2D real numeric array
        InvalidParameter: Empty or negative radii, bad kappa
    """
    img = _validate_image(image)
    radii = _validate_radii(radii)
    kappa = _validate_kappa(kappa, radii.size)
    if beta is None:
        beta = float(img.max()) / 5.0

    gm, dx, dy = sobel_gradients(img)
    gm = gm + np.finfo(np.float64).eps
    dx = dx / gm
    dy = dy / gm
    votes = (gm > beta).astype(np.float64).ravel()

    rows, cols = img.shape
    rows_grid, cols_grid = np.mgrid[0:rows, 0:cols]

    def contribution(i):
        return _radius_response(radii[i], kappa[i], alpha, votes,
                                cols_grid, rows_grid, dx, dy)

    logger.debug("FRST on %dx%d image, radii=%s, beta=%.3g, voting pixels=%d",
                 cols, rows, radii.tolist(), beta, int(votes.sum()))

    symmetry = np.zeros((rows, cols), dtype=np.float64)
    if n_workers > 1 and radii.size > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            for part in executor.map(contribution, range(radii.size)):
                symmetry += part
    else:
        for i in range(radii.size):
            symmetry += contribution(i)

    return symmetry / radii.size
