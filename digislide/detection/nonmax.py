"""Non-maxima suppression over a 2D strength map."""

import numpy as np
from scipy import ndimage
from skimage.morphology import disk

from digislide.errors import InvalidInput, InvalidParameter


def nonmaxsupp(strength: np.ndarray, radius: int = 1, threshold: float = -np.inf) -> np.ndarray:
    """
    Find local maxima of a strength map.

    A pixel is a peak when no neighbour within a disk of `radius` exceeds it and
    its value is strictly above `threshold`. Plateaus yield every pixel of the
    plateau.

    Args:
        strength: 2D map
        radius: Suppression radius in pixels (non-negative integer)
        threshold: Peaks must be strictly greater than this value

    Returns:
        (N, 2) int array of (row, col) peaks in column-major scan order
    """
    strength = np.asarray(strength)
    if strength.ndim != 2:
        raise InvalidInput(f"Expected a 2D map, got shape {strength.shape}",
                           operation="nonmaxsupp", parameter="strength")
    if isinstance(radius, bool) or not isinstance(radius, (int, np.integer)) or radius < 0:
        raise InvalidParameter(f"radius must be a non-negative integer, got {radius!r}",
                               operation="nonmaxsupp", parameter="radius")

    strength = strength.astype(np.float64, copy=False)
    dilated = ndimage.grey_dilation(strength, footprint=disk(int(radius)).astype(bool),
                                    mode='constant', cval=-np.inf)
    peaks = (strength == dilated) & (strength > threshold)

    # Transposed nonzero gives column-major order: columns outer, rows inner
    cols, rows = np.nonzero(peaks.T)
    return np.column_stack((rows, cols)).astype(np.int64)
