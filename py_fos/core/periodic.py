"""
Periodic (minimum-image) geometry on the unit cube.

All functions are pure and vectorised: they accept single points of shape (3,)
or stacks of shape (..., 3) and broadcast like regular numpy arithmetic.

The reference rule for bringing several points to a common periodic image is
kept in one place, ``unify_images``: the first point of a sequence is the
reference and every other point is moved to the image closest to it. Face,
cell, barycenter and tetrahedron scoring all go through it so that they break
ties at the cube boundary the same way.
"""

import numpy as np

# Half of the box length. A coordinate delta strictly larger than this crosses
# the periodic boundary.
HALF_BOX = 0.5


def minimum_image_delta(a, b) -> np.ndarray:
    """
    Shortest vector from ``a`` to ``b`` between their periodic images.

    Each axis delta ``b - a`` is shifted by one box length when its magnitude
    exceeds half the box. The shift is applied once, which is exact for
    coordinates that lie in [0, 1).

    Args:
        a: Start point(s)
        b: End point(s)

    Returns:
        Delta vector(s) with every component in [-0.5, 0.5]
    """
    delta = np.asarray(b, dtype=np.float64) - np.asarray(a, dtype=np.float64)
    return delta - (delta > HALF_BOX) + (delta < -HALF_BOX)


def minimum_image(reference, point) -> np.ndarray:
    """Image of ``point`` closest to ``reference``."""
    return np.asarray(reference, dtype=np.float64) + minimum_image_delta(reference, point)


def wrap(point) -> np.ndarray:
    """
    Fold coordinates into [0, 1).

    ``np.mod`` can round tiny negative values up to exactly 1.0, those are
    folded to 0.0 so that the result is idempotent.
    """
    wrapped = np.mod(np.asarray(point, dtype=np.float64), 1.0)
    return np.where(wrapped >= 1.0, 0.0, wrapped)


def periodic_distance(a, b):
    """Euclidean length of the minimum-image delta."""
    return np.linalg.norm(minimum_image_delta(a, b), axis=-1)


def unify_images(vertices) -> np.ndarray:
    """
    Bring a sequence of points to the periodic image of its first point.

    Works on the second-to-last axis, so a (k, 3) polygon or a (m, 4, 3) stack
    of tetrahedra are both handled.

    Args:
        vertices: Array of shape (..., k, 3)

    Returns:
        Array of the same shape; the first point of each sequence is unchanged
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    if vertices.shape[-2] == 0:
        return vertices.copy()
    reference = vertices[..., :1, :]
    return reference + minimum_image_delta(reference, vertices)


def crosses_boundary(a, b):
    """True when any axis of ``b - a`` spans more than half the box."""
    delta = np.abs(np.asarray(b, dtype=np.float64) - np.asarray(a, dtype=np.float64))
    return np.any(delta > HALF_BOX, axis=-1)


def displacement(a, b, periodic: bool) -> np.ndarray:
    """Vector from ``a`` to ``b``, minimum-image corrected when periodic."""
    if periodic:
        return minimum_image_delta(a, b)
    return np.asarray(b, dtype=np.float64) - np.asarray(a, dtype=np.float64)
