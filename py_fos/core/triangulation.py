"""
Delaunay tetrahedralization of generator points.

Bounded cubes are triangulated directly with scipy's Qhull wrapper. The
periodic cube is handled by replicating the points into the 27 surrounding
unit-cube images, triangulating the lot and folding the tetrahedra that
touch the central image back onto the original point indices.
"""

import itertools
import numpy as np
import structlog
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from scipy.spatial import Delaunay, QhullError

from .alea_prng import AleaPRNG
from .dual_graph import as_points

logger = structlog.get_logger()

# Image offsets of the periodic cube, central image first
IMAGE_OFFSETS = np.array(
    [(0, 0, 0)] + [o for o in itertools.product((-1, 0, 1), repeat=3) if o != (0, 0, 0)],
    dtype=np.float64,
)


@dataclass
class TriangulationResult:
    tetrahedra: np.ndarray = field(default_factory=lambda: np.zeros((0, 4), dtype=np.int64))
    ok: bool = True
    message: str = ""


def canonicalize_tetrahedra(raw, n_points: int, periodic: bool) -> np.ndarray:
    """
    Fold and de-duplicate raw tetrahedra.

    In periodic mode every index is reduced modulo ``n_points``. A tetrahedron
    is kept the first time its sorted index tuple is seen, with its vertex
    order unchanged. Tetrahedra that end up with a repeated index are kept
    here and discarded by the dual graph builder.

    Args:
        raw: (M, 4) point indices, possibly into replicated images
        n_points: Number of original points
        periodic: Whether to reduce indices modulo ``n_points``

    Returns:
        (K, 4) int array
    """
    tets = np.asarray(raw, dtype=np.int64).reshape(-1, 4)
    if periodic and n_points > 0:
        tets = tets % n_points

    seen = set()
    unique: List[Tuple[int, ...]] = []
    for tet in tets.tolist():
        key = tuple(sorted(tet))
        if key in seen:
            continue
        seen.add(key)
        unique.append(tuple(tet))
    return np.array(unique, dtype=np.int64).reshape(-1, 4)


def periodic_images(points: np.ndarray) -> np.ndarray:
    """All 27 images of ``points``; image k of point i sits at row k*N + i."""
    return (IMAGE_OFFSETS[:, None, :] + points[None, :, :]).reshape(-1, 3)


def jittered_points(per_axis: int, seed: Optional[str] = None, jitter: float = 0.9) -> np.ndarray:
    """
    Generator points on a jittered cubic grid inside the unit cube.

    Each point is displaced from its grid cell centre by up to ``jitter`` times
    half the grid spacing along every axis.

    Args:
        per_axis: Grid points along each axis
        seed: Seed for the Alea generator
        jitter: Maximum displacement as a share of half the spacing

    Returns:
        (per_axis**3, 3) array
    """
    prng = AleaPRNG(seed) if seed else AleaPRNG("default")
    spacing = 1.0 / per_axis
    radius = spacing / 2
    deviation = radius * jitter

    points = []
    for i, j, k in itertools.product(range(per_axis), repeat=3):
        centre = (radius + i * spacing, radius + j * spacing, radius + k * spacing)
        points.append([c + prng.uniform(-deviation, deviation) for c in centre])
    return np.array(points)


class ScipyTriangulator:
    """Tetrahedralizes points in the unit cube with ``scipy.spatial.Delaunay``."""

    def __init__(self, qhull_options: Optional[str] = None):
        self.qhull_options = qhull_options

    def triangulate(self, points, periodic: bool = True) -> TriangulationResult:
        """
        Triangulate the points.

        Returns:
            TriangulationResult; ``ok`` is False with no tetrahedra when the
            points cannot be triangulated
        """
        points = as_points(points)
        n_points = len(points)
        if n_points < 4:
            message = f"At least 4 points are needed, got {n_points}"
            logger.warning("Triangulation skipped", reason=message)
            return TriangulationResult(ok=False, message=message)

        try:
            if periodic:
                delaunay = Delaunay(periodic_images(points), qhull_options=self.qhull_options)
                simplices = delaunay.simplices
                simplices = simplices[np.any(simplices < n_points, axis=1)]
            else:
                delaunay = Delaunay(points, qhull_options=self.qhull_options)
                simplices = delaunay.simplices
        except (QhullError, ValueError) as exc:
            logger.warning("Triangulation failed", points=n_points, periodic=periodic, error=str(exc))
            return TriangulationResult(ok=False, message=str(exc))

        tetrahedra = canonicalize_tetrahedra(simplices, n_points, periodic)
        logger.info("Triangulation complete", points=n_points, periodic=periodic,
                    raw=len(simplices), tetrahedra=len(tetrahedra))
        return TriangulationResult(tetrahedra=tetrahedra)
