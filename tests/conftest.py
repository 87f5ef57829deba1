"""Shared meshes for the test suite."""

import numpy as np
import pytest

from py_fos.core.dual_graph import DualGraphBuilder
from py_fos.core.triangulation import ScipyTriangulator, jittered_points

# Four tetrahedra around the edge (0, 1). The barycenters form a square of
# side 0.125 in the plane z = 0.5; all coordinates are exact in binary.
RING_POINTS = np.array([
    [0.5, 0.5, 0.25],
    [0.5, 0.5, 0.75],
    [0.75, 0.5, 0.5],
    [0.5, 0.75, 0.5],
    [0.25, 0.5, 0.5],
    [0.5, 0.25, 0.5],
])
RING_TETRAHEDRA = [[0, 1, 2, 3], [0, 1, 3, 4], [0, 1, 4, 5], [0, 1, 5, 2]]

# Two tetrahedra sharing the face (1, 2, 3)
PAIR_POINTS = np.array([
    [0.2, 0.2, 0.2],
    [0.6, 0.2, 0.2],
    [0.2, 0.6, 0.2],
    [0.2, 0.2, 0.6],
    [0.6, 0.6, 0.6],
])
PAIR_TETRAHEDRA = [[0, 1, 2, 3], [1, 2, 3, 4]]


@pytest.fixture
def ring_graph():
    """Bounded dual graph of the four-tetrahedra ring."""
    return DualGraphBuilder().build(RING_POINTS, RING_TETRAHEDRA, periodic=False)


@pytest.fixture
def pair_graph():
    """Bounded dual graph of two face-adjacent tetrahedra."""
    return DualGraphBuilder().build(PAIR_POINTS, PAIR_TETRAHEDRA, periodic=False)


@pytest.fixture
def grid_points():
    """64 jittered points in the unit cube."""
    return jittered_points(4, seed="fabric_test")


@pytest.fixture
def bounded_grid_graph(grid_points):
    """Bounded Delaunay dual graph of the jittered grid."""
    result = ScipyTriangulator().triangulate(grid_points, periodic=False)
    assert result.ok
    return DualGraphBuilder().build(grid_points, result.tetrahedra, periodic=False)


@pytest.fixture
def periodic_grid_graph(grid_points):
    """Periodic Delaunay dual graph of the jittered grid."""
    result = ScipyTriangulator().triangulate(grid_points, periodic=True)
    assert result.ok
    return DualGraphBuilder().build(grid_points, result.tetrahedra, periodic=True)
