"""Tests for Voronoi dual graph construction."""

import pytest
import numpy as np
from py_fos.core.dual_graph import (
    DualGraphBuilder, as_points, filter_tetrahedra, compute_barycenters,
    sort_vertices_by_angle
)

from conftest import PAIR_POINTS, PAIR_TETRAHEDRA, RING_POINTS, RING_TETRAHEDRA


class TestInputHandling:
    """Test point and tetrahedron validation."""

    def test_flat_buffer(self):
        """Test that a flat coordinate buffer is reshaped."""
        points = as_points([0.1, 0.2, 0.3, 0.4, 0.5, 0.6])
        assert points.shape == (2, 3)
        np.testing.assert_array_equal(points[1], [0.4, 0.5, 0.6])

    def test_bad_shapes(self):
        """Test that malformed point arrays are rejected."""
        with pytest.raises(ValueError):
            as_points([0.1, 0.2, 0.3, 0.4])
        with pytest.raises(ValueError):
            as_points(np.zeros((4, 2)))

    def test_filter_invalid(self):
        """Test that bad tetrahedra are dropped and counted."""
        tets = [[0, 1, 2, 3], [0, 0, 1, 2], [0, 1, 2, 99], [-1, 1, 2, 3], [1, 2, 3, 4]]
        valid, invalid = filter_tetrahedra(tets, 5)

        assert invalid == 3
        np.testing.assert_array_equal(valid, [[0, 1, 2, 3], [1, 2, 3, 4]])

    def test_filter_fractional_indices(self):
        """Test that non-integer indices are rejected instead of truncated."""
        tets = [[0, 1, 2, 3.7], [0.0, 1.0, 2.0, 3.0], [0, 1, 2, None]]
        valid, invalid = filter_tetrahedra(tets, 5)

        assert invalid == 2
        np.testing.assert_array_equal(valid, [[0, 1, 2, 3]])

    def test_filter_empty(self):
        valid, invalid = filter_tetrahedra([], 5)
        assert valid.shape == (0, 4)
        assert invalid == 0


class TestDualGraphBuilder:
    """Test building the dual graph."""

    @pytest.fixture
    def builder(self):
        return DualGraphBuilder()

    def test_pair_structure(self, pair_graph):
        """Test that only the shared face produces a Voronoi edge."""
        assert len(pair_graph.barycenters) == 2
        assert len(pair_graph.edges) == 1
        edge = pair_graph.edges[0]
        assert edge.key == (0, 1)
        assert not edge.is_periodic

        # No Delaunay edge is shared by three tetrahedra
        assert pair_graph.faces == []

        np.testing.assert_allclose(pair_graph.barycenters[0], PAIR_POINTS[:4].mean(axis=0))
        assert pair_graph.cells == {0: [0], 1: [0, 1], 2: [0, 1], 3: [0, 1], 4: [1]}

    def test_ring_face(self, ring_graph):
        """Test that the ring closes one square polygon around edge (0, 1)."""
        assert len(ring_graph.faces) == 1
        face = ring_graph.faces[0]
        assert face.delaunay_edge == (0, 1)
        assert sorted(face.vertex_indices) == [0, 1, 2, 3]

        # Ring order: consecutive vertices are square sides, never diagonals
        sides = np.linalg.norm(np.roll(face.vertices, -1, axis=0) - face.vertices, axis=1)
        np.testing.assert_allclose(sides, 0.125)

    def test_ring_edges(self, ring_graph):
        """Test that the four inner faces connect the barycenters in a loop."""
        keys = sorted(edge.key for edge in ring_graph.edges)
        assert keys == [(0, 1), (0, 3), (1, 2), (2, 3)]

    def test_invalid_count(self, builder):
        """Test that discarded tetrahedra are reported on the graph."""
        graph = builder.build(PAIR_POINTS, PAIR_TETRAHEDRA + [[0, 0, 1, 2], [0, 1, 2, 7]],
                              periodic=False)
        assert graph.invalid_tetrahedra == 2
        assert len(graph.tetrahedra) == 2

    def test_empty_input(self, builder):
        """Test that empty tetrahedra give an empty graph."""
        graph = builder.build(PAIR_POINTS, [], periodic=True)
        assert graph.is_empty
        assert graph.edges == []
        assert graph.faces == []
        assert graph.cells == {}
        assert graph.barycenters.shape == (0, 3)

    def test_edges_only_from_shared_faces(self, bounded_grid_graph):
        """Test that every edge joins two tetrahedra sharing three vertices."""
        tets = bounded_grid_graph.tetrahedra
        for edge in bounded_grid_graph.edges:
            shared = set(tets[edge.start].tolist()) & set(tets[edge.end].tolist())
            assert len(shared) == 3

    def test_periodic_edge_flag(self, builder):
        """Test that edges crossing the box are flagged in periodic mode only."""
        points = np.array([
            [0.99, 0.4, 0.4],
            [0.99, 0.6, 0.4],
            [0.99, 0.5, 0.6],
            [0.05, 0.5, 0.5],
            [0.90, 0.5, 0.5],
        ])
        tets = [[0, 1, 2, 3], [0, 1, 2, 4]]

        periodic = builder.build(points, tets, periodic=True)
        assert periodic.edges[0].is_periodic
        # The first barycenter wraps to the low side of the cube
        assert periodic.barycenters[0][0] == pytest.approx(0.005)

        bounded = builder.build(points, tets, periodic=False)
        assert not bounded.edges[0].is_periodic

    def test_periodic_cell_vertices(self, builder):
        """Test that cell vertices are returned in one periodic image."""
        points = np.array([
            [0.99, 0.4, 0.4],
            [0.99, 0.6, 0.4],
            [0.99, 0.5, 0.6],
            [0.05, 0.5, 0.5],
            [0.90, 0.5, 0.5],
        ])
        graph = builder.build(points, [[0, 1, 2, 3], [0, 1, 2, 4]], periodic=True)
        vertices = graph.cell_vertices(0)

        assert vertices[0][0] == pytest.approx(0.005)
        assert vertices[1][0] == pytest.approx(-0.0325)
        assert graph.cell_vertices(42).shape == (0, 3)

    def test_caches(self, builder):
        """Test that cells and faces are cached per build."""
        builder.build(RING_POINTS, RING_TETRAHEDRA, periodic=False)
        cells = builder.get_cells()
        faces = builder.get_faces()
        assert builder.get_cells() is cells
        assert builder.get_faces() is faces

        builder.build(PAIR_POINTS, PAIR_TETRAHEDRA, periodic=False)
        assert builder.get_cells() is not cells
        assert builder.get_faces() == []

    def test_accessors(self, builder):
        graph = builder.build(RING_POINTS, RING_TETRAHEDRA, periodic=False)
        np.testing.assert_array_equal(builder.get_points(), RING_POINTS)
        np.testing.assert_array_equal(builder.get_vertices(), graph.barycenters)
        np.testing.assert_array_equal(builder.get_tetrahedra(), RING_TETRAHEDRA)
        assert builder.get_edges() is graph.edges

    def test_deterministic(self, grid_points):
        """Test that the same input always builds the same graph."""
        from py_fos.core.triangulation import ScipyTriangulator
        tets = ScipyTriangulator().triangulate(grid_points, periodic=True).tetrahedra

        first = DualGraphBuilder().build(grid_points, tets, periodic=True)
        second = DualGraphBuilder().build(grid_points, tets, periodic=True)

        np.testing.assert_array_equal(first.barycenters, second.barycenters)
        assert [e.key for e in first.edges] == [e.key for e in second.edges]
        assert [f.vertex_indices for f in first.faces] == [f.vertex_indices for f in second.faces]


class TestGraphQueries:
    """Test read-side helpers of the dual graph."""

    def test_point_neighbors(self, pair_graph):
        assert pair_graph.point_neighbors(0) == [1, 2, 3]
        assert pair_graph.point_neighbors(1) == [0, 2, 3, 4]
        assert pair_graph.point_neighbors(9) == []

    def test_cell_centroid(self, ring_graph):
        """Test that the centroid of an axis cell is the square centre."""
        np.testing.assert_allclose(ring_graph.cell_centroid(0), [0.5, 0.5, 0.5])
        assert ring_graph.cell_centroid(17) is None

    def test_stats(self, ring_graph):
        stats = ring_graph.stats()
        assert stats["tetrahedra"] == 4
        assert stats["faces"] == 1
        assert stats["edges"] == 4
        assert stats["cells"] == 6


class TestAngleSorting:
    """Test ring ordering of polygon vertices."""

    def test_hexagon(self):
        """Test that shuffled hexagon vertices come back in ring order."""
        angles = np.arange(6) * np.pi / 3
        hexagon = np.stack([np.cos(angles), np.sin(angles), np.zeros(6)], axis=1)
        shuffled = hexagon[[0, 3, 1, 5, 2, 4]]

        ordered = shuffled[sort_vertices_by_angle(shuffled)]
        sides = np.linalg.norm(np.roll(ordered, -1, axis=0) - ordered, axis=1)
        np.testing.assert_allclose(sides, 1.0)

    def test_collinear(self):
        """Test that collinear vertices keep their input order."""
        line = np.array([[0.0, 0, 0], [1.0, 0, 0], [2.0, 0, 0], [3.0, 0, 0]])
        np.testing.assert_array_equal(sort_vertices_by_angle(line), [0, 1, 2, 3])

    def test_barycenters_periodic(self):
        """Test that periodic barycenters average the unified corners."""
        points = np.array([[0.95, 0.5, 0.5], [0.05, 0.5, 0.5], [0.95, 0.6, 0.5], [0.95, 0.5, 0.6]])
        barycenter = compute_barycenters(points, np.array([[0, 1, 2, 3]]), periodic=True)
        assert barycenter[0][0] == pytest.approx(0.975)
