"""Voronoi dual graph construction from Delaunay tetrahedra."""

import numpy as np
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field
import structlog

from .periodic import crosses_boundary, unify_images, wrap

logger = structlog.get_logger()

# Triangular faces and edges of a tetrahedron, as positions in its 4-tuple
TETRA_FACES = ((0, 1, 2), (0, 1, 3), (0, 2, 3), (1, 2, 3))
TETRA_EDGES = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))

# Cross-product magnitude below which two in-plane vectors count as collinear
COLLINEAR_EPSILON = 1e-6


@dataclass(frozen=True)
class VoronoiEdge:
    """Edge between the barycenters of two face-adjacent tetrahedra."""
    start: int  # barycenter (= tetrahedron) index
    end: int
    is_periodic: bool = False

    @property
    def key(self) -> Tuple[int, int]:
        return (self.start, self.end) if self.start < self.end else (self.end, self.start)


@dataclass(frozen=True, eq=False)
class VoronoiFace:
    """Voronoi polygon dual to the Delaunay edge ``delaunay_edge``.

    ``vertex_indices`` are barycenter indices in ring order and ``vertices``
    holds their coordinates in the same order, moved to a common periodic
    image when the graph is periodic.
    """
    delaunay_edge: Tuple[int, int]
    vertex_indices: Tuple[int, ...]
    vertices: np.ndarray


@dataclass
class DualGraph:
    """Read-only snapshot of a Voronoi dual graph.

    Consumers must treat every field as immutable. A new snapshot is produced
    by each ``DualGraphBuilder.build`` call.
    """
    points: np.ndarray               # (N, 3) generator points
    tetrahedra: np.ndarray           # (M, 4) valid tetrahedra
    periodic: bool
    barycenters: np.ndarray          # (M, 3) Voronoi vertices, tetra-aligned
    edges: List[VoronoiEdge]
    faces: List[VoronoiFace]
    cells: Dict[int, List[int]]      # point index -> barycenter indices
    invalid_tetrahedra: int = 0

    # Lazily computed point adjacency through shared tetrahedra
    _point_neighbors: Optional[Dict[int, List[int]]] = field(default=None, repr=False)

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.tetrahedra) == 0

    def cell_vertices(self, point_index: int) -> np.ndarray:
        """Cell vertex coordinates, moved to the image of the first vertex."""
        indices = self.cells.get(point_index)
        if not indices:
            return np.zeros((0, 3))
        vertices = self.barycenters[indices]
        if self.periodic:
            vertices = unify_images(vertices)
        return vertices

    def cell_coordinates(self) -> Dict[int, np.ndarray]:
        """Raw (wrapped) barycenter coordinates of every cell."""
        return {i: self.barycenters[indices] for i, indices in self.cells.items()}

    def cell_centroid(self, point_index: int) -> Optional[np.ndarray]:
        vertices = self.cell_vertices(point_index)
        if len(vertices) == 0:
            return None
        return vertices.mean(axis=0)

    def edge_vertices(self, edge: VoronoiEdge) -> Tuple[np.ndarray, np.ndarray]:
        return self.barycenters[edge.start], self.barycenters[edge.end]

    def point_neighbors(self, point_index: int) -> List[int]:
        """Points sharing at least one tetrahedron with ``point_index``."""
        if self._point_neighbors is None:
            neighbors: Dict[int, set] = {}
            for tet in self.tetrahedra:
                for p in tet:
                    neighbors.setdefault(int(p), set()).update(int(q) for q in tet if q != p)
            self._point_neighbors = {p: sorted(n) for p, n in neighbors.items()}
        return self._point_neighbors.get(point_index, [])

    def stats(self) -> Dict[str, int]:
        return {
            "points": self.n_points,
            "tetrahedra": len(self.tetrahedra),
            "invalid_tetrahedra": self.invalid_tetrahedra,
            "edges": len(self.edges),
            "faces": len(self.faces),
            "cells": len(self.cells),
            "periodic": self.periodic,
        }


def as_points(points) -> np.ndarray:
    """
    Normalise generator points to an (N, 3) float array.

    Accepts nested sequences or a flat buffer of length 3N.
    """
    array = np.asarray(points, dtype=np.float64)
    if array.ndim == 1:
        if array.size % 3 != 0:
            raise ValueError(f"Flat point buffer length {array.size} is not a multiple of 3")
        array = array.reshape(-1, 3)
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"Points must have shape (N, 3), got {array.shape}")
    return array


def _as_index(value) -> Optional[int]:
    """Integer value of a vertex index, or None when it is not a whole number."""
    try:
        index = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return index if index == value else None


def filter_tetrahedra(tetrahedra, n_points: int) -> Tuple[np.ndarray, int]:
    """
    Drop tetrahedra with non-integer, out-of-range or repeated vertex indices.

    Args:
        tetrahedra: Sequence of 4-tuples of point indices
        n_points: Number of generator points

    Returns:
        Tuple of (valid (M, 4) int array, number of discarded entries)
    """
    valid = []
    invalid_count = 0
    for tet in tetrahedra:
        tet = tuple(_as_index(v) for v in tet)
        if (len(tet) == 4
                and None not in tet
                and all(0 <= v < n_points for v in tet)
                and len(set(tet)) == 4):
            valid.append(tet)
        else:
            invalid_count += 1

    if invalid_count > 0:
        logger.info("Filtered invalid tetrahedra", discarded=invalid_count, kept=len(valid))

    return np.array(valid, dtype=np.int64).reshape(-1, 4), invalid_count


def compute_barycenters(points: np.ndarray, tetrahedra: np.ndarray, periodic: bool) -> np.ndarray:
    """
    Average the four vertices of each tetrahedron.

    In periodic mode the vertices are first moved to the image of the
    tetrahedron's first vertex and the result is wrapped back into the cube.
    """
    if len(tetrahedra) == 0:
        return np.zeros((0, 3))
    corners = points[tetrahedra]  # (M, 4, 3)
    if not periodic:
        return corners.mean(axis=1)
    return wrap(unify_images(corners).mean(axis=1))


def build_voronoi_edges(tetrahedra: np.ndarray, barycenters: np.ndarray,
                        periodic: bool) -> List[VoronoiEdge]:
    """
    Connect barycenters of tetrahedra sharing a triangular face.

    Only faces shared by exactly two tetrahedra produce an edge; hull faces
    (one tetrahedron) and non-manifold faces (three or more) are ignored.
    """
    face_to_tetra: Dict[Tuple[int, int, int], List[int]] = {}
    for t_idx, tet in enumerate(tetrahedra.tolist()):
        for a, b, c in TETRA_FACES:
            key = tuple(sorted((tet[a], tet[b], tet[c])))
            face_to_tetra.setdefault(key, []).append(t_idx)

    edges = []
    seen = set()
    for tetra_indices in face_to_tetra.values():
        if len(tetra_indices) != 2:
            continue
        i, j = tetra_indices
        key = (i, j) if i < j else (j, i)
        if key in seen:
            continue
        seen.add(key)
        is_periodic = bool(periodic and crosses_boundary(barycenters[i], barycenters[j]))
        edges.append(VoronoiEdge(start=i, end=j, is_periodic=is_periodic))

    return edges


def build_cells(tetrahedra: np.ndarray) -> Dict[int, List[int]]:
    """Map each point index to the barycenters of the tetrahedra containing it."""
    cells: Dict[int, List[int]] = {}
    for t_idx, tet in enumerate(tetrahedra.tolist()):
        for p in tet:
            cells.setdefault(p, []).append(t_idx)
    return cells


def sort_vertices_by_angle(vertices: np.ndarray) -> np.ndarray:
    """
    Ring order of coplanar polygon vertices.

    The vertices are projected onto two in-plane directions: the first vertex
    relative to the centroid and the first later vertex that is not collinear
    with it. The projection need not be orthonormal since any invertible
    linear map keeps the cyclic order.

    Args:
        vertices: (k, 3) polygon vertices

    Returns:
        Index array ordering the vertices by signed angle, or the identity
        order when all vertices are collinear
    """
    centroid = vertices.mean(axis=0)
    relative = vertices - centroid
    u = relative[0]

    v = None
    for candidate in relative[1:]:
        if np.linalg.norm(np.cross(u, candidate)) > COLLINEAR_EPSILON:
            v = candidate
            break

    if v is None:
        return np.arange(len(vertices))

    angles = np.arctan2(relative @ v, relative @ u)
    return np.argsort(angles, kind="stable")


def build_faces(tetrahedra: np.ndarray, barycenters: np.ndarray,
                periodic: bool) -> List[VoronoiFace]:
    """
    Build one Voronoi polygon per Delaunay edge.

    The polygon of edge (p1, p2) is made of the barycenters of every
    tetrahedron containing both points. Edges on fewer than three tetrahedra
    cannot close a polygon and are skipped.
    """
    edge_to_tetra: Dict[Tuple[int, int], List[int]] = {}
    for t_idx, tet in enumerate(tetrahedra.tolist()):
        for a, b in TETRA_EDGES:
            p, q = tet[a], tet[b]
            key = (p, q) if p < q else (q, p)
            edge_to_tetra.setdefault(key, []).append(t_idx)

    faces = []
    for delaunay_edge, tetra_indices in edge_to_tetra.items():
        if len(tetra_indices) < 3:
            continue

        indices = np.array(tetra_indices, dtype=np.int64)
        vertices = barycenters[indices]
        if periodic:
            vertices = unify_images(vertices)

        order = sort_vertices_by_angle(vertices)
        faces.append(VoronoiFace(
            delaunay_edge=delaunay_edge,
            vertex_indices=tuple(int(i) for i in indices[order]),
            vertices=vertices[order],
        ))

    return faces


class DualGraphBuilder:
    """
    Builds Voronoi dual graphs and caches their cells and faces.

    The cell and face caches belong to the most recent ``build`` call and are
    cleared together whenever a new build starts.
    """

    def __init__(self):
        self.points: Optional[np.ndarray] = None
        self.tetrahedra = np.zeros((0, 4), dtype=np.int64)
        self.barycenters = np.zeros((0, 3))
        self.edges: List[VoronoiEdge] = []
        self.periodic = True
        self.invalid_tetrahedra = 0

        self._cells_cache: Optional[Dict[int, List[int]]] = None
        self._faces_cache: Optional[List[VoronoiFace]] = None

    def invalidate(self) -> None:
        """Drop cached cells and faces."""
        self._cells_cache = None
        self._faces_cache = None

    def build(self, points, tetrahedra, periodic: bool = True) -> DualGraph:
        """
        Construct the dual graph of a tetrahedral mesh.

        Args:
            points: (N, 3) generator points, or a flat buffer of length 3N
            tetrahedra: Sequence of 4-tuples of point indices; invalid entries
                are discarded and counted
            periodic: Whether the unit cube is periodic

        Returns:
            DualGraph snapshot
        """
        self.invalidate()

        self.points = as_points(points)
        self.periodic = bool(periodic)
        self.tetrahedra, self.invalid_tetrahedra = filter_tetrahedra(tetrahedra, len(self.points))

        if len(self.tetrahedra) == 0:
            logger.warning("No valid tetrahedra, dual graph is empty",
                           points=len(self.points), discarded=self.invalid_tetrahedra)

        self.barycenters = compute_barycenters(self.points, self.tetrahedra, self.periodic)
        self.edges = build_voronoi_edges(self.tetrahedra, self.barycenters, self.periodic)

        graph = DualGraph(
            points=self.points,
            tetrahedra=self.tetrahedra,
            periodic=self.periodic,
            barycenters=self.barycenters,
            edges=self.edges,
            faces=self.get_faces(),
            cells=self.get_cells(),
            invalid_tetrahedra=self.invalid_tetrahedra,
        )

        logger.info("Dual graph built", **graph.stats())
        return graph

    def get_cells(self) -> Dict[int, List[int]]:
        """Cells of the last build (cached)."""
        if self._cells_cache is None:
            self._cells_cache = build_cells(self.tetrahedra)
        return self._cells_cache

    def get_faces(self) -> List[VoronoiFace]:
        """Faces of the last build (cached)."""
        if self._faces_cache is None:
            self._faces_cache = build_faces(self.tetrahedra, self.barycenters, self.periodic)
            logger.debug("Voronoi faces generated", faces=len(self._faces_cache))
        return self._faces_cache

    # Read accessors for visualisation consumers

    def get_points(self) -> Optional[np.ndarray]:
        return self.points

    def get_vertices(self) -> np.ndarray:
        return self.barycenters

    def get_edges(self) -> List[VoronoiEdge]:
        return self.edges

    def get_tetrahedra(self) -> np.ndarray:
        return self.tetrahedra
