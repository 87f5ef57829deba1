"""
Acuteness analysis of Delaunay-Voronoi meshes.

An acuteness score counts the angles strictly below 90 degrees at a mesh
element. Four granularities are scored:

- vertex: the 12 corner angles of each Delaunay tetrahedron
- face: the interior angles of each Voronoi polygon
- cell: angles between the three nearest neighbours of each cell vertex
- edge: angles between a Voronoi edge and the edges sharing its endpoints

In a bounded (non-periodic) cube the elements close to the walls are
truncated and look artificially sharp, so their raw counts are reduced.
"""

import math
import time
import numpy as np
import structlog
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from pydantic import BaseModel, Field

from ..config import settings
from .dual_graph import DualGraph
from .periodic import displacement, unify_images

logger = structlog.get_logger()

HALF_PI = math.pi / 2

# Pairs of the three edges meeting at a tetrahedron corner
_CORNER_PAIRS = ((0, 1), (1, 2), (2, 0))
_OTHER_CORNERS = ((1, 2, 3), (0, 2, 3), (0, 1, 3), (0, 1, 2))


class AcutenessOptions(BaseModel):
    """Options for acuteness scoring."""

    boundary_correction: bool = Field(
        default=True, description="Damp scores of boundary elements in a bounded cube"
    )
    boundary_threshold: float = Field(
        default_factory=lambda: settings.boundary_threshold, gt=0.0, lt=0.5,
        description="Distance from a cube wall under which a point counts as boundary",
    )
    boundary_factor: float = Field(
        default_factory=lambda: settings.boundary_factor, ge=0.0, le=1.0,
        description="Score multiplier for boundary tetrahedra, faces and edges",
    )
    cell_neighbor_count: int = Field(
        default=3, ge=2, description="Nearest cell vertices compared at each vertex"
    )
    coordinate_tolerance: float = Field(
        default=1e-6, gt=0.0, description="Tolerance for matching shared edge endpoints"
    )


@dataclass
class AcutenessResult:
    """Index-aligned score arrays.

    vertex_scores follow the tetrahedra, face_scores the faces, cell_scores
    the point indices and edge_scores the Voronoi edges.
    """
    vertex_scores: np.ndarray
    face_scores: np.ndarray
    cell_scores: np.ndarray
    edge_scores: np.ndarray
    performance: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, np.ndarray]:
        return {
            "vertex": self.vertex_scores,
            "face": self.face_scores,
            "cell": self.cell_scores,
            "edge": self.edge_scores,
        }


def angle_between(u, v) -> np.ndarray:
    """
    Angle in radians between vectors, broadcast over leading axes.

    A zero-length vector gives an angle of 0.
    """
    u = np.asarray(u, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    dot = np.sum(u * v, axis=-1)
    mag_sq = np.sum(u * u, axis=-1) * np.sum(v * v, axis=-1)
    degenerate = mag_sq == 0
    cos_theta = dot / np.sqrt(np.where(degenerate, 1.0, mag_sq))
    angle = np.arccos(np.clip(cos_theta, -1.0, 1.0))
    return np.where(degenerate, 0.0, angle)


def count_acute(angles) -> int:
    return int(np.count_nonzero(np.asarray(angles) < HALF_PI))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def near_boundary(points, threshold: float) -> np.ndarray:
    """True for points within ``threshold`` of any wall of the unit cube."""
    points = np.asarray(points, dtype=np.float64)
    return np.any((points < threshold) | (points > 1.0 - threshold), axis=-1)


def boundary_severity(point, threshold: float) -> Tuple[float, int]:
    """
    How deep a point sits in the boundary band.

    Returns:
        Tuple of (mean penetration over the walls it is close to, in [0, 1];
        number of such walls). (0.0, 0) for interior points.
    """
    severity = 0.0
    walls = 0
    for x in point:
        if x < threshold:
            severity += (threshold - x) / threshold
            walls += 1
        elif x > 1.0 - threshold:
            severity += (x - (1.0 - threshold)) / threshold
            walls += 1
    if walls == 0:
        return 0.0, 0
    return severity / walls, walls


def cell_boundary_factor(score: int, severity: float) -> float:
    """
    Reduction factor for a boundary cell.

    Corner cells are reduced more than cells touching a single wall, and high
    raw scores more than low ones.
    """
    base_factor = 0.7 + 0.3 * (1.0 - severity)
    score_factor = 1.0 - 0.3 * min(score / 50.0, 1.0)
    return base_factor * score_factor


def tetrahedron_acuteness(corners) -> int:
    """Acute corner angles of one tetrahedron (0 to 12)."""
    corners = np.asarray(corners, dtype=np.float64)
    total = 0
    for j, others in enumerate(_OTHER_CORNERS):
        edges = corners[list(others)] - corners[j]
        angles = [angle_between(edges[a], edges[b]) for a, b in _CORNER_PAIRS]
        total += count_acute(angles)
    return total


def polygon_acuteness(vertices) -> int:
    """Acute interior angles of a ring-ordered polygon."""
    vertices = np.asarray(vertices, dtype=np.float64)
    if len(vertices) < 3:
        return 0
    to_prev = np.roll(vertices, 1, axis=0) - vertices
    to_next = np.roll(vertices, -1, axis=0) - vertices
    return count_acute(angle_between(to_prev, to_next))


def cell_vertex_acuteness(vertices, neighbor_count: int = 3) -> int:
    """
    Acute angles among the nearest neighbours of each cell vertex.

    The count is a plain sum over the vertices and is not divided by the
    vertex count, since angles are scale invariant already.
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    n = len(vertices)
    if n < 4:
        return 0

    diff = vertices[None, :, :] - vertices[:, None, :]
    dist_sq = np.sum(diff * diff, axis=-1)
    np.fill_diagonal(dist_sq, np.inf)
    k = min(neighbor_count, n - 1)
    nearest = np.argsort(dist_sq, axis=1, kind="stable")[:, :k]

    rows = np.arange(n)[:, None]
    spokes = diff[rows, nearest]  # (n, k, 3) vectors to the nearest vertices
    total = 0
    for a in range(k):
        for b in range(a + 1, k):
            total += count_acute(angle_between(spokes[:, a], spokes[:, b]))
    return total


class AcutenessAnalyzer:
    """
    Scores a dual graph at vertex, face, cell and edge granularity.

    Every scorer takes an optional subset of element indices and returns the
    scores of that subset in the given order, which lets chunks of work be
    scored independently.
    """

    def __init__(self, graph: DualGraph, options: Optional[AcutenessOptions] = None):
        self.graph = graph
        self.options = options or AcutenessOptions()
        self._endpoint_edges: Optional[Dict[Tuple[int, ...], List[Tuple[int, int]]]] = None
        self._edge_keys: Optional[Tuple[list, list]] = None
        self._edge_directions: Optional[np.ndarray] = None

    @property
    def correct_boundary(self) -> bool:
        return self.options.boundary_correction and not self.graph.periodic

    def _boundary_adjust(self, score: int, is_boundary: bool) -> int:
        if is_boundary:
            return round_half_up(score * self.options.boundary_factor)
        return score

    # Vertex (tetrahedron) scores

    def vertex_scores(self, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        graph = self.graph
        if indices is None:
            indices = range(len(graph.tetrahedra))
        indices = np.asarray(list(indices), dtype=np.int64)
        scores = np.zeros(len(indices), dtype=np.int64)
        if len(indices) == 0:
            return scores

        tets = graph.tetrahedra[indices]
        corners = graph.points[tets]
        if graph.periodic:
            corners = unify_images(corners)

        boundary = np.zeros(len(indices), dtype=bool)
        if self.correct_boundary:
            boundary = np.any(near_boundary(graph.points[tets], self.options.boundary_threshold), axis=1)

        for i in range(len(indices)):
            scores[i] = self._boundary_adjust(tetrahedron_acuteness(corners[i]), boundary[i])
        return scores

    # Face (polygon) scores

    def face_scores(self, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        faces = self.graph.faces
        if indices is None:
            indices = range(len(faces))
        indices = list(indices)
        scores = np.zeros(len(indices), dtype=np.int64)

        for i, face_idx in enumerate(indices):
            face = faces[face_idx]
            is_boundary = False
            if self.correct_boundary:
                is_boundary = bool(np.any(near_boundary(
                    self.graph.points[list(face.delaunay_edge)], self.options.boundary_threshold)))
            scores[i] = self._boundary_adjust(polygon_acuteness(face.vertices), is_boundary)
        return scores

    # Cell (polyhedron) scores

    def cell_scores(self, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Scores per point index. Points without a cell score 0.
        """
        graph = self.graph
        if indices is None:
            indices = range(graph.n_points)
        indices = list(indices)
        scores = np.zeros(len(indices), dtype=np.int64)

        for i, point_idx in enumerate(indices):
            score = cell_vertex_acuteness(graph.cell_vertices(point_idx),
                                          self.options.cell_neighbor_count)
            if self.correct_boundary:
                severity, walls = boundary_severity(graph.points[point_idx],
                                                    self.options.boundary_threshold)
                if walls > 0:
                    score = round_half_up(score * cell_boundary_factor(score, severity))
            scores[i] = score
        return scores

    # Edge scores

    def prepare(self) -> None:
        """
        Build the shared endpoint-to-edge table used by edge scoring.

        Call before handing the analyzer to concurrent workers so that they
        only ever read it.
        """
        if self._endpoint_edges is not None:
            return

        graph = self.graph
        edges = graph.edges
        tolerance = self.options.coordinate_tolerance

        if edges:
            starts = graph.barycenters[[e.start for e in edges]]
            ends = graph.barycenters[[e.end for e in edges]]
        else:
            starts = ends = np.zeros((0, 3))
        self._edge_directions = displacement(starts, ends, graph.periodic)

        keys_start = [tuple(k) for k in np.round(starts / tolerance).astype(np.int64).tolist()]
        keys_end = [tuple(k) for k in np.round(ends / tolerance).astype(np.int64).tolist()]

        # (edge index, sign) per endpoint; the sign turns the stored
        # start->end direction into one pointing away from the endpoint.
        endpoint_edges: Dict[Tuple[int, ...], List[Tuple[int, int]]] = {}
        for e_idx in range(len(edges)):
            endpoint_edges.setdefault(keys_start[e_idx], []).append((e_idx, 1))
            endpoint_edges.setdefault(keys_end[e_idx], []).append((e_idx, -1))

        self._edge_keys = (keys_start, keys_end)
        self._endpoint_edges = endpoint_edges

    def edge_scores(self, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        graph = self.graph
        edges = graph.edges
        if indices is None:
            indices = range(len(edges))
        indices = list(indices)
        scores = np.zeros(len(indices), dtype=np.int64)
        if not indices:
            return scores

        self.prepare()
        keys_start, keys_end = self._edge_keys
        directions = self._edge_directions

        for i, e_idx in enumerate(indices):
            acute = 0
            for key, sign in ((keys_start[e_idx], 1), (keys_end[e_idx], -1)):
                own = directions[e_idx] * sign
                others = [(o_idx, o_sign) for o_idx, o_sign in self._endpoint_edges[key]
                          if o_idx != e_idx]
                if not others:
                    continue
                other_dirs = np.array([directions[o_idx] * o_sign for o_idx, o_sign in others])
                acute += count_acute(angle_between(own, other_dirs))

            is_boundary = False
            if self.correct_boundary:
                start, end = graph.edge_vertices(edges[e_idx])
                is_boundary = bool(np.any(near_boundary(np.array([start, end]),
                                                        self.options.boundary_threshold)))
            scores[i] = self._boundary_adjust(acute, is_boundary)
        return scores

    def analyze(self) -> AcutenessResult:
        """Score every element at all four granularities."""
        timings = {}

        start = time.perf_counter()
        vertex = self.vertex_scores()
        timings["vertex_ms"] = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        face = self.face_scores()
        timings["face_ms"] = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        cell = self.cell_scores()
        timings["cell_ms"] = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        edge = self.edge_scores()
        timings["edge_ms"] = (time.perf_counter() - start) * 1000

        result = AcutenessResult(vertex, face, cell, edge, performance=timings)
        log_score_summary(result)
        return result


def log_score_summary(result: AcutenessResult) -> None:
    for kind, scores in result.as_dict().items():
        if len(scores) == 0:
            continue
        logger.debug("Acuteness scores", kind=kind, count=len(scores),
                     min=int(scores.min()), max=int(scores.max()),
                     mean=round(float(scores.mean()), 1))
