"""
Change detection for continuously animated meshes.

When points move a little every frame most acuteness scores stay the same.
LiveUpdateOptimizer tracks which points moved beyond a threshold and decides
per frame whether to skip analysis, rescore only the elements around the
moved points, or rescore everything.
"""

import numpy as np
import structlog
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Set

from .acuteness import AcutenessAnalyzer, AcutenessResult
from .dual_graph import DualGraph, as_points

logger = structlog.get_logger()


class UpdateAction(str, Enum):
    SKIP = "skip"
    PARTIAL = "partial"
    FULL = "full"


class QualityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


QUALITY_SETTINGS: Dict[QualityLevel, Dict[str, int]] = {
    QualityLevel.HIGH: {"max_neighbors": 6, "skip_frames": 1},
    QualityLevel.MEDIUM: {"max_neighbors": 4, "skip_frames": 2},
    QualityLevel.LOW: {"max_neighbors": 3, "skip_frames": 4},
}


@dataclass
class UpdatePlan:
    action: UpdateAction
    dirty: Set[int] = field(default_factory=set)
    moved: Set[int] = field(default_factory=set)


def get_lod_level(camera_distance: float) -> QualityLevel:
    """Level of detail for a camera at the given distance."""
    if camera_distance < 10:
        return QualityLevel.HIGH
    if camera_distance < 50:
        return QualityLevel.MEDIUM
    return QualityLevel.LOW


class LiveUpdateOptimizer:
    """
    Decides how much of the acuteness analysis to redo each frame.

    Args:
        update_threshold: Displacement above which a point counts as moved
        frame_skip: Analyse at most every ``frame_skip``-th frame
        full_recompute_ratio: Share of dirty cells above which everything
            is rescored
    """

    def __init__(self, update_threshold: float = 0.001, frame_skip: int = 2,
                 full_recompute_ratio: float = 0.3):
        if frame_skip < 1:
            raise ValueError(f"frame_skip must be at least 1, got {frame_skip}")
        self.update_threshold = update_threshold
        self.frame_skip = frame_skip
        self.full_recompute_ratio = full_recompute_ratio

        self.previous_positions: Dict[int, np.ndarray] = {}
        self.previous_result: Optional[AcutenessResult] = None
        self.previous_tetrahedra: Optional[np.ndarray] = None
        self.current_frame = 0
        self.last_plan: Optional[UpdatePlan] = None
        # Moves seen on skipped frames, rescored on the next analysed frame
        self._pending: Set[int] = set()

    def get_moved_points(self, points) -> Set[int]:
        """
        Indices that moved more than ``update_threshold`` since they were
        last recorded. Points seen for the first time count as moved.
        """
        points = as_points(points)
        moved = set()
        threshold_sq = self.update_threshold * self.update_threshold
        for idx, point in enumerate(points):
            previous = self.previous_positions.get(idx)
            if previous is None or float(np.sum((point - previous) ** 2)) > threshold_sq:
                moved.add(idx)
                self.previous_positions[idx] = point.copy()
        return moved

    def should_update(self, moved: Set[int]) -> bool:
        """Advance the frame counter and report whether this frame is analysed."""
        self.current_frame += 1
        if self.current_frame % self.frame_skip != 0:
            return False
        return len(moved) > 0

    def get_affected_cells(self, graph: DualGraph, moved: Set[int]) -> Set[int]:
        """Moved points plus the points sharing a tetrahedron with them."""
        affected = set(moved)
        for idx in moved:
            affected.update(graph.point_neighbors(idx))
        return affected

    def _topology_changed(self, graph: DualGraph) -> bool:
        previous = self.previous_tetrahedra
        return previous is None or not np.array_equal(previous, graph.tetrahedra)

    def decide(self, graph: DualGraph, points=None) -> UpdatePlan:
        """
        Plan the analysis of one frame.

        A full rescore is forced when there is no previous result or the
        tetrahedra changed, since old scores no longer line up with the mesh.
        """
        points = graph.points if points is None else points
        moved = self.get_moved_points(points)
        self._pending.update(moved)
        analyse = self.should_update(self._pending)

        if self.previous_result is None or self._topology_changed(graph):
            plan = UpdatePlan(UpdateAction.FULL, set(range(graph.n_points)), moved)
        elif not analyse:
            plan = UpdatePlan(UpdateAction.SKIP, set(), moved)
        else:
            dirty = self.get_affected_cells(graph, self._pending)
            if len(dirty) > graph.n_points * self.full_recompute_ratio:
                plan = UpdatePlan(UpdateAction.FULL, dirty, moved)
            else:
                plan = UpdatePlan(UpdateAction.PARTIAL, dirty, moved)

        self.last_plan = plan
        return plan

    def analyze_with_live_updates(self, analyzer: AcutenessAnalyzer, points=None,
                                  runner=None) -> Optional[AcutenessResult]:
        """
        Score the analyzer's graph, reusing previous scores where possible.

        Args:
            analyzer: Analyzer over the current graph
            points: Current points, defaults to the graph's points
            runner: Optional ParallelAcutenessRunner used for full rescoring

        Returns:
            Scores for the current graph (the previous ones on skipped frames),
            or None when a full rescore was cancelled
        """
        graph = analyzer.graph
        plan = self.decide(graph, points)

        if plan.action == UpdateAction.SKIP:
            return self.previous_result

        if plan.action == UpdateAction.FULL:
            logger.debug("Full acuteness recalculation", moved=len(plan.moved))
            result = runner.run(analyzer) if runner is not None else analyzer.analyze()
            if result is None:
                # Cancelled; the stored scores belong to an older mesh
                return None
        else:
            logger.debug("Incremental acuteness update", dirty=len(plan.dirty))
            result = self._partial_update(analyzer, plan.dirty)

        self.previous_result = result
        self.previous_tetrahedra = graph.tetrahedra.copy()
        self._pending.clear()
        return result

    def _partial_update(self, analyzer: AcutenessAnalyzer, dirty: Set[int]) -> AcutenessResult:
        """Rescore only the elements whose geometry depends on dirty points."""
        graph = analyzer.graph
        previous = self.previous_result

        dirty_array = np.fromiter(dirty, dtype=np.int64, count=len(dirty))
        tet_mask = np.isin(graph.tetrahedra, dirty_array).any(axis=1)
        dirty_tets = set(np.flatnonzero(tet_mask).tolist())

        vertex_idx = sorted(dirty_tets)
        face_idx = [i for i, face in enumerate(graph.faces)
                    if dirty_tets.intersection(face.vertex_indices)]
        cell_idx = sorted(set(np.unique(graph.tetrahedra[tet_mask]).tolist()))

        # An edge score also depends on the directions of the edges sharing
        # its endpoints, so the barycenters one edge away are dirty too.
        near_tets = set(dirty_tets)
        for edge in graph.edges:
            if edge.start in dirty_tets or edge.end in dirty_tets:
                near_tets.update((edge.start, edge.end))
        edge_idx = [i for i, edge in enumerate(graph.edges)
                    if edge.start in near_tets or edge.end in near_tets]

        vertex = previous.vertex_scores.copy()
        face = previous.face_scores.copy()
        cell = previous.cell_scores.copy()
        edge = previous.edge_scores.copy()

        vertex[vertex_idx] = analyzer.vertex_scores(vertex_idx)
        face[face_idx] = analyzer.face_scores(face_idx)
        cell[cell_idx] = analyzer.cell_scores(cell_idx)
        edge[edge_idx] = analyzer.edge_scores(edge_idx)

        return AcutenessResult(vertex, face, cell, edge, performance={
            "partial": True,
            "rescored": {"vertex": len(vertex_idx), "face": len(face_idx),
                         "cell": len(cell_idx), "edge": len(edge_idx)},
        })

    def reset(self) -> None:
        self.previous_positions.clear()
        self.previous_result = None
        self.previous_tetrahedra = None
        self.current_frame = 0
        self.last_plan = None
        self._pending.clear()


class FrameRateAdapter:
    """
    Lowers or raises rendering quality to hold a target frame rate.

    Frame times are averaged over a moving window of the last 10 frames.
    """

    def __init__(self, target_fps: float = 30, window: int = 10):
        self.target_fps = target_fps
        self.measurements = deque(maxlen=window)
        self.quality_level = QualityLevel.HIGH

    def measure_frame(self, delta_ms: float) -> QualityLevel:
        self.measurements.append(delta_ms)
        average = sum(self.measurements) / len(self.measurements)
        current_fps = 1000.0 / average if average > 0 else float("inf")

        if current_fps < self.target_fps * 0.7:
            self.decrease_quality()
        elif current_fps > self.target_fps * 0.95:
            self.increase_quality()
        return self.quality_level

    def decrease_quality(self) -> None:
        if self.quality_level == QualityLevel.HIGH:
            self.quality_level = QualityLevel.MEDIUM
            logger.info("Reducing quality to maintain frame rate", quality=self.quality_level.value)
        elif self.quality_level == QualityLevel.MEDIUM:
            self.quality_level = QualityLevel.LOW
            logger.info("Further reducing quality", quality=self.quality_level.value)

    def increase_quality(self) -> None:
        if self.quality_level == QualityLevel.LOW:
            self.quality_level = QualityLevel.MEDIUM
        elif self.quality_level == QualityLevel.MEDIUM:
            self.quality_level = QualityLevel.HIGH

    def get_quality_settings(self) -> Dict[str, int]:
        return dict(QUALITY_SETTINGS[self.quality_level])
