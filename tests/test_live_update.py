"""Tests for live update gating."""

import pytest
import numpy as np
from py_fos.core.acuteness import AcutenessAnalyzer
from py_fos.core.dual_graph import DualGraphBuilder
from py_fos.core.live_update import (
    LiveUpdateOptimizer, FrameRateAdapter, QualityLevel, UpdateAction, get_lod_level
)
from py_fos.core.parallel import ParallelAcutenessRunner
from py_fos.core.triangulation import ScipyTriangulator, jittered_points


class CancellingAnalyzer(AcutenessAnalyzer):
    """Analyzer that cancels its runner while scoring."""

    runner = None

    def vertex_scores(self, indices=None):
        self.runner.cancel()
        return super().vertex_scores(indices)


class TestMovementTracking:
    """Test moved-point detection and the frame gate."""

    @pytest.fixture
    def optimizer(self):
        return LiveUpdateOptimizer()

    def test_first_sight_counts_as_moved(self, optimizer):
        points = np.array([[0.1, 0.1, 0.1], [0.5, 0.5, 0.5]])
        assert optimizer.get_moved_points(points) == {0, 1}
        assert optimizer.get_moved_points(points) == set()

    def test_threshold(self, optimizer):
        points = np.array([[0.1, 0.1, 0.1], [0.5, 0.5, 0.5]])
        optimizer.get_moved_points(points)

        moved = points.copy()
        moved[0, 0] += 0.01
        moved[1, 0] += 0.0005
        assert optimizer.get_moved_points(moved) == {0}

    def test_frame_skip(self, optimizer):
        assert optimizer.should_update({1}) is False
        assert optimizer.should_update({1}) is True
        assert optimizer.should_update({1}) is False
        assert optimizer.should_update(set()) is False

    def test_invalid_frame_skip(self):
        with pytest.raises(ValueError):
            LiveUpdateOptimizer(frame_skip=0)

    def test_affected_cells(self, pair_graph, optimizer):
        assert optimizer.get_affected_cells(pair_graph, {0}) == {0, 1, 2, 3}
        assert optimizer.get_affected_cells(pair_graph, set()) == set()

    def test_lod(self):
        assert get_lod_level(5) == QualityLevel.HIGH
        assert get_lod_level(20) == QualityLevel.MEDIUM
        assert get_lod_level(100) == QualityLevel.LOW


class TestLiveAnalysis:
    """Test skip, partial and full rescoring."""

    @pytest.fixture
    def points(self):
        return jittered_points(5, seed="live_update")

    @pytest.fixture
    def tetrahedra(self, points):
        return ScipyTriangulator().triangulate(points, periodic=False).tetrahedra

    @pytest.fixture
    def optimizer(self):
        return LiveUpdateOptimizer(frame_skip=1)

    def test_first_frame_is_full(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        plan = optimizer.decide(graph)
        assert plan.action == UpdateAction.FULL

    def test_skip_without_motion(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        first = optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))
        second = optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))

        assert optimizer.last_plan.action == UpdateAction.SKIP
        assert second is first

    def test_partial_matches_full(self, optimizer, points, tetrahedra):
        """Test that rescoring the dirty region equals rescoring everything."""
        builder = DualGraphBuilder()
        graph = builder.build(points, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))

        moved = points.copy()
        moved[62] += [0.003, -0.002, 0.001]
        moved_graph = builder.build(moved, tetrahedra, periodic=False)
        partial = optimizer.analyze_with_live_updates(AcutenessAnalyzer(moved_graph))

        assert optimizer.last_plan.action == UpdateAction.PARTIAL
        assert 62 in optimizer.last_plan.dirty
        assert partial.performance["partial"] is True

        full = AcutenessAnalyzer(moved_graph).analyze()
        for kind, scores in full.as_dict().items():
            np.testing.assert_array_equal(partial.as_dict()[kind], scores)

    def test_topology_change_forces_full(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))

        fewer = DualGraphBuilder().build(points, tetrahedra[:-1], periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(fewer))
        assert optimizer.last_plan.action == UpdateAction.FULL

    def test_many_moves_force_full(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))

        shifted = DualGraphBuilder().build(points * 0.99, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(shifted))
        assert optimizer.last_plan.action == UpdateAction.FULL

    def test_full_with_runner(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        runner = ParallelAcutenessRunner(max_workers=2, chunk_size=16)
        result = optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph), runner=runner)

        expected = AcutenessAnalyzer(graph).analyze()
        np.testing.assert_array_equal(result.cell_scores, expected.cell_scores)
        assert "worker_metrics" in result.performance

    def test_cancelled_full_returns_nothing(self, optimizer, points, tetrahedra):
        """Test that a cancelled rescore of a new mesh does not return old scores."""
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        first = optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))

        fewer = DualGraphBuilder().build(points, tetrahedra[:-1], periodic=False)
        runner = ParallelAcutenessRunner(max_workers=2, chunk_size=16)
        analyzer = CancellingAnalyzer(fewer)
        analyzer.runner = runner

        assert optimizer.analyze_with_live_updates(analyzer, runner=runner) is None
        assert optimizer.last_plan.action == UpdateAction.FULL
        assert optimizer.previous_result is first
        np.testing.assert_array_equal(optimizer.previous_tetrahedra, graph.tetrahedra)

        result = optimizer.analyze_with_live_updates(AcutenessAnalyzer(fewer), runner=runner)
        assert len(result.vertex_scores) == len(fewer.tetrahedra)

    def test_moves_on_skipped_frames_are_kept(self, points, tetrahedra):
        """Test that motion seen on a skipped frame is rescored later."""
        optimizer = LiveUpdateOptimizer(frame_skip=2)
        builder = DualGraphBuilder()
        graph = builder.build(points, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))  # frame 1, full
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))  # frame 2, nothing moved
        assert optimizer.last_plan.action == UpdateAction.SKIP

        moved = points.copy()
        moved[62] += [0.003, 0.0, 0.0]
        moved_graph = builder.build(moved, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(moved_graph))  # frame 3, skipped
        assert optimizer.last_plan.action == UpdateAction.SKIP

        optimizer.analyze_with_live_updates(AcutenessAnalyzer(moved_graph))  # frame 4
        assert optimizer.last_plan.action == UpdateAction.PARTIAL
        assert 62 in optimizer.last_plan.dirty

    def test_reset(self, optimizer, points, tetrahedra):
        graph = DualGraphBuilder().build(points, tetrahedra, periodic=False)
        optimizer.analyze_with_live_updates(AcutenessAnalyzer(graph))
        optimizer.reset()

        assert optimizer.previous_result is None
        assert optimizer.previous_positions == {}
        assert optimizer.decide(graph).action == UpdateAction.FULL


class TestFrameRateAdapter:
    """Test adaptive quality."""

    def test_degrades_and_recovers(self):
        adapter = FrameRateAdapter(target_fps=30)
        assert adapter.measure_frame(100) == QualityLevel.MEDIUM
        assert adapter.measure_frame(100) == QualityLevel.LOW
        assert adapter.get_quality_settings() == {"max_neighbors": 3, "skip_frames": 4}

        for _ in range(10):
            adapter.measure_frame(10)
        assert adapter.quality_level == QualityLevel.HIGH
        assert adapter.get_quality_settings() == {"max_neighbors": 6, "skip_frames": 1}

    def test_steady_band(self):
        """Test that a frame rate between the two bounds keeps the level."""
        adapter = FrameRateAdapter(target_fps=30)
        adapter.quality_level = QualityLevel.MEDIUM
        adapter.measure_frame(40)  # 25 fps
        assert adapter.quality_level == QualityLevel.MEDIUM
        assert adapter.get_quality_settings() == {"max_neighbors": 4, "skip_frames": 2}
