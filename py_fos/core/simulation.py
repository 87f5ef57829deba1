"""
Growth simulation loop.

One step triangulates the current points, builds the dual graph, scores it
and moves the points, either with the direct growth engine or with the
physics expansion model.
"""

import time
import numpy as np
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..utils import random as shared_random
from .acuteness import AcutenessAnalyzer, AcutenessOptions, AcutenessResult
from .alea_prng import AleaPRNG
from .dual_graph import DualGraph, DualGraphBuilder, as_points
from .growth import GrowthConfig, GrowthEngine, GrowthStats, compute_flux
from .live_update import LiveUpdateOptimizer, UpdateAction
from .parallel import ParallelAcutenessRunner
from .periodic import wrap
from .physics_expansion import PhysicsExpansion, PhysicsOptions, PhysicsStepResult
from .triangulation import ScipyTriangulator

logger = structlog.get_logger()


class GrowthModel(str, Enum):
    """How scores are turned into point motion."""

    GROWTH = "growth"
    PHYSICS = "physics"


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass
class SimulationStep:
    index: int
    graph: Optional[DualGraph]
    scores: Optional[AcutenessResult]
    status: StepStatus = StepStatus.OK
    message: str = ""
    update_action: Optional[UpdateAction] = None
    growth_stats: Optional[GrowthStats] = None
    physics: Optional[PhysicsStepResult] = None
    duration_ms: float = 0.0
    points: Optional[np.ndarray] = field(default=None, repr=False)


class GrowthSimulation:
    """
    Runs growth steps over a set of generator points.

    Args:
        points: (N, 3) initial points in the unit cube
        periodic: Whether the cube is periodic
        model: Point motion model
        growth_config: Growth parameters; also used to derive physics growth rates
        acuteness_options: Scoring options
        physics_options: Physics parameters, used by the physics model
        triangulator: Object with ``triangulate(points, periodic)``; defaults
            to ScipyTriangulator
        parallel: Optional runner for chunked parallel scoring
        live_updates: Optional optimizer gating rescoring between steps
        seed: Seed for random fallback directions; the shared generator is
            used when omitted
    """

    def __init__(self, points, periodic: bool = True, model: GrowthModel = GrowthModel.GROWTH,
                 growth_config: Optional[GrowthConfig] = None,
                 acuteness_options: Optional[AcutenessOptions] = None,
                 physics_options: Optional[PhysicsOptions] = None,
                 triangulator=None,
                 parallel: Optional[ParallelAcutenessRunner] = None,
                 live_updates: Optional[LiveUpdateOptimizer] = None,
                 seed: Optional[str] = None):
        self.initial_points = as_points(points).copy()
        self.points = self.initial_points.copy()
        self.periodic = bool(periodic)
        self.model = GrowthModel(model)
        self.acuteness_options = acuteness_options or AcutenessOptions()
        self.triangulator = triangulator or ScipyTriangulator()
        self.parallel = parallel
        self.live_updates = live_updates

        prng = AleaPRNG(seed) if seed is not None else shared_random.get_prng()
        self.growth = GrowthEngine(growth_config, prng=prng)

        physics_options = physics_options or PhysicsOptions()
        if physics_options.periodic != self.periodic:
            physics_options = physics_options.model_copy(update={"periodic": self.periodic})
        self.physics = PhysicsExpansion(physics_options)

        self.builder = DualGraphBuilder()
        self.step_index = 0

    def _analyze(self, analyzer: AcutenessAnalyzer) -> Optional[AcutenessResult]:
        if self.live_updates is not None:
            return self.live_updates.analyze_with_live_updates(analyzer, self.points,
                                                               runner=self.parallel)
        if self.parallel is not None:
            return self.parallel.run(analyzer)
        return analyzer.analyze()

    def _failed(self, started: float, message: str, graph: Optional[DualGraph] = None) -> SimulationStep:
        step = SimulationStep(index=self.step_index, graph=graph, scores=None,
                              status=StepStatus.FAILED, message=message,
                              duration_ms=(time.perf_counter() - started) * 1000,
                              points=self.points.copy())
        logger.warning("Simulation step failed", step=self.step_index, reason=message)
        self.step_index += 1
        return step

    def _confine(self, points: np.ndarray) -> np.ndarray:
        return wrap(points) if self.periodic else np.clip(points, 0.0, 1.0)

    def step(self) -> SimulationStep:
        """
        Run one growth step.

        A failed triangulation or a cancelled analysis produces a FAILED step
        and leaves the points unchanged.
        """
        started = time.perf_counter()

        triangulation = self.triangulator.triangulate(self.points, self.periodic)
        if not triangulation.ok:
            return self._failed(started, triangulation.message or "triangulation failed")

        graph = self.builder.build(self.points, triangulation.tetrahedra, self.periodic)
        if graph.is_empty:
            return self._failed(started, "no valid tetrahedra", graph)

        analyzer = AcutenessAnalyzer(graph, self.acuteness_options)
        scores = self._analyze(analyzer)
        if scores is None:
            return self._failed(started, "analysis cancelled", graph)

        step = SimulationStep(index=self.step_index, graph=graph, scores=scores)
        if self.live_updates is not None and self.live_updates.last_plan is not None:
            step.update_action = self.live_updates.last_plan.action

        if self.model == GrowthModel.GROWTH:
            new_points = self.growth.apply_growth(self.points, graph, scores.cell_scores)
            step.growth_stats = self.growth.stats()
        else:
            self.physics.set_growth_rates(compute_flux(scores.cell_scores, self.growth.config))
            step.physics = self.physics.apply_physics_step(self.points, graph.cell_coordinates())
            new_points = self._confine(step.physics.new_points)

        self.points = new_points
        step.points = new_points.copy()
        step.duration_ms = (time.perf_counter() - started) * 1000

        logger.info("Simulation step complete", step=self.step_index, model=self.model.value,
                    tetrahedra=len(graph.tetrahedra),
                    mean_cell_score=round(float(np.mean(scores.cell_scores)), 2),
                    duration_ms=round(step.duration_ms, 2))
        self.step_index += 1
        return step

    def run(self, steps: int) -> List[SimulationStep]:
        """Run ``steps`` consecutive steps."""
        logger.info("Starting growth simulation", steps=steps, points=len(self.points),
                    periodic=self.periodic, model=self.model.value)
        return [self.step() for _ in range(steps)]

    def reset(self) -> None:
        """Restore the initial points and clear all engine state."""
        self.points = self.initial_points.copy()
        self.growth.reset()
        self.physics.reset()
        if self.live_updates is not None:
            self.live_updates.reset()
        self.builder.invalidate()
        self.step_index = 0
