"""
Acuteness-driven growth of Voronoi cells.

Each cell's acuteness score is turned into a signed flux. A positive flux
pushes the generator point away from its cell centroid, which enlarges the
cell; a negative flux pulls the point towards the centroid. Displacements
carry momentum from one step to the next.
"""

import numpy as np
import structlog
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, Field

from ..utils import random as shared_random
from .alea_prng import AleaPRNG
from .dual_graph import DualGraph, as_points
from .periodic import displacement, wrap

logger = structlog.get_logger()

# Directions shorter than this are treated as "point sits on its centroid"
MIN_DIRECTION_LENGTH = 1e-6
FALLBACK_DIRECTION_SCALE = 0.01


class GrowthMode(str, Enum):
    """How scores above and below the threshold move a cell."""

    MORE_GROW_ONLY = "more_grow_only"
    MORE_GROW_BOTH = "more_grow_both"
    MORE_SHRINK_ONLY = "more_shrink_only"
    MORE_SHRINK_BOTH = "more_shrink_both"


class GrowthConfig(BaseModel):
    """Growth parameters."""

    k: float = Field(default=0.001, description="Base growth rate multiplier")
    normalize: bool = Field(default=True, description="Divide flux by its largest magnitude")
    damping: float = Field(default=0.7, ge=0.0, le=1.0, description="Momentum kept from the previous step")
    max_delta: float = Field(default=0.02, ge=0.0, description="Largest displacement per step")
    dt: float = Field(default=0.0, ge=0.0, description="Time step multiplier, ignored when 0")
    threshold: float = Field(default=5, description="Score separating growing from shrinking cells")
    growth_power: float = Field(default=1.5, description="Exponent applied to the flux magnitude")
    mode: GrowthMode = Field(default=GrowthMode.MORE_GROW_BOTH, description="Growth mode")

    model_config = {"validate_assignment": True}


@dataclass
class GrowthStats:
    total_displacement: float = 0.0
    max_displacement: float = 0.0
    active_points: int = 0
    growing_points: int = 0
    shrinking_points: int = 0

    @property
    def average_displacement(self) -> float:
        if self.active_points == 0:
            return 0.0
        return self.total_displacement / self.active_points

    def as_dict(self) -> Dict[str, float]:
        data = asdict(self)
        data["average_displacement"] = self.average_displacement
        return data


def compute_flux(cell_scores, config: GrowthConfig) -> np.ndarray:
    """
    Signed flux per point.

    The magnitude is ``|score - threshold| ** growth_power``; the sign says
    whether the cell grows (+) or shrinks (-) under the configured mode.
    Scores on the threshold, and scores on the side a mode ignores, give 0.

    Args:
        cell_scores: Cell acuteness score per point
        config: Growth parameters

    Returns:
        Float array of the same length as ``cell_scores``
    """
    scores = np.asarray(cell_scores, dtype=np.float64)
    above = scores > config.threshold
    below = scores < config.threshold
    magnitude = np.abs(scores - config.threshold) ** config.growth_power

    sign = np.zeros(len(scores))
    mode = config.mode
    if mode == GrowthMode.MORE_GROW_ONLY:
        sign[above] = 1.0
    elif mode == GrowthMode.MORE_GROW_BOTH:
        sign[above] = 1.0
        sign[below] = -1.0
    elif mode == GrowthMode.MORE_SHRINK_ONLY:
        sign[above] = -1.0
    elif mode == GrowthMode.MORE_SHRINK_BOTH:
        sign[above] = -1.0
        sign[below] = 1.0

    flux = sign * magnitude
    if config.normalize:
        max_flux = np.max(np.abs(flux)) if len(flux) else 0.0
        if max_flux > 0:
            flux = flux / max_flux
    return flux


class GrowthEngine:
    """
    Moves generator points according to their cell scores.

    The engine keeps the last displacement of every point it has moved, so
    consecutive calls to ``apply_growth`` must come from one sequential run.
    """

    def __init__(self, config: Optional[GrowthConfig] = None, prng: Optional[AleaPRNG] = None):
        self.config = config or GrowthConfig()
        self.prng = prng
        self.previous_deltas: Dict[int, float] = {}
        self.last_stats = GrowthStats()

    def _random_direction(self) -> np.ndarray:
        prng = self.prng or shared_random.get_prng()
        return np.array(prng.jitter(FALLBACK_DIRECTION_SCALE))

    def apply_growth(self, points, graph: Optional[DualGraph], cell_scores) -> np.ndarray:
        """
        One growth step.

        Args:
            points: (N, 3) generator points
            graph: Dual graph built from ``points``
            cell_scores: Cell acuteness score per point

        Returns:
            New (N, 3) array; the input is not modified
        """
        points = as_points(points)
        new_points = points.copy()
        self.last_stats = GrowthStats()

        if graph is None or cell_scores is None:
            logger.warning("No analysis results available for growth")
            return new_points
        if graph.is_empty:
            logger.warning("Dual graph is empty, skipping growth")
            return new_points

        scores = np.zeros(len(points))
        available = np.asarray(cell_scores, dtype=np.float64)[:len(points)]
        scores[:len(available)] = available
        flux = compute_flux(scores, self.config)

        config = self.config
        stats = self.last_stats
        for i in np.flatnonzero(flux):
            centroid = graph.cell_centroid(int(i))
            if centroid is None:
                continue

            direction = displacement(centroid, points[i], graph.periodic)

            length = np.linalg.norm(direction)
            if length < MIN_DIRECTION_LENGTH:
                direction = self._random_direction()
            else:
                direction = direction / length

            delta = config.k * flux[i]
            delta = config.damping * self.previous_deltas.get(int(i), 0.0) + (1 - config.damping) * delta
            delta = float(np.clip(delta, -config.max_delta, config.max_delta))
            if config.dt > 0:
                delta *= config.dt
            self.previous_deltas[int(i)] = delta

            moved = points[i] + direction * delta
            new_points[i] = wrap(moved) if graph.periodic else np.clip(moved, 0.0, 1.0)

            if delta != 0:
                stats.active_points += 1
                stats.total_displacement += abs(delta)
                stats.max_displacement = max(stats.max_displacement, abs(delta))
                if flux[i] > 0:
                    stats.growing_points += 1
                else:
                    stats.shrinking_points += 1

        logger.debug("Growth step applied", **stats.as_dict())
        return new_points

    def stats(self) -> GrowthStats:
        return self.last_stats

    def reset(self) -> None:
        """Forget momentum and statistics."""
        self.previous_deltas.clear()
        self.last_stats = GrowthStats()

    def update_config(self, **changes) -> GrowthConfig:
        """
        Replace some growth parameters.

        Raises:
            pydantic.ValidationError: If a value is invalid
        """
        config = self.config.model_copy()
        for name, value in changes.items():
            setattr(config, name, value)
        self.config = config
        logger.info("Growth configuration updated", **{k: str(v) for k, v in changes.items()})
        return self.config
