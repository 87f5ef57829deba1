"""
Force-based expansion of growing cells.

A growing cell pushes the generator points of its neighbouring cells away
(and a shrinking one pulls them in) with an inverse-square force. Points
integrate the forces into damped velocities, so expansion spreads through the
mesh over several steps instead of moving a single point.
"""

import numpy as np
import structlog
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Set
from pydantic import BaseModel, Field
from scipy.spatial import cKDTree

from .periodic import displacement

logger = structlog.get_logger()

# Share of a push that acts back on the growing cell
REACTION_FACTOR = 0.5
# Forces at or below this magnitude are not reported for visualisation
VISIBLE_FORCE = 1e-3


class PhysicsOptions(BaseModel):
    """Physics expansion parameters."""

    force_strength: float = Field(default=0.5, description="Force per unit growth rate at unit distance")
    damping: float = Field(default=0.8, ge=0.0, le=1.0, description="Velocity kept after each step")
    max_force: float = Field(default=0.1, ge=0.0, description="Largest force magnitude between two cells")
    min_distance: float = Field(default=0.01, ge=0.0, description="Below this distance no force acts")
    vertex_tolerance: float = Field(
        default=1e-4, gt=0.0, description="Per-axis tolerance for treating two cell vertices as shared"
    )
    min_growth_rate: float = Field(default=0.001, ge=0.0, description="Smaller growth rates are ignored")
    periodic: bool = Field(default=False, description="Measure force directions by minimum image")


@dataclass
class ForceVector:
    index: int
    force: np.ndarray
    magnitude: float


@dataclass
class PhysicsStepResult:
    new_points: np.ndarray
    max_displacement: float
    average_force: float


def find_cell_neighbors(cells: Mapping[int, np.ndarray], tolerance: float) -> Dict[int, Set[int]]:
    """
    Cells that share at least two vertices.

    Two vertices are shared when every coordinate differs by less than
    ``tolerance``. For each pair of cells the shared count is the number of
    distinct vertices of the lower-indexed cell with a match in the other.

    Args:
        cells: Cell index -> (k, 3) vertex coordinates
        tolerance: Per-axis matching tolerance

    Returns:
        Cell index -> set of neighbouring cell indices, with an entry for
        every cell in ``cells``
    """
    neighbors: Dict[int, Set[int]] = {index: set() for index in cells}

    owners = []
    coords = []
    for index, vertices in cells.items():
        vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        owners.extend([index] * len(vertices))
        coords.append(vertices)
    if not owners:
        return neighbors

    coords = np.concatenate(coords)
    owners = np.asarray(owners)
    tree = cKDTree(coords)

    # (lower cell, higher cell) -> vertex rows of the lower cell with a match
    shared: Dict[tuple, Set[int]] = {}
    for a, b in tree.query_pairs(r=tolerance, p=np.inf):
        if owners[a] == owners[b]:
            continue
        if np.any(np.abs(coords[a] - coords[b]) >= tolerance):
            continue
        if owners[a] > owners[b]:
            a, b = b, a
        shared.setdefault((owners[a], owners[b]), set()).add(a)

    for (low, high), rows in shared.items():
        if len(rows) >= 2:
            neighbors[int(low)].add(int(high))
            neighbors[int(high)].add(int(low))
    return neighbors


class PhysicsExpansion:
    """
    Pushes neighbouring generator points away from growing cells.

    Growth rates are set per cell, then each ``apply_physics_step`` turns them
    into forces, velocities and new positions. Velocities persist between
    steps; the neighbour cache is rebuilt after every step.
    """

    def __init__(self, options: Optional[PhysicsOptions] = None):
        self.options = options or PhysicsOptions()
        self.forces: Dict[int, np.ndarray] = {}
        self.velocities: Dict[int, np.ndarray] = {}
        self.growth_rates: Dict[int, float] = {}
        self._neighbor_cache: Optional[Dict[int, Set[int]]] = None

    # Neighbours

    def find_cell_neighbors(self, cell_index: int, cells: Mapping[int, np.ndarray]) -> Set[int]:
        if self._neighbor_cache is None:
            self._neighbor_cache = find_cell_neighbors(cells, self.options.vertex_tolerance)
            logger.debug("Cell neighbour cache rebuilt", cells=len(self._neighbor_cache))
        return self._neighbor_cache.get(cell_index, set())

    def invalidate_neighbors(self) -> None:
        self._neighbor_cache = None

    # Growth rates

    def set_growth_rate(self, cell_index: int, rate: float) -> None:
        if rate == 0:
            self.growth_rates.pop(cell_index, None)
        else:
            self.growth_rates[cell_index] = float(rate)

    def set_growth_rates(self, rates) -> None:
        """Replace all growth rates with one value per point index."""
        self.clear_growth_rates()
        for index, rate in enumerate(np.asarray(rates, dtype=np.float64)):
            self.set_growth_rate(index, rate)

    def clear_growth_rates(self) -> None:
        self.growth_rates.clear()

    # Forces

    def calculate_force(self, from_point, to_point, growth_rate: float) -> np.ndarray:
        """
        Force on ``to_point`` caused by the cell at ``from_point``.

        Inverse-square in the distance and linear in the growth rate, with
        its magnitude clamped to ``max_force``. Negative rates pull.
        """
        options = self.options
        delta = displacement(from_point, to_point, options.periodic)
        distance = float(np.linalg.norm(delta))
        if distance < options.min_distance:
            return np.zeros(3)

        magnitude = growth_rate * options.force_strength / (distance * distance)
        magnitude = np.sign(magnitude) * min(abs(magnitude), options.max_force)
        return delta / distance * magnitude

    def apply_physics_step(self, points, cells: Mapping[int, np.ndarray],
                           dt: float = 0.016) -> PhysicsStepResult:
        """
        Advance the expansion by one time step.

        Args:
            points: (N, 3) generator points
            cells: Point index -> cell vertex coordinates
            dt: Time step

        Returns:
            PhysicsStepResult with the moved points; positions are not wrapped
        """
        points = np.asarray(points, dtype=np.float64)
        forces = np.zeros_like(points)

        for growing, rate in self.growth_rates.items():
            if abs(rate) < self.options.min_growth_rate or growing >= len(points):
                continue
            for neighbor in sorted(self.find_cell_neighbors(growing, cells)):
                if neighbor >= len(points):
                    continue
                force = self.calculate_force(points[growing], points[neighbor], rate)
                forces[neighbor] += force
                forces[growing] -= force * REACTION_FACTOR

        new_points = points.copy()
        max_displacement = 0.0
        total_force = 0.0
        self.forces = {}
        for index in range(len(points)):
            velocity = self.velocities.get(index, np.zeros(3))
            velocity = (velocity + forces[index] * dt) * self.options.damping
            self.velocities[index] = velocity
            self.forces[index] = forces[index]

            new_points[index] = points[index] + velocity * dt
            max_displacement = max(max_displacement, float(np.linalg.norm(velocity)) * dt)
            total_force += float(np.linalg.norm(forces[index]))

        self.invalidate_neighbors()

        average_force = total_force / len(points) if len(points) else 0.0
        logger.debug("Physics step applied", growing=len(self.growth_rates),
                     max_displacement=max_displacement, average_force=average_force)
        return PhysicsStepResult(new_points=new_points, max_displacement=max_displacement,
                                 average_force=average_force)

    def get_force_vectors(self) -> List[ForceVector]:
        """Forces of the last step that are large enough to draw."""
        vectors = []
        for index, force in self.forces.items():
            magnitude = float(np.linalg.norm(force))
            if magnitude > VISIBLE_FORCE:
                vectors.append(ForceVector(index=index, force=force, magnitude=magnitude))
        return vectors

    def reset(self) -> None:
        self.forces.clear()
        self.velocities.clear()
        self.growth_rates.clear()
        self.invalidate_neighbors()
