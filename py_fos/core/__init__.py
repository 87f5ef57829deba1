"""
Core dual graph, acuteness and growth functionality.
"""

from .dual_graph import DualGraph, DualGraphBuilder, VoronoiEdge, VoronoiFace
from .acuteness import AcutenessAnalyzer, AcutenessOptions, AcutenessResult
from .parallel import ParallelAcutenessRunner
from .growth import GrowthConfig, GrowthEngine, GrowthMode
from .physics_expansion import PhysicsExpansion, PhysicsOptions
from .live_update import FrameRateAdapter, LiveUpdateOptimizer, UpdateAction
from .triangulation import ScipyTriangulator, TriangulationResult, canonicalize_tetrahedra
from .simulation import GrowthModel, GrowthSimulation, SimulationStep, StepStatus

__all__ = ['DualGraph', 'DualGraphBuilder', 'VoronoiEdge', 'VoronoiFace',
           'AcutenessAnalyzer', 'AcutenessOptions', 'AcutenessResult',
           'ParallelAcutenessRunner',
           'GrowthConfig', 'GrowthEngine', 'GrowthMode',
           'PhysicsExpansion', 'PhysicsOptions',
           'FrameRateAdapter', 'LiveUpdateOptimizer', 'UpdateAction',
           'ScipyTriangulator', 'TriangulationResult', 'canonicalize_tetrahedra',
           'GrowthModel', 'GrowthSimulation', 'SimulationStep', 'StepStatus']
