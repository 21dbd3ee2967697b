from .interpolation import InterpolationModel, InterpolationSet
from .objective import ObjectiveEvaluator
from .results import DispatchReporter, DispatchResult
from .trust_region import OptimizationResult, TerminationStatus, TrustRegionOptimizer, solve

__all__ = [
    "DispatchReporter",
    "DispatchResult",
    "InterpolationModel",
    "InterpolationSet",
    "ObjectiveEvaluator",
    "OptimizationResult",
    "TerminationStatus",
    "TrustRegionOptimizer",
    "solve",
]
