from __future__ import annotations

import threading

import numpy as np

from dcdispatch.core.errors import EvaluationError
from dcdispatch.core.network.model import NetworkModel


class ObjectiveEvaluator:
    """Total generation cost of a network as a black-box function of the free angles.

    The cost is evaluated at the clipped generation, so angle combinations
    that push a bus past its limits still give a finite cost.
    """

    def __init__(self, network: NetworkModel):
        self.network = network
        self._lock = threading.Lock()
        self._n_evaluations = 0

    @property
    def dimension(self) -> int:
        return self.network.dimension

    @property
    def n_evaluations(self) -> int:
        return self._n_evaluations

    def evaluate(self, angles) -> float:
        angles = np.asarray(angles, dtype=float).reshape(-1)
        if not np.all(np.isfinite(angles)):
            raise EvaluationError(f"Non-finite angle vector: {angles}")
        generation = self.network.generator_output(angles)
        cost = float(np.sum(self.network.cost_offset + self.network.cost_linear * generation))
        with self._lock:
            self._n_evaluations += 1
        return cost

    __call__ = evaluate

    def bus_costs(self, angles) -> np.ndarray:
        """Cost contribution of every bus at the given angles."""
        generation = self.network.generator_output(angles)
        return self.network.cost_offset + self.network.cost_linear * generation
