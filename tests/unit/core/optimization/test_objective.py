import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from dcdispatch.core.errors import EvaluationError
from dcdispatch.core.optimization.objective import ObjectiveEvaluator


def test_cost_at_zero_angles(three_bus_network):
    evaluator = ObjectiveEvaluator(three_bus_network)
    # demand dispatched where it is: 2 * 100 + 3 * 50 + 2.5 * 75
    assert evaluator([0.0, 0.0]) == pytest.approx(537.5)
    assert evaluator.dimension == 2


def test_cost_uses_clipped_generation(three_bus_network):
    evaluator = ObjectiveEvaluator(three_bus_network)
    angles = np.array([-math.pi, 0.0])
    generation = three_bus_network.generator_output(angles)
    expected = float(np.dot(three_bus_network.cost_linear, generation))
    assert evaluator.evaluate(angles) == pytest.approx(expected)
    np.testing.assert_allclose(evaluator.bus_costs(angles), three_bus_network.cost_linear * generation)


def test_objective_is_total_inside_bounds(three_bus_network):
    evaluator = ObjectiveEvaluator(three_bus_network)
    grid = np.linspace(-math.pi, math.pi, 7)
    for a in grid:
        for b in grid:
            assert math.isfinite(evaluator([a, b]))


def test_non_finite_angles_rejected(three_bus_network):
    evaluator = ObjectiveEvaluator(three_bus_network)
    with pytest.raises(EvaluationError):
        evaluator([math.nan, 0.0])
    assert evaluator.n_evaluations == 0


def test_evaluation_counter_is_thread_safe(three_bus_network):
    evaluator = ObjectiveEvaluator(three_bus_network)
    points = [np.array([0.01 * k, -0.01 * k]) for k in range(50)]
    with ThreadPoolExecutor(max_workers=4) as executor:
        values = list(executor.map(evaluator, points))
    assert evaluator.n_evaluations == 50
    assert values == [evaluator(p) for p in points]
