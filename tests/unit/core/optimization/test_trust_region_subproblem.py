import numpy as np
import pytest

from dcdispatch.core.optimization.subproblem import solve_trust_region_subproblem

BIG = np.array([10.0, 10.0])


def test_interior_newton_step():
    solution = solve_trust_region_subproblem(np.array([1.0, -1.0]), np.eye(2), 10.0, -BIG, BIG)
    np.testing.assert_allclose(solution.step, [-1.0, 1.0])
    assert solution.predicted_reduction == pytest.approx(1.0)
    assert not solution.hit_boundary


def test_linear_model_stops_on_ball():
    solution = solve_trust_region_subproblem(np.array([1.0, 0.0]), np.zeros((2, 2)), 0.5, -BIG, BIG)
    np.testing.assert_allclose(solution.step, [-0.5, 0.0])
    assert solution.hit_boundary
    assert solution.predicted_reduction == pytest.approx(0.5)


def test_negative_curvature_goes_to_ball():
    solution = solve_trust_region_subproblem(np.array([0.1, 0.0]), -np.eye(2), 1.0, -BIG, BIG)
    assert solution.step_norm == pytest.approx(1.0)
    assert solution.step[0] < 0.0
    assert solution.predicted_reduction > 0.0


def test_box_blocks_step_and_cg_continues():
    lower = np.array([-0.2, -5.0])
    upper = np.array([5.0, 5.0])
    solution = solve_trust_region_subproblem(np.array([1.0, 1.0]), np.eye(2), 10.0, lower, upper)
    np.testing.assert_allclose(solution.step, [-0.2, -1.0])
    assert solution.active_bounds.tolist() == [True, False]
    assert solution.predicted_reduction == pytest.approx(0.68)


def test_variable_on_bound_starts_fixed():
    lower = np.array([0.0, -5.0])
    solution = solve_trust_region_subproblem(np.array([1.0, 1.0]), np.eye(2), 10.0, lower, BIG)
    np.testing.assert_allclose(solution.step, [0.0, -1.0])


def test_zero_gradient_gives_zero_step():
    solution = solve_trust_region_subproblem(np.zeros(2), np.eye(2), 1.0, -BIG, BIG)
    np.testing.assert_allclose(solution.step, 0.0)
    assert solution.predicted_reduction == 0.0


@pytest.mark.parametrize("seed", range(5))
def test_step_is_feasible(seed):
    rng = np.random.default_rng(seed)
    n = 4
    a = rng.normal(size=(n, n))
    hessian = 0.5 * (a + a.T)
    gradient = rng.normal(size=n)
    lower = -rng.uniform(0.0, 1.0, size=n)
    upper = rng.uniform(0.0, 1.0, size=n)
    radius = 0.7
    solution = solve_trust_region_subproblem(gradient, hessian, radius, lower, upper)
    assert solution.step_norm <= radius * (1 + 1e-9)
    assert np.all(solution.step >= lower - 1e-12)
    assert np.all(solution.step <= upper + 1e-12)
    assert solution.predicted_reduction >= 0.0
