import math
import unittest
from pathlib import Path

import numpy as np
import yaml

from dcdispatch.core.config import DispatchConfiguration, SolverConfiguration, read_config_file
from dcdispatch.core.data_structures import Bus, CostCoefficient
from dcdispatch.core.errors import ConfigurationError, DegenerateGeometryError
from dcdispatch.core.model_runner import main, run_dispatch, run_dispatch_from_file
from dcdispatch.core.network.model import NetworkModel
from dcdispatch.core.optimization.trust_region import TerminationStatus

CASE_PATH = Path(__file__).resolve().parents[3] / "config" / "three_bus.yaml"

# Best cost over the default [-pi, pi] box: theta_2 = -pi, theta_3 = 7.5 - 2.5 pi.
BOXED_OPTIMUM = 450.0 + 0.5 * (75.0 + 87.5 - 22.5 * math.pi)
# Best cost once the box no longer binds: bus 1 carries all 225 MW.
UNBOUNDED_OPTIMUM = 450.0


def three_bus_network():
    config = DispatchConfiguration.from_dict(read_config_file(CASE_PATH))
    return config.network.build_network()


class TestThreeBusDispatch(unittest.TestCase):
    def test_default_bounds(self):
        network = three_bus_network()
        result = run_dispatch(network)
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertGreaterEqual(result.total_cost, BOXED_OPTIMUM - 1e-6)
        self.assertLess(result.total_cost, 500.0)
        self.assertTrue(np.all(np.abs(result.angles) <= math.pi))
        for bus in network.buses:
            dispatch = result.generator_dispatch[bus.bus_id]
            self.assertGreaterEqual(dispatch, bus.gen_min)
            self.assertLessEqual(dispatch, bus.gen_max)
        self.assertEqual(result.bus_angles[network.slack_bus_id], 0.0)

    def test_widened_bounds(self):
        network = three_bus_network()
        solver = SolverConfiguration(
            max_evaluations=50000,
            lower_bounds=[-4 * math.pi] * 2,
            upper_bounds=[4 * math.pi] * 2,
        )
        result = run_dispatch(network, solver)
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertGreaterEqual(result.total_cost, UNBOUNDED_OPTIMUM - 1e-6)
        self.assertAlmostEqual(result.total_cost, UNBOUNDED_OPTIMUM, delta=1.0)

    def test_bounds_of_wrong_length(self):
        solver = SolverConfiguration(lower_bounds=[-1.0], upper_bounds=[1.0])
        with self.assertRaises(ConfigurationError):
            run_dispatch(three_bus_network(), solver)

    def test_deterministic(self):
        first = run_dispatch(three_bus_network())
        second = run_dispatch(three_bus_network())
        np.testing.assert_array_equal(first.angles, second.angles)
        self.assertEqual(first.total_cost, second.total_cost)

    def test_budget_exhausted_still_reports(self):
        result = run_dispatch(three_bus_network(), SolverConfiguration(max_evaluations=6))
        self.assertEqual(result.status, TerminationStatus.BUDGET_EXHAUSTED)
        self.assertEqual(result.n_evaluations, 6)
        self.assertLessEqual(result.total_cost, 537.5)

    def test_degenerate_geometry_raises(self):
        solver = SolverConfiguration(initial_radius=1e-20, initial_guess=[0.5, 0.5])
        with self.assertRaises(DegenerateGeometryError):
            run_dispatch(three_bus_network(), solver)

    def test_from_file(self):
        result = run_dispatch_from_file(CASE_PATH)
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertEqual(set(result.generator_dispatch), {1, 2, 3})


class TestSingleBus(unittest.TestCase):
    def test_cost_without_optimizer(self):
        network = NetworkModel(
            [Bus("A", demand=80.0, gen_min=0.0, gen_max=100.0, is_slack=True)],
            [],
            [CostCoefficient("A", offset=5.0, linear=2.0)],
        )
        result = run_dispatch(network)
        self.assertEqual(result.status, TerminationStatus.CONVERGED)
        self.assertAlmostEqual(result.total_cost, 165.0)
        self.assertEqual(result.n_evaluations, 1)
        self.assertEqual(result.angles.shape, (0,))
        self.assertEqual(result.bus_angles, {"A": 0.0})
        self.assertTrue(result.feasible)

    def test_demand_above_capacity(self):
        network = NetworkModel(
            [Bus("A", demand=150.0, gen_min=0.0, gen_max=100.0, is_slack=True)],
            [],
            [CostCoefficient("A", offset=5.0, linear=2.0)],
        )
        result = run_dispatch(network)
        self.assertAlmostEqual(result.total_cost, 205.0)
        self.assertEqual({w.kind for w in result.warnings}, {"generation", "balance"})


def test_single_bus_fixture(single_bus_network):
    result = run_dispatch(single_bus_network)
    assert result.total_cost == 165.0
    assert result.generator_dispatch == {"A": 80.0}


def test_cli_converges():
    assert main([str(CASE_PATH)]) == 0


def test_cli_budget_exhausted():
    assert main([str(CASE_PATH), "--max-evaluations", "5"]) == 1


def test_cli_invalid_case(tmp_path):
    case = read_config_file(CASE_PATH)
    case["network"]["lines"][0]["reactance"] = 0.0
    path = tmp_path / "bad.yaml"
    with open(path, "w", encoding="utf-8") as file:
        yaml.safe_dump(case, file)
    assert main([str(path)]) == 2
    assert main([str(tmp_path / "missing.yaml")]) == 2


def test_cli_invalid_override():
    assert main([str(CASE_PATH), "--max-evaluations", "3"]) == 2


def test_cli_parallel_and_log_file(tmp_path):
    log_file = tmp_path / "dispatch.log"
    assert main([str(CASE_PATH), "--workers", "2", "--log-file", str(log_file), "--verbose"]) == 0
    assert log_file.exists()
    assert "Total generation cost" in log_file.read_text(encoding="utf-8")


def test_zero_reactance_rejected_before_evaluation():
    case = read_config_file(CASE_PATH)
    case["network"]["lines"][1]["reactance"] = 0.0
    config = DispatchConfiguration.from_dict(case)
    try:
        config.network.build_network()
    except ConfigurationError as exc:
        assert "reactance" in str(exc)
    else:
        raise AssertionError("zero reactance accepted")


def test_cli_non_numeric_field(tmp_path):
    case = read_config_file(CASE_PATH)
    case["network"]["buses"][1]["demand"] = "lots"
    path = tmp_path / "non_numeric.yaml"
    with open(path, "w", encoding="utf-8") as file:
        yaml.safe_dump(case, file)
    assert main([str(path)]) == 2


def test_cli_malformed_yaml(tmp_path):
    path = tmp_path / "malformed.yaml"
    path.write_text("case_name: broken\nnetwork: [unclosed\n", encoding="utf-8")
    assert main([str(path)]) == 2


def test_cli_bounds_of_wrong_length(tmp_path):
    case = read_config_file(CASE_PATH)
    case["solver"]["lower_bounds"] = [-1.0, -1.0, -1.0]
    case["solver"]["upper_bounds"] = [1.0, 1.0, 1.0]
    path = tmp_path / "bounds.yaml"
    with open(path, "w", encoding="utf-8") as file:
        yaml.safe_dump(case, file)
    assert main([str(path)]) == 2
