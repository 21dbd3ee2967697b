import math

import pytest
import yaml

from dcdispatch.core.config import (
    DispatchConfiguration,
    NetworkConfiguration,
    SolverConfiguration,
    read_config_file,
)
from dcdispatch.core.errors import ConfigurationError


def write_yaml(path, content):
    with open(path, "w", encoding="utf-8") as file:
        yaml.safe_dump(content, file)
    return path


def two_bus_case():
    return {
        "case_name": "two_bus",
        "network": {
            "buses": [
                {"id": "a", "demand": 10.0, "gen_max": 50.0, "slack": True},
                {"id": "b", "demand": 20.0, "gen_min": 0.0, "gen_max": 50.0},
            ],
            "lines": [{"from": "a", "to": "b", "reactance": 0.1, "flow_limit": 40.0}],
            "costs": [{"bus": "a", "linear": 1.0}, {"bus": "b", "offset": 3.0, "linear": 2.0}],
        },
        "solver": {"max_evaluations": 500, "convergence_tolerance": 1e-5},
    }


def test_read_case_file(three_bus_case_path):
    config = DispatchConfiguration.from_file(three_bus_case_path)
    assert config.case_name == "three_bus"
    network = config.network.build_network()
    assert network.n_buses == 3
    assert network.n_lines == 3
    assert network.slack_bus_id == 1
    assert config.solver.max_evaluations == 10000


def test_from_yaml_file(tmp_path):
    path = write_yaml(tmp_path / "case.yaml", two_bus_case())
    config = DispatchConfiguration.from_file(path)
    network = config.network.build_network()
    assert network.free_bus_ids == ["b"]
    assert network.cost_offset.tolist() == [0.0, 3.0]
    assert network.flow_limits.tolist() == [40.0]
    assert config.solver.max_evaluations == 500
    assert config.solver.convergence_tolerance == 1e-5
    assert config.log_level == "INFO"


def test_round_trip_through_dict():
    config = DispatchConfiguration.from_dict(two_bus_case())
    again = DispatchConfiguration.from_dict(config.to_dict())
    assert again.to_dict() == config.to_dict()


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        read_config_file(tmp_path / "missing.yaml")


def test_non_mapping_file(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        read_config_file(path)


def test_unknown_keys():
    case = two_bus_case()
    case["solver"]["max_iterations"] = 3
    with pytest.raises(ConfigurationError, match="max_iterations"):
        DispatchConfiguration.from_dict(case)

    case = two_bus_case()
    case["network"]["buses"][0]["voltage"] = 1.0
    with pytest.raises(ConfigurationError):
        DispatchConfiguration.from_dict(case)


def test_missing_required_entries():
    case = two_bus_case()
    del case["network"]["buses"][1]["demand"]
    with pytest.raises(ConfigurationError, match="demand"):
        NetworkConfiguration.from_dict(case["network"])
    with pytest.raises(ConfigurationError):
        DispatchConfiguration.from_dict({"case_name": "empty"})


def test_invalid_log_level():
    case = two_bus_case()
    case["log_level"] = "chatty"
    with pytest.raises(ConfigurationError):
        DispatchConfiguration.from_dict(case)


def test_default_line_limit_is_unbounded():
    case = two_bus_case()
    del case["network"]["lines"][0]["flow_limit"]
    network = NetworkConfiguration.from_dict(case["network"]).build_network()
    assert math.isinf(network.flow_limits[0])


@pytest.mark.parametrize(
    "settings",
    [
        {"initial_radius": 0.0},
        {"initial_radius": -1.0},
        {"max_evaluations": 0},
        {"max_evaluations": 2.5},
        {"convergence_tolerance": 0.0},
        {"max_radius": 0.0},
        {"n_workers": 0},
    ],
)
def test_invalid_solver_settings(settings):
    with pytest.raises(ConfigurationError):
        SolverConfiguration.from_dict(settings)


def test_default_bounds():
    lower, upper = SolverConfiguration().bounds_for(2)
    assert lower == [-math.pi, -math.pi]
    assert upper == [math.pi, math.pi]
    lower, upper = SolverConfiguration(lower_bounds=[-1, -2], upper_bounds=[1, 2]).bounds_for(2)
    assert lower == [-1.0, -2.0]
    assert upper == [1.0, 2.0]


@pytest.mark.parametrize(
    "network",
    [
        {"buses": [{"id": 1, "demand": "lots", "gen_max": 10.0, "slack": True}]},
        {"buses": [{"id": 1, "demand": None, "gen_max": 10.0, "slack": True}]},
        {"buses": [{"id": 1, "demand": 1.0, "gen_max": 10.0, "slack": True}],
         "lines": [{"from": 1, "to": 2, "reactance": "x"}]},
        {"buses": [{"id": 1, "demand": 1.0, "gen_max": 10.0, "slack": True}],
         "costs": [{"bus": 1, "linear": [2.0]}]},
        {"buses": "not a list"},
        {"buses": ["not a mapping"]},
    ],
)
def test_malformed_network_values(network):
    with pytest.raises(ConfigurationError):
        NetworkConfiguration.from_dict(network)


def test_malformed_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("network: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid YAML"):
        read_config_file(path)


def test_non_numeric_solver_setting():
    with pytest.raises(ConfigurationError):
        SolverConfiguration.from_dict({"max_evaluations": "many"})
    with pytest.raises(ConfigurationError):
        SolverConfiguration.from_dict({"lower_bounds": ["low", 0.0]})


def test_bounds_length_checked():
    config = SolverConfiguration(lower_bounds=[-1.0], upper_bounds=[1.0, 2.0])
    with pytest.raises(ConfigurationError, match="expected 2"):
        config.bounds_for(2)
    with pytest.raises(ConfigurationError):
        config.bounds_for(1)
