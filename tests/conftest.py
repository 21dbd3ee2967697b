from pathlib import Path

import pytest

from dcdispatch.core.data_structures import Bus, CostCoefficient, Line
from dcdispatch.core.network.model import NetworkModel

CASE_DIR = Path(__file__).resolve().parents[1] / "config"


def build_three_bus_network(flow_limit_12: float = 150.0) -> NetworkModel:
    buses = [
        Bus(1, demand=100.0, gen_min=0.0, gen_max=300.0, is_slack=True),
        Bus(2, demand=50.0, gen_min=0.0, gen_max=200.0),
        Bus(3, demand=75.0, gen_min=0.0, gen_max=250.0),
    ]
    lines = [
        Line(1, 2, reactance=0.10, flow_limit=flow_limit_12),
        Line(1, 3, reactance=0.20, flow_limit=100.0),
        Line(2, 3, reactance=0.15, flow_limit=120.0),
    ]
    costs = [
        CostCoefficient(1, offset=0.0, linear=2.0),
        CostCoefficient(2, offset=0.0, linear=3.0),
        CostCoefficient(3, offset=0.0, linear=2.5),
    ]
    return NetworkModel(buses, lines, costs)


@pytest.fixture
def three_bus_network():
    return build_three_bus_network()


@pytest.fixture
def single_bus_network():
    return NetworkModel(
        [Bus("A", demand=80.0, gen_min=0.0, gen_max=100.0, is_slack=True)],
        [],
        [CostCoefficient("A", offset=5.0, linear=2.0)],
    )


@pytest.fixture
def three_bus_case_path():
    return CASE_DIR / "three_bus.yaml"


@pytest.fixture
def three_bus_builder():
    return build_three_bus_network
