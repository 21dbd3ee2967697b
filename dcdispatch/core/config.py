"""Configuration of a dispatch run: network description, solver settings and the YAML reader."""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from dcdispatch.core.data_structures import Bus, CostCoefficient, Line
from dcdispatch.core.errors import ConfigurationError
from dcdispatch.core.network.model import NetworkModel

logger = logging.getLogger(__name__)


def read_config_file(filepath: Path) -> dict:
    """Read a YAML configuration file into a dictionary."""
    filepath = Path(filepath)
    if not filepath.exists():
        raise ConfigurationError(f"Configuration file not found: {filepath}")
    with open(filepath, "r", encoding="utf-8") as file:
        try:
            config = yaml.safe_load(file)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file {filepath} is not valid YAML: {exc}") from exc
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration file {filepath} does not contain a mapping")
    return config


def _check_keys(section: str, config: dict, allowed: set[str]) -> None:
    if not isinstance(config, dict):
        raise ConfigurationError(f"Entry in '{section}' must be a mapping, got {config!r}")
    unknown = set(config) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}': {sorted(unknown)}")


@dataclass
class SolverConfiguration:
    """Settings of the derivative-free trust-region solver.

    ``initial_guess`` defaults to all zero, the bounds to [-pi, pi] per free
    angle, ``initial_radius`` to a third of the narrowest bound interval and
    ``max_radius`` to the widest one.
    """
    max_evaluations: int = 10000
    convergence_tolerance: float = 1e-6
    initial_guess: list[float] | None = None
    lower_bounds: list[float] | None = None
    upper_bounds: list[float] | None = None
    initial_radius: float | None = None
    max_radius: float | None = None
    parallel_initialization_flag: bool = False
    n_workers: int = 1

    def __post_init__(self):
        if isinstance(self.max_evaluations, bool) or int(self.max_evaluations) != self.max_evaluations:
            raise ConfigurationError("max_evaluations must be an integer")
        self.max_evaluations = int(self.max_evaluations)
        if self.max_evaluations < 1:
            raise ConfigurationError("max_evaluations must be positive")
        if not (math.isfinite(self.convergence_tolerance) and self.convergence_tolerance > 0):
            raise ConfigurationError("convergence_tolerance must be a positive number")
        if self.initial_radius is not None and not (
                math.isfinite(self.initial_radius) and self.initial_radius > 0):
            raise ConfigurationError(
                f"initial_radius must be strictly positive, got {self.initial_radius}"
            )
        if self.max_radius is not None and not (math.isfinite(self.max_radius) and self.max_radius > 0):
            raise ConfigurationError(f"max_radius must be strictly positive, got {self.max_radius}")
        if int(self.n_workers) < 1:
            raise ConfigurationError("n_workers must be at least 1")
        self.n_workers = int(self.n_workers)
        for name in ("initial_guess", "lower_bounds", "upper_bounds"):
            values = getattr(self, name)
            if values is not None:
                setattr(self, name, [float(v) for v in values])

    def bounds_for(self, dimension: int) -> tuple[list[float], list[float]]:
        """Lower and upper bounds for ``dimension`` free angles."""
        lower = self.lower_bounds if self.lower_bounds is not None else [-math.pi] * dimension
        upper = self.upper_bounds if self.upper_bounds is not None else [math.pi] * dimension
        if len(lower) != dimension or len(upper) != dimension:
            raise ConfigurationError(
                f"Angle bounds have lengths {len(lower)} and {len(upper)}, expected {dimension}"
            )
        return lower, upper

    @classmethod
    def from_dict(cls, config: dict | None) -> SolverConfiguration:
        config = config or {}
        _check_keys("solver", config, {f.name for f in fields(cls)})
        try:
            return cls(**config)
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid solver settings: {exc}") from exc

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NetworkConfiguration:
    buses: list[Bus]
    lines: list[Line] = field(default_factory=list)
    costs: list[CostCoefficient] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config: dict) -> NetworkConfiguration:
        """Parse the ``network`` section of a case file.

        Buses: ``id``, ``demand``, ``gen_min``, ``gen_max``, ``slack``.
        Lines: ``from``, ``to``, ``reactance``, ``flow_limit``, ``name``.
        Costs: ``bus``, ``offset``, ``linear``.
        """
        _check_keys("network", config, {"buses", "lines", "costs"})
        if "buses" not in config:
            raise ConfigurationError("Network has no 'buses' entry")
        sections = {name: config.get(name) or [] for name in ("buses", "lines", "costs")}
        for name, rows in sections.items():
            if not isinstance(rows, list):
                raise ConfigurationError(f"Network entry '{name}' must be a list")
        buses = [_parse_bus(row) for row in sections["buses"]]
        lines = [_parse_line(row) for row in sections["lines"]]
        costs = [_parse_cost(row) for row in sections["costs"]]
        return cls(buses=buses, lines=lines, costs=costs)

    def build_network(self) -> NetworkModel:
        return NetworkModel(self.buses, self.lines, self.costs)

    def to_dict(self) -> dict:
        return {
            "buses": [
                {"id": b.bus_id, "demand": b.demand, "gen_min": b.gen_min,
                 "gen_max": b.gen_max, "slack": b.is_slack}
                for b in self.buses
            ],
            "lines": [
                {"from": l.from_bus, "to": l.to_bus, "reactance": l.reactance,
                 "flow_limit": l.flow_limit, "name": l.label}
                for l in self.lines
            ],
            "costs": [
                {"bus": c.bus_id, "offset": c.offset, "linear": c.linear}
                for c in self.costs
            ],
        }


def _parse_bus(row: dict) -> Bus:
    _check_keys("buses", row, {"id", "demand", "gen_min", "gen_max", "slack"})
    try:
        return Bus(
            bus_id=row["id"],
            demand=float(row["demand"]),
            gen_min=float(row.get("gen_min", 0.0)),
            gen_max=float(row["gen_max"]),
            is_slack=bool(row.get("slack", False)),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Bus entry {row} is missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Bus entry {row} has an invalid value: {exc}") from exc


def _parse_line(row: dict) -> Line:
    _check_keys("lines", row, {"from", "to", "reactance", "flow_limit", "name"})
    try:
        return Line(
            from_bus=row["from"],
            to_bus=row["to"],
            reactance=float(row["reactance"]),
            flow_limit=float(row.get("flow_limit", math.inf)),
            name=row.get("name"),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Line entry {row} is missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Line entry {row} has an invalid value: {exc}") from exc


def _parse_cost(row: dict) -> CostCoefficient:
    _check_keys("costs", row, {"bus", "offset", "linear"})
    try:
        return CostCoefficient(
            bus_id=row["bus"],
            offset=float(row.get("offset", 0.0)),
            linear=float(row["linear"]),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Cost entry {row} is missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Cost entry {row} has an invalid value: {exc}") from exc


@dataclass
class DispatchConfiguration:
    network: NetworkConfiguration
    solver: SolverConfiguration = field(default_factory=SolverConfiguration)
    case_name: str = "case"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config: dict) -> DispatchConfiguration:
        _check_keys("case", config, {"case_name", "network", "solver", "log_level"})
        if "network" not in config:
            raise ConfigurationError("Configuration has no 'network' section")
        return cls(
            network=NetworkConfiguration.from_dict(config["network"]),
            solver=SolverConfiguration.from_dict(config.get("solver")),
            case_name=str(config.get("case_name", "case")),
            log_level=str(config.get("log_level", "INFO")).upper(),
        )

    @classmethod
    def from_file(cls, filepath: Path) -> DispatchConfiguration:
        logger.info("Reading case configuration from: %s", filepath)
        return cls.from_dict(read_config_file(filepath))

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_name": self.case_name,
            "log_level": self.log_level,
            "network": self.network.to_dict(),
            "solver": self.solver.to_dict(),
        }
