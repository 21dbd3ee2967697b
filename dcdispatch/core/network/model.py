"""
DC network model

Linearised (DC) power flow over a fixed set of buses and lines. The flow on a
line is the angle difference across it divided by its reactance; the net
injection of a bus is the sum of the flows leaving it. Generation of a bus is
its demand plus its net injection, clipped into the generator limits.

All operations are pure functions of the free angle vector (slack excluded).
"""
from __future__ import annotations

import logging
import math
from typing import Hashable, Sequence

import numpy as np

from dcdispatch.core.data_structures import Bus, CostCoefficient, Line
from dcdispatch.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class NetworkModel:
    """Immutable DC network: buses, lines and linear cost coefficients."""

    def __init__(
        self,
        buses: Sequence[Bus],
        lines: Sequence[Line],
        costs: Sequence[CostCoefficient],
    ):
        self._buses = tuple(buses)
        self._lines = tuple(lines)
        self._validate_buses()
        self._bus_position = {bus.bus_id: k for k, bus in enumerate(self._buses)}
        self._validate_lines()
        self._line_position = {line.label: k for k, line in enumerate(self._lines)}
        self._costs = self._order_costs(costs)

        self._slack_position = next(k for k, bus in enumerate(self._buses) if bus.is_slack)
        self._free_positions = np.array(
            [k for k in range(len(self._buses)) if k != self._slack_position], dtype=int
        )

        self._demand = np.array([bus.demand for bus in self._buses], dtype=float)
        self._gen_min = np.array([bus.gen_min for bus in self._buses], dtype=float)
        self._gen_max = np.array([bus.gen_max for bus in self._buses], dtype=float)
        self._from = np.array([self._bus_position[line.from_bus] for line in self._lines], dtype=int)
        self._to = np.array([self._bus_position[line.to_bus] for line in self._lines], dtype=int)
        self._susceptance = np.array([line.susceptance for line in self._lines], dtype=float)
        self._flow_limit = np.array([line.flow_limit for line in self._lines], dtype=float)
        self._cost_offset = np.array([cost.offset for cost in self._costs], dtype=float)
        self._cost_linear = np.array([cost.linear for cost in self._costs], dtype=float)

        for array in (self._demand, self._gen_min, self._gen_max, self._susceptance,
                      self._flow_limit, self._cost_offset, self._cost_linear):
            array.setflags(write=False)

        logger.debug("Network built: %d buses, %d lines, slack bus %s",
                     self.n_buses, self.n_lines, self.slack_bus_id)

    # ---------------------------
    # Validation
    # ---------------------------
    def _validate_buses(self) -> None:
        if not self._buses:
            raise ConfigurationError("Network has no buses.")
        seen = set()
        for bus in self._buses:
            if bus.bus_id in seen:
                raise ConfigurationError(f"Duplicate bus id: {bus.bus_id!r}")
            seen.add(bus.bus_id)
            for name in ("demand", "gen_min", "gen_max"):
                if not math.isfinite(getattr(bus, name)):
                    raise ConfigurationError(f"Bus {bus.bus_id!r}: {name} must be finite")
            if bus.gen_min > bus.gen_max:
                raise ConfigurationError(
                    f"Bus {bus.bus_id!r}: gen_min ({bus.gen_min}) exceeds gen_max ({bus.gen_max})"
                )
        n_slack = sum(1 for bus in self._buses if bus.is_slack)
        if n_slack != 1:
            raise ConfigurationError(f"Network needs exactly one slack bus, found {n_slack}")

    def _validate_lines(self) -> None:
        labels = set()
        for line in self._lines:
            for end in (line.from_bus, line.to_bus):
                if end not in self._bus_position:
                    raise ConfigurationError(f"Line {line.label}: unknown bus {end!r}")
            if line.from_bus == line.to_bus:
                raise ConfigurationError(f"Line {line.label}: from and to bus are the same")
            if not math.isfinite(line.reactance) or line.reactance <= 0:
                raise ConfigurationError(
                    f"Line {line.label}: reactance must be strictly positive, got {line.reactance}"
                )
            if math.isnan(line.flow_limit) or line.flow_limit < 0:
                raise ConfigurationError(f"Line {line.label}: flow_limit must be non-negative")
            if line.label in labels:
                raise ConfigurationError(f"Duplicate line name: {line.label}")
            labels.add(line.label)

    def _order_costs(self, costs: Sequence[CostCoefficient]) -> tuple[CostCoefficient, ...]:
        costs = tuple(costs)
        if len(costs) != len(self._buses):
            raise ConfigurationError(
                f"Expected one cost coefficient per bus ({len(self._buses)}), got {len(costs)}"
            )
        by_bus: dict[Hashable, CostCoefficient] = {}
        for cost in costs:
            if cost.bus_id not in self._bus_position:
                raise ConfigurationError(f"Cost coefficient for unknown bus {cost.bus_id!r}")
            if cost.bus_id in by_bus:
                raise ConfigurationError(f"Duplicate cost coefficient for bus {cost.bus_id!r}")
            if not (math.isfinite(cost.offset) and math.isfinite(cost.linear)):
                raise ConfigurationError(f"Cost coefficient of bus {cost.bus_id!r} must be finite")
            by_bus[cost.bus_id] = cost
        return tuple(by_bus[bus.bus_id] for bus in self._buses)

    # ---------------------------
    # Descriptive properties
    # ---------------------------
    @property
    def buses(self) -> tuple[Bus, ...]:
        return self._buses

    @property
    def lines(self) -> tuple[Line, ...]:
        return self._lines

    @property
    def costs(self) -> tuple[CostCoefficient, ...]:
        return self._costs

    @property
    def n_buses(self) -> int:
        return len(self._buses)

    @property
    def n_lines(self) -> int:
        return len(self._lines)

    @property
    def dimension(self) -> int:
        """Number of free angles (buses minus the slack)."""
        return len(self._free_positions)

    @property
    def bus_ids(self) -> list[Hashable]:
        return [bus.bus_id for bus in self._buses]

    @property
    def free_bus_ids(self) -> list[Hashable]:
        return [self._buses[k].bus_id for k in self._free_positions]

    @property
    def slack_bus_id(self) -> Hashable:
        return self._buses[self._slack_position].bus_id

    @property
    def line_names(self) -> list[str]:
        return [line.label for line in self._lines]

    @property
    def demand(self) -> np.ndarray:
        return self._demand

    @property
    def gen_min(self) -> np.ndarray:
        return self._gen_min

    @property
    def gen_max(self) -> np.ndarray:
        return self._gen_max

    @property
    def flow_limits(self) -> np.ndarray:
        return self._flow_limit

    @property
    def cost_offset(self) -> np.ndarray:
        return self._cost_offset

    @property
    def cost_linear(self) -> np.ndarray:
        return self._cost_linear

    @property
    def total_demand(self) -> float:
        return float(self._demand.sum())

    def angle_bounds(self, lower: float = -math.pi, upper: float = math.pi) -> tuple[np.ndarray, np.ndarray]:
        """Uniform box bounds for the free angles."""
        return np.full(self.dimension, float(lower)), np.full(self.dimension, float(upper))

    # ---------------------------
    # Power flow
    # ---------------------------
    def full_angles(self, angles) -> np.ndarray:
        """Angle of every bus in bus order, with the slack angle fixed at zero."""
        angles = np.asarray(angles, dtype=float).reshape(-1)
        if angles.shape[0] != self.dimension:
            raise ConfigurationError(
                f"Expected {self.dimension} free angles, got {angles.shape[0]}"
            )
        theta = np.zeros(self.n_buses)
        theta[self._free_positions] = angles
        return theta

    def line_flows(self, angles) -> np.ndarray:
        theta = self.full_angles(angles)
        return (theta[self._from] - theta[self._to]) * self._susceptance

    def line_flow(self, line_id: str | int, angles) -> float:
        """Flow (MW) on a line identified by its name or its position."""
        k = self._resolve_line(line_id)
        theta = self.full_angles(angles)
        return float((theta[self._from[k]] - theta[self._to[k]]) * self._susceptance[k])

    def injections(self, angles) -> np.ndarray:
        """Net outflow of every bus."""
        flows = self.line_flows(angles)
        net = np.zeros(self.n_buses)
        np.add.at(net, self._from, flows)
        np.subtract.at(net, self._to, flows)
        return net

    def injection(self, bus_id: Hashable, angles) -> float:
        try:
            k = self._bus_position[bus_id]
        except KeyError:
            raise KeyError(f"Unknown bus id: {bus_id!r}") from None
        return float(self.injections(angles)[k])

    def generator_output(self, angles, clip: bool = True) -> np.ndarray:
        """Generation per bus implied by the angles: demand + net injection.

        With ``clip`` the output is clipped into [gen_min, gen_max]; this is a
        reporting device and the clipped dispatch does not need to balance.
        """
        generation = self._demand + self.injections(angles)
        if clip:
            generation = np.clip(generation, self._gen_min, self._gen_max)
        return generation

    def _resolve_line(self, line_id: str | int) -> int:
        if isinstance(line_id, str):
            try:
                return self._line_position[line_id]
            except KeyError:
                raise KeyError(f"Unknown line: {line_id!r}") from None
        k = int(line_id)
        if not 0 <= k < self.n_lines:
            raise KeyError(f"Line index out of range: {line_id}")
        return k
