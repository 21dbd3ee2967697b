"""
Dispatch results

Turns an optimised angle vector into the per-bus dispatch, per-line flows and
total cost of the network, checks the operating point against generator
limits, line limits and power balance, and renders the summary report.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Hashable

import numpy as np
import pandas as pd

from dcdispatch.core.errors import DegenerateGeometryError
from dcdispatch.core.network.model import NetworkModel
from .trust_region import OptimizationResult, TerminationStatus

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE_MW = 1e-6


@dataclass(frozen=True)
class LineFlowRecord:
    line: str
    from_bus: Hashable
    to_bus: Hashable
    flow_mw: float
    limit_mw: float
    within_limit: bool


@dataclass(frozen=True)
class FeasibilityWarning:
    """An operating-point violation; ``kind`` is 'generation', 'line_flow' or 'balance'."""
    kind: str
    element: Hashable
    value: float
    limit: float
    message: str


@dataclass
class DispatchResult:
    status: TerminationStatus
    total_cost: float
    angles: np.ndarray
    bus_angles: dict[Hashable, float]
    generator_dispatch: dict[Hashable, float]
    line_flows: list[LineFlowRecord]
    warnings: list[FeasibilityWarning] = field(default_factory=list)
    n_evaluations: int = 0
    n_iterations: int = 0

    @property
    def feasible(self) -> bool:
        return not self.warnings

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "total_cost": self.total_cost,
            "angles": [float(a) for a in self.angles],
            "bus_angles": dict(self.bus_angles),
            "generator_dispatch": dict(self.generator_dispatch),
            "line_flows": [asdict(record) for record in self.line_flows],
            "warnings": [asdict(warning) for warning in self.warnings],
            "n_evaluations": self.n_evaluations,
            "n_iterations": self.n_iterations,
        }

    def dispatch_frame(self) -> pd.DataFrame:
        """One row per bus: angle in radians and degrees, dispatch in MW."""
        frame = pd.DataFrame({
            "Bus": list(self.bus_angles),
            "Angle_rad": list(self.bus_angles.values()),
            "Generation_MW": [self.generator_dispatch[bus] for bus in self.bus_angles],
        })
        frame.insert(2, "Angle_deg", np.degrees(frame["Angle_rad"]))
        return frame

    def line_flow_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([asdict(record) for record in self.line_flows],
                             columns=["line", "from_bus", "to_bus", "flow_mw", "limit_mw", "within_limit"])
        with np.errstate(divide="ignore", invalid="ignore"):
            frame["loading_pct"] = 100.0 * frame["flow_mw"].abs() / frame["limit_mw"]
        return frame


class DispatchReporter:
    """Builds DispatchResult records for one network."""

    def __init__(self, network: NetworkModel):
        self.network = network

    def build(self, result: OptimizationResult) -> DispatchResult:
        if result.x is None:
            raise DegenerateGeometryError(
                f"Optimisation ended without a usable point: {result.message}",
                n_evaluations=result.n_evaluations,
            )
        return self.report(
            result.x,
            result.status,
            total_cost=result.fun,
            n_evaluations=result.n_evaluations,
            n_iterations=result.n_iterations,
        )

    def report(self, angles, status: TerminationStatus, total_cost: float | None = None,
               n_evaluations: int = 0, n_iterations: int = 0) -> DispatchResult:
        network = self.network
        angles = np.array(angles, dtype=float).reshape(-1)
        theta = network.full_angles(angles)
        generation = network.generator_output(angles)
        if total_cost is None:
            total_cost = float(np.sum(network.cost_offset + network.cost_linear * generation))

        flows = network.line_flows(angles)
        line_flows = [
            LineFlowRecord(
                line=line.label,
                from_bus=line.from_bus,
                to_bus=line.to_bus,
                flow_mw=float(flow),
                limit_mw=float(line.flow_limit),
                within_limit=bool(abs(flow) <= line.flow_limit),
            )
            for line, flow in zip(network.lines, flows)
        ]
        return DispatchResult(
            status=status,
            total_cost=float(total_cost),
            angles=angles,
            bus_angles={bus_id: float(t) for bus_id, t in zip(network.bus_ids, theta)},
            generator_dispatch={bus_id: float(p) for bus_id, p in zip(network.bus_ids, generation)},
            line_flows=line_flows,
            warnings=self.check_feasibility(angles),
            n_evaluations=n_evaluations,
            n_iterations=n_iterations,
        )

    def check_feasibility(self, angles) -> list[FeasibilityWarning]:
        network = self.network
        warnings = []

        unclipped = network.generator_output(angles, clip=False)
        for bus_id, p, p_min, p_max in zip(network.bus_ids, unclipped, network.gen_min, network.gen_max):
            if p < p_min or p > p_max:
                limit = p_min if p < p_min else p_max
                warnings.append(FeasibilityWarning(
                    kind="generation",
                    element=bus_id,
                    value=float(p),
                    limit=float(limit),
                    message=f"Bus {bus_id}: required generation {p:.3f} MW outside [{p_min:.3f}, {p_max:.3f}] MW",
                ))

        for line, flow in zip(network.lines, network.line_flows(angles)):
            if abs(flow) > line.flow_limit:
                warnings.append(FeasibilityWarning(
                    kind="line_flow",
                    element=line.label,
                    value=float(flow),
                    limit=float(line.flow_limit),
                    message=f"Line {line.label}: flow {flow:.3f} MW exceeds limit {line.flow_limit:.3f} MW",
                ))

        supplied = float(network.generator_output(angles).sum())
        demand = network.total_demand
        if abs(supplied - demand) > BALANCE_TOLERANCE_MW * max(1.0, abs(demand)):
            warnings.append(FeasibilityWarning(
                kind="balance",
                element="system",
                value=supplied,
                limit=demand,
                message=f"Dispatched generation {supplied:.3f} MW does not match demand {demand:.3f} MW",
            ))

        for warning in warnings:
            logger.warning(warning.message)
        return warnings

    def log_summary(self, result: DispatchResult, logger_inst: logging.Logger | None = None) -> None:
        """Log the dispatch report: cost, angles, generation and line flows."""
        if logger_inst is None:
            logger_inst = logger
        slack = self.network.slack_bus_id
        logger_inst.info("======================== Dispatch ========================")
        logger_inst.info("Status: %s", result.status.value)
        logger_inst.info("Total generation cost: %.4f", result.total_cost)
        logger_inst.info("Evaluations: %d, iterations: %d", result.n_evaluations, result.n_iterations)
        logger_inst.info("")
        logger_inst.info("Bus voltage angles (rad):")
        for bus_id, theta in result.bus_angles.items():
            suffix = " (slack)" if bus_id == slack else ""
            logger_inst.info("  Bus %s: %.6f%s", bus_id, theta, suffix)
        logger_inst.info("Generator dispatch (MW):")
        for bus_id, p in result.generator_dispatch.items():
            logger_inst.info("  Bus %s: %.4f", bus_id, p)
        logger_inst.info("Line flows (MW):")
        for record in result.line_flows:
            limit = "unlimited" if math.isinf(record.limit_mw) else f"{record.limit_mw:.2f}"
            logger_inst.info("  Line %s: %.4f (limit %s)", record.line, record.flow_mw, limit)
        if result.warnings:
            logger_inst.info("Feasibility warnings: %d", len(result.warnings))
            for warning in result.warnings:
                logger_inst.info("  [%s] %s", warning.kind, warning.message)
        logger_inst.info("==========================================================")
