from __future__ import annotations

from dataclasses import dataclass, field
from typing import Hashable


@dataclass(frozen=True)
class Bus:
    bus_id: Hashable
    demand: float
    gen_min: float
    gen_max: float
    is_slack: bool = False


@dataclass(frozen=True)
class Line:
    from_bus: Hashable
    to_bus: Hashable
    reactance: float
    flow_limit: float
    name: str | None = field(default=None)

    @property
    def label(self) -> str:
        if self.name is not None:
            return self.name
        return f"{self.from_bus}-{self.to_bus}"

    @property
    def susceptance(self) -> float:
        return 1.0 / self.reactance


@dataclass(frozen=True)
class CostCoefficient:
    """Linear generation cost of one bus: offset + linear * Pg."""
    bus_id: Hashable
    offset: float
    linear: float

    def cost(self, generation_mw: float) -> float:
        return self.offset + self.linear * generation_mw
