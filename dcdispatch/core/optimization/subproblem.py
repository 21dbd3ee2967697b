"""Trust-region subproblem: minimise a quadratic over the intersection of a ball and a box."""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class SubproblemSolution:
    step: np.ndarray
    predicted_reduction: float
    hit_boundary: bool
    active_bounds: np.ndarray

    @property
    def step_norm(self) -> float:
        return float(np.linalg.norm(self.step))


def solve_trust_region_subproblem(
        gradient: np.ndarray,
        hessian: np.ndarray,
        radius: float,
        lower: np.ndarray,
        upper: np.ndarray,
        tolerance: float = 1e-12,
        ) -> SubproblemSolution:
    """Approximately minimise g.s + 0.5 s'Hs subject to ||s|| <= radius and lower <= s <= upper.

    Truncated conjugate gradient with an active set (a reduced form of
    Powell's TRSBOX). ``lower`` and ``upper`` are the box shifted by the
    trust-region centre, so lower <= 0 <= upper. Variables sitting on a bound
    with the gradient pointing outwards start fixed; whenever a CG step would
    cross a bound the variable is fixed on it and CG restarts on the
    remaining free variables. CG stops on the ball for negative curvature.
    """
    g = np.asarray(gradient, dtype=float)
    H = np.asarray(hessian, dtype=float)
    lower = np.minimum(np.asarray(lower, dtype=float), 0.0)
    upper = np.maximum(np.asarray(upper, dtype=float), 0.0)
    n = g.shape[0]

    step = np.zeros(n)
    free = ~(((lower >= 0.0) & (g > 0.0)) | ((upper <= 0.0) & (g < 0.0)))
    hit_boundary = False

    for _ in range(n + 1):
        restart = False
        residual = -(g + H @ step)
        residual[~free] = 0.0
        direction = residual.copy()
        rr = residual @ residual
        if rr <= (tolerance * max(1.0, np.linalg.norm(g))) ** 2:
            break

        for _ in range(max(int(free.sum()), 1)):
            hd = H @ direction
            dhd = direction @ hd
            dd = direction @ direction
            if dd <= 0.0:
                break

            alpha_ball = _step_to_sphere(step, direction, radius)
            alpha_box, blocking = _step_to_box(step, direction, lower, upper, free)
            alpha_cg = rr / dhd if dhd > 0.0 else np.inf
            alpha = min(alpha_cg, alpha_ball, alpha_box)

            step = step + alpha * direction
            if alpha == alpha_box and blocking is not None:
                step[blocking] = upper[blocking] if direction[blocking] > 0 else lower[blocking]
                free[blocking] = False
                restart = True
                break
            if alpha == alpha_ball:
                hit_boundary = True
                break

            new_residual = residual - alpha * hd
            new_residual[~free] = 0.0
            new_rr = new_residual @ new_residual
            if new_rr <= (tolerance * max(1.0, np.linalg.norm(g))) ** 2:
                break
            direction = new_residual + (new_rr / rr) * direction
            residual, rr = new_residual, new_rr

        if not restart or hit_boundary or not free.any():
            break
        if np.linalg.norm(step) >= radius * (1.0 - 1e-12):
            hit_boundary = True
            break

    step = np.clip(step, lower, upper)
    predicted_reduction = -float(g @ step + 0.5 * step @ H @ step)
    return SubproblemSolution(
        step=step,
        predicted_reduction=predicted_reduction,
        hit_boundary=hit_boundary,
        active_bounds=~free,
    )


def _step_to_sphere(step: np.ndarray, direction: np.ndarray, radius: float) -> float:
    """Largest alpha >= 0 with ||step + alpha * direction|| <= radius."""
    dd = direction @ direction
    sd = step @ direction
    slack = max(radius * radius - step @ step, 0.0)
    return (-sd + np.sqrt(sd * sd + dd * slack)) / dd


def _step_to_box(step, direction, lower, upper, free) -> tuple[float, int | None]:
    alpha = np.inf
    blocking = None
    for j in np.flatnonzero(free):
        if direction[j] > 0.0:
            candidate = (upper[j] - step[j]) / direction[j]
        elif direction[j] < 0.0:
            candidate = (lower[j] - step[j]) / direction[j]
        else:
            continue
        candidate = max(candidate, 0.0)
        if candidate < alpha:
            alpha, blocking = candidate, int(j)
    return alpha, blocking
