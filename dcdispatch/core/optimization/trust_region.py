"""
Derivative-free trust-region optimizer

Bound-constrained minimisation of a black-box function with a quadratic
interpolation model (2n + 1 points, minimum Frobenius norm Hessian) that is
trusted inside a ball around the best point found so far. Each iteration
minimises the model over the ball and the box, evaluates the trial point,
compares actual with predicted reduction and updates radius, centre and
interpolation set accordingly.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np

from dcdispatch.core.config import SolverConfiguration
from dcdispatch.core.errors import ConfigurationError, DegenerateGeometryError, EvaluationError
from .interpolation import InterpolationModel, InterpolationSet
from .subproblem import solve_trust_region_subproblem

logger = logging.getLogger(__name__)

ACCEPT_THRESHOLD = 0.7
REJECT_THRESHOLD = 0.1
EXPAND_FACTOR = 2.0
SHRINK_FACTOR = 0.5
SHORT_STEP_FACTOR = 0.1
GEOMETRY_FACTOR = 2.0
MIN_SEPARATION_FACTOR = 0.1
PREDICTION_TOLERANCE = 1e-12
MIN_LAGRANGE_VALUE = 1e-8


class OptimizerState(Enum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    BUDGET_EXHAUSTED = "budget_exhausted"
    DEGENERATE_FAILURE = "degenerate_failure"


class TerminationStatus(Enum):
    CONVERGED = "CONVERGED"
    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    DEGENERATE_FAILURE = "DEGENERATE_FAILURE"


_TERMINAL_STATUS = {
    OptimizerState.CONVERGED: TerminationStatus.CONVERGED,
    OptimizerState.BUDGET_EXHAUSTED: TerminationStatus.BUDGET_EXHAUSTED,
    OptimizerState.DEGENERATE_FAILURE: TerminationStatus.DEGENERATE_FAILURE,
}


class _BudgetExhausted(Exception):
    pass


@dataclass
class OptimizationResult:
    """Outcome of a trust-region run.

    ``x`` and ``fun`` hold the best point evaluated; they are None when the
    run ended in DEGENERATE_FAILURE. ``history`` is the best-known objective
    value after initialization and after every iteration. ``n_restarts``
    counts the fresh stencils built after the radius collapsed.
    """
    status: TerminationStatus
    x: np.ndarray | None
    fun: float | None
    n_evaluations: int
    n_iterations: int
    radius: float
    history: list[float] = field(default_factory=list)
    message: str = ""
    n_restarts: int = 0

    @property
    def success(self) -> bool:
        return self.status is TerminationStatus.CONVERGED

    def raise_for_status(self) -> OptimizationResult:
        if self.status is TerminationStatus.DEGENERATE_FAILURE:
            raise DegenerateGeometryError(self.message, n_evaluations=self.n_evaluations)
        return self


@dataclass
class TrustRegionState:
    """Mutable state of one optimizer run: model, radius, counters and best point."""
    model: InterpolationModel
    radius: float
    phase: OptimizerState = OptimizerState.INITIALIZING
    n_evaluations: int = 0
    n_iterations: int = 0
    geometry_steps: int = 0
    improve_geometry: bool = False
    best_point: np.ndarray | None = None
    best_value: float = np.inf
    restart_value: float | None = None
    n_restarts: int = 0
    history: list[float] = field(default_factory=list)
    message: str = ""

    @property
    def samples(self) -> InterpolationSet:
        return self.model.samples

    @property
    def center(self) -> np.ndarray:
        return self.model.samples.center

    @property
    def center_value(self) -> float:
        return self.model.samples.center_value


class TrustRegionOptimizer:
    """BOBYQA-style minimiser of ``objective`` over the box [lower, upper].

    Parameters
    ----------
    objective : Callable
        Function of a 1-D numpy array returning a float. Must be thread safe
        when ``parallel_initialization_flag`` is set.
    lower, upper : array-like
        Finite bounds with lower < upper componentwise.
    config : SolverConfiguration, optional
        Solver settings, defaults used when omitted.
    """

    def __init__(self, objective: Callable[[np.ndarray], float], lower, upper,
                 config: SolverConfiguration | None = None):
        self.objective = objective
        self.config = config if config is not None else SolverConfiguration()
        self.lower = np.asarray(lower, dtype=float).reshape(-1)
        self.upper = np.asarray(upper, dtype=float).reshape(-1)
        if self.lower.shape != self.upper.shape:
            raise ConfigurationError(
                f"Bounds have different lengths: {self.lower.shape[0]} and {self.upper.shape[0]}"
            )
        if not (np.all(np.isfinite(self.lower)) and np.all(np.isfinite(self.upper))):
            raise ConfigurationError("Bounds must be finite")
        if np.any(self.lower >= self.upper):
            raise ConfigurationError("Every lower bound must be strictly below its upper bound")
        self.dimension = self.lower.shape[0]
        self.n_interpolation_points = 2 * self.dimension + 1

        if self.config.max_evaluations < self.n_interpolation_points:
            raise ConfigurationError(
                f"max_evaluations ({self.config.max_evaluations}) must be at least "
                f"{self.n_interpolation_points} for {self.dimension} variables"
            )

        self.x0 = self._starting_point()
        self.initial_radius = self._initial_radius()
        widest = float((self.upper - self.lower).max()) if self.dimension else self.initial_radius
        self.max_radius = self.config.max_radius if self.config.max_radius is not None else widest
        if self.max_radius < self.initial_radius:
            raise ConfigurationError(
                f"max_radius ({self.max_radius}) is smaller than the initial radius ({self.initial_radius})"
            )
        x0_norm = float(np.abs(self.x0).max()) if self.dimension else 0.0
        self.stopping_radius = self.config.convergence_tolerance * max(1.0, x0_norm)
        self.state: TrustRegionState | None = None

    # ---------------------------
    # Setup
    # ---------------------------
    def _starting_point(self) -> np.ndarray:
        if self.config.initial_guess is None:
            x0 = np.zeros(self.dimension)
        else:
            x0 = np.asarray(self.config.initial_guess, dtype=float).reshape(-1)
            if x0.shape[0] != self.dimension:
                raise ConfigurationError(
                    f"initial_guess has {x0.shape[0]} entries, expected {self.dimension}"
                )
            if not np.all(np.isfinite(x0)):
                raise ConfigurationError("initial_guess must be finite")
        clipped = np.clip(x0, self.lower, self.upper)
        if not np.array_equal(clipped, x0):
            logger.warning("Initial guess lies outside the bounds and was clipped into the box.")
        return clipped

    def _initial_radius(self) -> float:
        if self.dimension == 0:
            return self.config.initial_radius or 1.0
        narrowest = float((self.upper - self.lower).min())
        radius = self.config.initial_radius if self.config.initial_radius is not None else narrowest / 3.0
        if not (np.isfinite(radius) and radius > 0.0):
            raise ConfigurationError(f"Initial radius must be strictly positive, got {radius}")
        if narrowest < 2.0 * radius:
            logger.warning(
                "Initial radius %.4g is too large for the narrowest bound interval %.4g; using %.4g.",
                radius, narrowest, narrowest / 3.0,
            )
            radius = narrowest / 3.0
        return radius

    @staticmethod
    def _axis_offsets(x: float, lower: float, upper: float, radius: float) -> tuple[float, float]:
        """Offsets of the two stencil points along one axis.

        A point that would leave the box is reflected at the bound; if the
        reflection lands on top of another point it is put half a radius on
        the opposite side instead.
        """
        separation = MIN_SEPARATION_FACTOR * radius
        room_up, room_down = upper - x, x - lower
        up, down = radius, -radius
        if room_up < radius:
            up = 2.0 * room_up - radius
            if abs(up) < separation or 2.0 * room_up < separation:
                up = -0.5 * radius
        elif room_down < radius:
            down = radius - 2.0 * room_down
            if abs(down) < separation or 2.0 * room_down < separation:
                down = 0.5 * radius
        return up, down

    def _stencil(self, center: np.ndarray, radius: float) -> np.ndarray:
        """The 2n + 1 points center, center + d_i e_i, center - d_i e_i."""
        n = self.dimension
        points = np.tile(center, (2 * n + 1, 1))
        for i in range(n):
            up, down = self._axis_offsets(center[i], self.lower[i], self.upper[i], radius)
            points[1 + i, i] += up
            points[1 + n + i, i] += down
        return np.clip(points, self.lower, self.upper)

    # ---------------------------
    # Evaluations
    # ---------------------------
    def _record_evaluation(self, point: np.ndarray, value: float) -> None:
        state = self.state
        state.n_evaluations += 1
        if not np.isfinite(value):
            raise EvaluationError(f"Objective returned a non-finite value at {point}")
        if value < state.best_value:
            state.best_value = value
            state.best_point = np.array(point)

    def _evaluate(self, point: np.ndarray) -> float:
        if self.state.n_evaluations >= self.config.max_evaluations:
            raise _BudgetExhausted()
        value = float(self.objective(point))
        self._record_evaluation(point, value)
        return value

    def _evaluate_initial(self, points: np.ndarray) -> list[float]:
        if self.config.parallel_initialization_flag and self.config.n_workers > 1:
            logger.debug("Evaluating %d initial points on %d workers", len(points), self.config.n_workers)
            with ThreadPoolExecutor(max_workers=self.config.n_workers) as executor:
                futures = [executor.submit(self.objective, point) for point in points]
                values = [float(future.result()) for future in futures]
            for point, value in zip(points, values):
                self._record_evaluation(point, value)
            return values
        return [self._evaluate(point) for point in points]

    # ---------------------------
    # Main loop
    # ---------------------------
    def run(self) -> OptimizationResult:
        self.state = TrustRegionState(model=InterpolationModel(), radius=self.initial_radius)
        state = self.state

        if self.dimension == 0:
            self._evaluate(self.x0)
            state.history.append(state.best_value)
            state.phase = OptimizerState.CONVERGED
            state.message = "No free variables; objective evaluated once."
            return self._result()

        logger.info(
            "Starting trust-region optimisation: %d variables, %d interpolation points, "
            "initial radius %.4g, stopping radius %.3g, max evaluations %d",
            self.dimension, self.n_interpolation_points, state.radius,
            self.stopping_radius, self.config.max_evaluations,
        )
        try:
            self._initialize()
        except DegenerateGeometryError as exc:
            state.phase = OptimizerState.DEGENERATE_FAILURE
            state.message = f"Initial interpolation set is degenerate: {exc}"

        while state.phase is OptimizerState.ITERATING:
            try:
                self._iterate()
            except _BudgetExhausted:
                state.phase = OptimizerState.BUDGET_EXHAUSTED
                state.message = (
                    f"Evaluation budget of {self.config.max_evaluations} exhausted "
                    f"at radius {state.radius:.3e}."
                )
            except DegenerateGeometryError as exc:
                state.phase = OptimizerState.DEGENERATE_FAILURE
                state.message = f"Interpolation set could not be repaired: {exc}"
            state.history.append(state.best_value)

        result = self._result()
        if result.status is TerminationStatus.DEGENERATE_FAILURE:
            logger.error("Trust-region optimisation failed: %s", result.message)
        else:
            logger.info(
                "Trust-region optimisation finished with status %s: f = %.6f after %d evaluations, %d iterations",
                result.status.value, result.fun, result.n_evaluations, result.n_iterations,
            )
        return result

    def _initialize(self) -> None:
        state = self.state
        points = self._stencil(self.x0, state.radius)
        values = self._evaluate_initial(points)
        samples = InterpolationSet(points, values, center_index=int(np.argmin(values)))
        state.model.rebuild(samples)
        state.phase = OptimizerState.ITERATING
        state.history.append(state.best_value)
        logger.debug("Initial interpolation set built; best value %.6f", state.best_value)

    def _iterate(self) -> None:
        state = self.state
        state.n_iterations += 1

        if state.improve_geometry:
            state.improve_geometry = False
            self._improve_geometry()
            self._log_iteration("geometry")
            return

        center, f_center = state.center, state.center_value
        solution = solve_trust_region_subproblem(
            state.model.gradient(), state.model.hessian, state.radius,
            self.lower - center, self.upper - center,
        )
        threshold = PREDICTION_TOLERANCE * max(1.0, abs(f_center))
        if solution.step_norm < SHORT_STEP_FACTOR * state.radius or solution.predicted_reduction <= threshold:
            if not self._geometry_is_good() and state.geometry_steps < self.n_interpolation_points:
                self._improve_geometry()
                self._log_iteration("geometry")
            else:
                self._shrink()
                self._log_iteration("shrink")
            return

        trial = np.clip(center + solution.step, self.lower, self.upper)
        f_trial = self._evaluate(trial)
        ratio = (f_center - f_trial) / solution.predicted_reduction
        improved = f_trial < f_center

        if ratio >= ACCEPT_THRESHOLD:
            state.radius = min(EXPAND_FACTOR * state.radius, self.max_radius)
        self._insert(trial, f_trial, improved)

        if ratio < REJECT_THRESHOLD:
            if self._geometry_is_good() or state.geometry_steps >= self.n_interpolation_points:
                self._shrink()
            else:
                state.improve_geometry = True
        else:
            state.geometry_steps = 0
        self._log_iteration(f"ratio {ratio:.3f}")

    def _shrink(self) -> None:
        state = self.state
        state.radius *= SHRINK_FACTOR
        state.geometry_steps = 0
        if state.radius < self.stopping_radius:
            self._restart_or_converge()

    def _restart_or_converge(self) -> None:
        """Stop, or restart from a fresh stencil of the initial radius around the centre.

        A collapsed set only sees the objective at the scale of the stopping
        radius, which on kinked objectives ends runs short of the optimum. The
        run is CONVERGED once a whole restart cycle improves the centre value
        by no more than ``convergence_tolerance`` (relative).
        """
        state = self.state
        f_center = state.center_value
        tolerance = self.config.convergence_tolerance * max(1.0, abs(f_center))
        remaining = self.config.max_evaluations - state.n_evaluations
        converged = state.restart_value is not None and state.restart_value - f_center <= tolerance
        if converged or remaining < self.n_interpolation_points - 1:
            state.phase = OptimizerState.CONVERGED
            state.message = (
                f"Trust-region radius {state.radius:.3e} below {self.stopping_radius:.3e} "
                f"after {state.n_restarts} restart(s)."
            )
            return

        logger.info(
            "Radius below %.3e at f = %.6f; restarting with radius %.4g",
            self.stopping_radius, f_center, self.initial_radius,
        )
        state.restart_value = f_center
        state.n_restarts += 1
        state.radius = self.initial_radius
        try:
            self._reset_geometry(state.center, f_center)
        except DegenerateGeometryError as exc:
            state.phase = OptimizerState.CONVERGED
            state.message = f"Restart stencil is degenerate ({exc}); keeping the converged point."

    def _geometry_is_good(self) -> bool:
        return self.state.model.max_distance() <= GEOMETRY_FACTOR * self.state.radius

    def _log_iteration(self, step: str) -> None:
        state = self.state
        logger.debug(
            "Iteration %d (%s): f = %.8f, radius = %.3e, evaluations = %d",
            state.n_iterations, step, state.best_value, state.radius, state.n_evaluations,
        )

    # ---------------------------
    # Interpolation set updates
    # ---------------------------
    def _insert(self, point: np.ndarray, value: float, improved: bool) -> bool:
        """Swap a new sample into the set.

        The sample dropped maximises |l_t(point)| weighted by its distance from
        the centre; the centre is only replaced by a new centre. When no
        candidate keeps the set poised an improving point triggers a reset of
        the set around it, otherwise the point is discarded.
        """
        state = self.state
        samples = state.samples
        lagrange = np.abs(state.model.lagrange_values(point))
        distances = samples.distances(point if improved else None)
        scores = lagrange * np.maximum(1.0, (distances / state.radius) ** 2) ** 2
        if not improved:
            scores[samples.center_index] = -np.inf

        for index in np.argsort(-scores, kind="stable"):
            if not np.isfinite(scores[index]) or lagrange[index] < MIN_LAGRANGE_VALUE:
                continue
            try:
                state.model.update_after_swap(int(index), point, value, center=improved)
                return True
            except DegenerateGeometryError as exc:
                logger.debug("Swap with sample %d rejected: %s", index, exc)

        if improved:
            logger.info("No poised swap for the new centre; rebuilding the interpolation set.")
            self._reset_geometry(point, value)
            return True
        logger.debug("Trial point discarded, no poised swap available.")
        return False

    def _geometry_candidates(self, index: int) -> list[np.ndarray]:
        state = self.state
        center, radius = state.center, state.radius
        directions = list(np.eye(self.dimension)) + list(-np.eye(self.dimension))
        gradient = state.model.lagrange_gradient(index, center)
        norm = np.linalg.norm(gradient)
        if np.isfinite(norm) and norm > 0.0:
            directions += [gradient / norm, -gradient / norm]

        others = np.delete(state.samples.points, index, axis=0)
        separation = MIN_SEPARATION_FACTOR * radius
        candidates = []
        for direction in directions:
            candidate = np.clip(center + radius * direction, self.lower, self.upper)
            if np.linalg.norm(others - candidate, axis=1).min() < separation:
                continue
            candidates.append(candidate)
        return candidates

    def _improve_geometry(self) -> None:
        """Replace the sample farthest from the centre by a point that improves poisedness."""
        state = self.state
        samples = state.samples
        distances = samples.distances()
        distances[samples.center_index] = -1.0
        index = int(np.argmax(distances))
        state.geometry_steps += 1

        candidates = self._geometry_candidates(index)
        if candidates:
            values = [abs(state.model.lagrange_values(c)[index]) for c in candidates]
            best = int(np.argmax(values))
        if not candidates or values[best] < MIN_LAGRANGE_VALUE:
            logger.debug("No geometry candidate for sample %d; rebuilding the interpolation set.", index)
            self._reset_geometry(state.center, state.center_value)
            return

        point = candidates[best]
        value = self._evaluate(point)
        improved = value < state.center_value
        try:
            state.model.update_after_swap(index, point, value, center=improved)
        except DegenerateGeometryError as exc:
            logger.debug("Geometry step rejected: %s", exc)
            if improved:
                self._reset_geometry(point, value)
            else:
                self._reset_geometry(state.center, state.center_value)

    def _reset_geometry(self, center: np.ndarray, center_value: float) -> None:
        """Rebuild the whole interpolation set as a fresh stencil around ``center``.

        Raises DegenerateGeometryError when the new set cannot be fitted either.
        """
        state = self.state
        narrowest = float((self.upper - self.lower).min())
        state.radius = min(state.radius, narrowest / 3.0)
        points = self._stencil(np.asarray(center, dtype=float), state.radius)
        values = [center_value] + [self._evaluate(p) for p in points[1:]]
        samples = InterpolationSet(points, values, center_index=int(np.argmin(values)))
        state.model.rebuild(samples)
        state.geometry_steps = 0

    def _result(self) -> OptimizationResult:
        state = self.state
        status = _TERMINAL_STATUS[state.phase]
        usable = status is not TerminationStatus.DEGENERATE_FAILURE and state.best_point is not None
        return OptimizationResult(
            status=status,
            x=np.array(state.best_point) if usable else None,
            fun=float(state.best_value) if usable else None,
            n_evaluations=state.n_evaluations,
            n_iterations=state.n_iterations,
            radius=state.radius,
            history=list(state.history),
            message=state.message,
            n_restarts=state.n_restarts,
        )


def solve(objective: Callable[[np.ndarray], float], bounds, config: SolverConfiguration | None = None) -> OptimizationResult:
    """Minimise ``objective`` over ``bounds`` = (lower, upper); see TrustRegionOptimizer."""
    lower, upper = bounds
    return TrustRegionOptimizer(objective, lower, upper, config).run()
