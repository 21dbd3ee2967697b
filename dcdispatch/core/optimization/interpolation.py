"""
Quadratic interpolation model

Minimum Frobenius norm quadratic interpolation (Powell, NEWUOA/BOBYQA):
given m sample points x_i with values f_i and a base point b (the centre of
the set), find

    m(x) = c + g.(x - b) + 0.5 (x - b)' H (x - b)

that interpolates every sample and, among all such quadratics, has the
Hessian of least Frobenius norm. With y_i = (x_i - b) / scale the
coefficients solve the symmetric KKT system

    [ A   P ] [lambda]   [f]
    [ P'  0 ] [ c, g ] = [0],     A_ij = 0.5 (y_i . y_j)^2,  P_i = [1, y_i]

and H = sum_i lambda_i y_i y_i'. Columns of the inverse KKT matrix are the
coefficients of the Lagrange functions of the set, which is what the
optimizer uses to judge poisedness when points are swapped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from dcdispatch.core.errors import DegenerateGeometryError

logger = logging.getLogger(__name__)

MAX_CONDITION = 1e14
COINCIDENCE_TOLERANCE = 1e-12


@dataclass(frozen=True)
class InterpolationSet:
    """Sample points in angle space and their objective values."""
    points: np.ndarray
    values: np.ndarray
    center_index: int = 0

    def __post_init__(self):
        values = np.array(self.values, dtype=float).reshape(-1)
        points = np.array(self.points, dtype=float)
        if points.ndim == 1:
            points = points.reshape(len(values), -1)
        if points.ndim != 2 or points.shape[0] != values.shape[0]:
            raise ValueError(
                f"points {points.shape} and values {values.shape} do not describe the same samples"
            )
        if not 0 <= self.center_index < values.shape[0]:
            raise ValueError(f"center_index {self.center_index} out of range")
        points.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, "points", points)
        object.__setattr__(self, "values", values)

    @property
    def size(self) -> int:
        return self.values.shape[0]

    @property
    def dimension(self) -> int:
        return self.points.shape[1]

    @property
    def center(self) -> np.ndarray:
        return self.points[self.center_index]

    @property
    def center_value(self) -> float:
        return float(self.values[self.center_index])

    def distances(self, x=None) -> np.ndarray:
        """Euclidean distance of every sample from ``x`` (default: the centre)."""
        origin = self.center if x is None else np.asarray(x, dtype=float)
        return np.linalg.norm(self.points - origin, axis=1)

    def replace(self, index: int, point, value: float, center: bool = False) -> InterpolationSet:
        """New set with sample ``index`` swapped for ``point``.

        The centre sample can only be replaced by the new centre.
        """
        if index == self.center_index and not center:
            raise ValueError("Cannot drop the centre of the interpolation set")
        points = np.array(self.points)
        values = np.array(self.values)
        points[index] = np.asarray(point, dtype=float)
        values[index] = float(value)
        return InterpolationSet(points, values, index if center else self.center_index)


class InterpolationModel:
    """Quadratic surrogate of the objective around the centre of an interpolation set."""

    def __init__(self, samples: InterpolationSet | None = None):
        self._samples: InterpolationSet | None = None
        self._base = None
        self._scale = 1.0
        self._constant = 0.0
        self._gradient = None
        self._hessian = None
        self._kkt_inverse = None
        self._scaled_points = None
        if samples is not None:
            self.rebuild(samples)

    @property
    def samples(self) -> InterpolationSet:
        if self._samples is None:
            raise RuntimeError("Interpolation model has not been built")
        return self._samples

    @property
    def center(self) -> np.ndarray:
        return self.samples.center

    @property
    def hessian(self) -> np.ndarray:
        return self._hessian

    def rebuild(self, samples: InterpolationSet) -> InterpolationModel:
        """Fit the model to ``samples``; the previous model survives a failure."""
        fitted = _fit(samples)
        self._samples = samples
        (self._base, self._scale, self._constant, self._gradient,
         self._hessian, self._kkt_inverse, self._scaled_points) = fitted
        return self

    def update_after_swap(self, index: int, point, value: float, center: bool = False) -> InterpolationModel:
        """Replace sample ``index`` and refit.

        Raises DegenerateGeometryError (and keeps the current model) when the
        swap leaves the set unpoised.
        """
        return self.rebuild(self.samples.replace(index, point, value, center=center))

    def predict(self, x) -> float:
        d = np.asarray(x, dtype=float) - self._base
        return float(self._constant + self._gradient @ d + 0.5 * d @ self._hessian @ d)

    def gradient(self, x=None) -> np.ndarray:
        """Model gradient at ``x`` (default: the centre)."""
        if x is None:
            return self._gradient.copy()
        d = np.asarray(x, dtype=float) - self._base
        return self._gradient + self._hessian @ d

    def lagrange_values(self, x) -> np.ndarray:
        """Values at ``x`` of the Lagrange functions of every sample."""
        m = self.samples.size
        x_hat = (np.asarray(x, dtype=float) - self._base) / self._scale
        w = np.concatenate([0.5 * (self._scaled_points @ x_hat) ** 2, [1.0], x_hat])
        return (self._kkt_inverse @ w)[:m]

    def lagrange_gradient(self, index: int, x) -> np.ndarray:
        """Gradient of the Lagrange function of sample ``index`` at ``x``."""
        m = self.samples.size
        x_hat = (np.asarray(x, dtype=float) - self._base) / self._scale
        column = self._kkt_inverse[:, index]
        weights = column[:m] * (self._scaled_points @ x_hat)
        gradient_hat = self._scaled_points.T @ weights + column[m + 1:]
        return gradient_hat / self._scale

    def max_distance(self) -> float:
        return float(self.samples.distances().max())


def _fit(samples: InterpolationSet):
    m, n = samples.points.shape
    base = np.array(samples.center)
    f_center = samples.center_value
    if n == 0:
        return base, 1.0, f_center, np.zeros(0), np.zeros((0, 0)), np.zeros((m + 1, m + 1)), np.zeros((m, 0))

    y = samples.points - base
    scale = float(np.linalg.norm(y, axis=1).max())
    if not np.isfinite(scale) or scale <= 0.0:
        raise DegenerateGeometryError("All interpolation points coincide with the centre")

    pairwise = np.linalg.norm(y[:, None, :] - y[None, :, :], axis=2)
    np.fill_diagonal(pairwise, np.inf)
    if pairwise.min() <= COINCIDENCE_TOLERANCE * scale:
        raise DegenerateGeometryError("Interpolation set contains coincident points")

    y_hat = y / scale
    a_block = 0.5 * (y_hat @ y_hat.T) ** 2
    p_block = np.hstack([np.ones((m, 1)), y_hat])
    kkt = np.block([[a_block, p_block], [p_block.T, np.zeros((n + 1, n + 1))]])

    condition = np.linalg.cond(kkt)
    if not np.isfinite(condition) or condition > MAX_CONDITION:
        raise DegenerateGeometryError(
            f"Interpolation set is not poised (condition number {condition:.3e})"
        )
    try:
        kkt_inverse = np.linalg.inv(kkt)
    except np.linalg.LinAlgError as exc:
        raise DegenerateGeometryError(f"Interpolation system is singular: {exc}") from exc

    rhs = np.concatenate([samples.values - f_center, np.zeros(n + 1)])
    solution = kkt_inverse @ rhs
    multipliers = solution[:m]
    gradient = solution[m + 1:] / scale
    hessian = (y_hat.T * multipliers) @ y_hat / scale ** 2
    hessian = 0.5 * (hessian + hessian.T)
    constant = f_center + solution[m]
    logger.debug("Interpolation model rebuilt: scale %.3e, condition %.3e", scale, condition)
    return base, scale, constant, gradient, hessian, kkt_inverse, y_hat
