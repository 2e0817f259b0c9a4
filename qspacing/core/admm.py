"""ADMM updates for penalised group x time effects.

Solves

    min_G  1/2 sum_i w_i (z_i - G[g_i, t_i])^2 + lambda ||Theta||_*
    subject to  G = Theta

by alternating a closed-form cell-wise update of ``G``, singular value
soft-thresholding of ``Theta`` and a scaled dual ascent step. Every update
returns new arrays; the inputs are never modified.
"""

# qspacing/core/admm.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sla

from .linalg import group_sum

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ADMMStep",
    "PairedBlock",
    "PanelEffectsFit",
    "admm_update",
    "fit_panel_effects",
    "initial_state",
    "svt",
]


@dataclass(frozen=True)
class PairedBlock:
    """Low-rank copy ``theta`` of the effects and its scaled dual ``dual``."""

    theta: NDArray[np.float64]
    dual: NDArray[np.float64]


@dataclass(frozen=True)
class ADMMStep:
    gamma: NDArray[np.float64]
    paired: PairedBlock
    converged: bool
    delta: float


@dataclass(frozen=True)
class PanelEffectsFit:
    step: ADMMStep
    iterations: int

    @property
    def converged(self) -> bool:
        return self.step.converged

    @property
    def gamma(self) -> NDArray[np.float64]:
        return self.step.gamma

    @property
    def theta(self) -> NDArray[np.float64]:
        return self.step.paired.theta


def svt(A: NDArray[np.float64], threshold: float) -> NDArray[np.float64]:
    """Singular value soft-thresholding ``U max(S - threshold, 0) V'``."""
    if threshold <= 0.0:
        return np.array(A, dtype=np.float64, copy=True)
    U, s, Vt = sla.svd(np.asarray(A, dtype=np.float64), full_matrices=False)
    s_shrunk = np.maximum(s - float(threshold), 0.0)
    keep = s_shrunk > 0.0
    if not np.any(keep):
        return np.zeros_like(A, dtype=np.float64)
    return (U[:, keep] * s_shrunk[keep]) @ Vt[keep, :]


def _cell_codes(
    time_index: Sequence[int],
    group_index: Sequence[int],
    shape: tuple[int, int],
    n: int,
) -> NDArray[np.int64]:
    t = np.asarray(time_index).reshape(-1)
    g = np.asarray(group_index).reshape(-1)
    if t.shape[0] != n or g.shape[0] != n:
        msg = (
            f"time_index ({t.shape[0]}) and group_index ({g.shape[0]}) must have "
            f"the same length as target ({n})."
        )
        raise ValueError(msg)
    if not (np.issubdtype(t.dtype, np.integer) and np.issubdtype(g.dtype, np.integer)):
        msg = "time_index and group_index must be integer codes."
        raise ValueError(msg)
    G, T = shape
    if n and (g.min() < 0 or g.max() >= G or t.min() < 0 or t.max() >= T):
        msg = f"group/time codes fall outside the {G} x {T} effect grid."
        raise ValueError(msg)
    return (g.astype(np.int64) * T + t.astype(np.int64))


def _cell_sums(
    target: NDArray[np.float64],
    weights: NDArray[np.float64],
    codes: NDArray[np.int64],
    shape: tuple[int, int],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    n_cells = shape[0] * shape[1]
    sums = group_sum(np.column_stack([weights * target, weights]), codes, n_groups=n_cells)
    return sums[:, 0].reshape(shape), sums[:, 1].reshape(shape)


def _weights(weights: Sequence[float] | None, n: int) -> NDArray[np.float64]:
    if weights is None:
        return np.ones(n)
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = f"weights has {w.shape[0]} entries but target has {n}."
        raise ValueError(msg)
    if not np.all(np.isfinite(w)) or np.any(w < 0.0):
        msg = "weights must be finite and nonnegative."
        raise ValueError(msg)
    return w


def admm_update(
    gamma: NDArray[np.float64],
    paired: PairedBlock,
    weights: Sequence[float] | None,
    time_index: Sequence[int],
    group_index: Sequence[int],
    *,
    target: Sequence[float],
    tuning: float,
    nu: float,
    tol: float,
) -> ADMMStep:
    """One ADMM iteration.

    1. ``gamma <- (S + nu (theta - dual)) / (C + nu)`` per cell, where ``S``
       and ``C`` are the weighted cell sums of ``target`` and of the weights.
    2. ``theta <- svt(gamma + dual, tuning / nu)``.
    3. ``dual <- dual + gamma - theta``.

    Converged when both the change in ``gamma`` and the primal residual
    ``gamma - theta`` are below ``tol`` in max norm.
    """
    if not (float(nu) > 0.0):
        msg = "nu must be positive."
        raise ValueError(msg)
    if not (float(tuning) >= 0.0):
        msg = "tuning must be nonnegative."
        raise ValueError(msg)
    if not (float(tol) > 0.0):
        msg = "tol must be positive."
        raise ValueError(msg)
    G0 = np.asarray(gamma, dtype=np.float64)
    if G0.ndim != 2:
        msg = "gamma must be a 2-dimensional (group x time) array."
        raise ValueError(msg)
    theta = np.asarray(paired.theta, dtype=np.float64)
    dual = np.asarray(paired.dual, dtype=np.float64)
    if theta.shape != G0.shape or dual.shape != G0.shape:
        msg = "theta and dual must have the same shape as gamma."
        raise ValueError(msg)
    z = np.asarray(target, dtype=np.float64).reshape(-1)
    n = z.shape[0]
    w = _weights(weights, n)
    shape = (G0.shape[0], G0.shape[1])
    codes = _cell_codes(time_index, group_index, shape, n)
    S, C = _cell_sums(z, w, codes, shape)

    nu = float(nu)
    gamma_new = (S + nu * (theta - dual)) / (C + nu)
    theta_new = svt(gamma_new + dual, float(tuning) / nu)
    dual_new = dual + gamma_new - theta_new

    delta = float(np.max(np.abs(gamma_new - G0))) if G0.size else 0.0
    primal = float(np.max(np.abs(gamma_new - theta_new))) if G0.size else 0.0
    return ADMMStep(
        gamma=gamma_new,
        paired=PairedBlock(theta=theta_new, dual=dual_new),
        converged=bool(delta < tol and primal < tol),
        delta=delta,
    )


def initial_state(
    target: Sequence[float],
    time_index: Sequence[int],
    group_index: Sequence[int],
    *,
    weights: Sequence[float] | None = None,
    n_groups: int | None = None,
    n_times: int | None = None,
) -> tuple[NDArray[np.float64], PairedBlock]:
    """Cell means for ``gamma`` (0 for empty cells), ``theta = gamma``, zero dual."""
    z = np.asarray(target, dtype=np.float64).reshape(-1)
    g = np.asarray(group_index).reshape(-1)
    t = np.asarray(time_index).reshape(-1)
    G = int(n_groups) if n_groups is not None else (int(g.max()) + 1 if g.size else 0)
    T = int(n_times) if n_times is not None else (int(t.max()) + 1 if t.size else 0)
    w = _weights(weights, z.shape[0])
    codes = _cell_codes(t, g, (G, T), z.shape[0])
    S, C = _cell_sums(z, w, codes, (G, T))
    gamma = np.divide(S, C, out=np.zeros_like(S), where=C > 0)
    return gamma, PairedBlock(theta=gamma.copy(), dual=np.zeros_like(gamma))


def fit_panel_effects(
    target: Sequence[float],
    time_index: Sequence[int],
    group_index: Sequence[int],
    *,
    tuning: float,
    weights: Sequence[float] | None = None,
    nu: float = 1.0,
    tol: float = 1e-6,
    max_iter: int = 1000,
    n_groups: int | None = None,
    n_times: int | None = None,
) -> PanelEffectsFit:
    """Iterate :func:`admm_update` from cell means until convergence."""
    if int(max_iter) < 1:
        msg = "max_iter must be a positive integer."
        raise ValueError(msg)
    gamma, paired = initial_state(
        target, time_index, group_index,
        weights=weights, n_groups=n_groups, n_times=n_times,
    )
    step = ADMMStep(gamma=gamma, paired=paired, converged=False, delta=np.inf)
    it = 0
    while it < int(max_iter):
        it += 1
        step = admm_update(
            step.gamma,
            step.paired,
            weights,
            time_index,
            group_index,
            target=target,
            tuning=tuning,
            nu=nu,
            tol=tol,
        )
        if step.converged:
            break
    LOGGER.debug(
        "ADMM panel effects: iterations=%d, converged=%s, delta=%.3g",
        it, step.converged, step.delta,
    )
    return PanelEffectsFit(step=step, iterations=it)
