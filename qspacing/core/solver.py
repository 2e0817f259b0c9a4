"""Weighted sparse quantile regression.

The default kernel is the Frisch-Newton primal-dual interior point method
applied to the dual of the check-loss problem

    max_d  y'd   subject to  X'd = (1 - tau) X'1,  0 <= d <= 1,

with a Mehrotra-style predictor-corrector step. Weights premultiply both the
response and the rows of the design, and a user-supplied coefficient vector
can seed the dual iterate (warm start). The Newton systems ``X' Q X`` are
factorised with ``scipy.sparse.linalg`` for large sparse designs and with a
dense Cholesky otherwise.

``method="highs"`` solves the same weighted problem as an exact linear
program through :func:`scipy.optimize.linprog`.
"""

# qspacing/core/solver.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from scipy.optimize import linprog

from . import linalg as la

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "IERR_MAX_ITER",
    "IERR_NOT_SOLVED",
    "IERR_SINGULAR",
    "SolverControl",
    "SolverResult",
    "check_loss",
    "rq_fit_sfn",
]

IERR_MAX_ITER = 1
IERR_SINGULAR = 2
IERR_NOT_SOLVED = 3

_IERR_MESSAGES = {
    IERR_MAX_ITER: "maximum number of iterations reached before the duality gap closed",
    IERR_SINGULAR: "Newton system X'QX is numerically singular",
    IERR_NOT_SOLVED: "linear program solver did not report success",
}

# Columns above which a sparse design is factorised with a sparse LU.
_SPARSE_FACTOR_MIN_COLS = 200


@dataclass(frozen=True)
class SolverControl:
    """Tuning parameters for :func:`rq_fit_sfn`.

    Attributes
    ----------
    max_iter : int
        Maximum number of interior-point iterations.
    small : float
        Duality-gap tolerance; also the perturbation applied to near-zero
        starting residuals.
    step : float
        Fraction of the distance to the boundary taken by each step.
    warn : bool
        Issue a RuntimeWarning when ``ierr != 0``.
    method : {"sfn", "highs"}
        Interior point kernel or exact LP via HiGHS.

    """

    max_iter: int = 100
    small: float = 1e-6
    step: float = 0.99995
    warn: bool = True
    method: str = "sfn"

    def __post_init__(self) -> None:
        if int(self.max_iter) < 1:
            msg = "max_iter must be a positive integer."
            raise ValueError(msg)
        if not (float(self.small) > 0.0 and np.isfinite(self.small)):
            msg = "small must be a positive finite number."
            raise ValueError(msg)
        if not (0.0 < float(self.step) < 1.0):
            msg = "step must lie in (0, 1)."
            raise ValueError(msg)
        if self.method not in {"sfn", "highs"}:
            msg = "method must be 'sfn' or 'highs'."
            raise ValueError(msg)


@dataclass(frozen=True)
class SolverResult:
    """Outcome of a single weighted quantile regression fit.

    ``ierr`` is 0 on success, 1 when ``max_iter`` was exhausted, 2 when the
    Newton system became singular and 3 when the LP backend failed. The
    coefficients of the last iterate are returned in every case.
    """

    coefficients: NDArray[np.float64]
    residuals: NDArray[np.float64]
    ierr: int
    iterations: int
    weights: NDArray[np.float64] | None
    gap: float

    @property
    def converged(self) -> bool:
        return self.ierr == 0


def check_loss(
    u: Sequence[float], tau: float, weights: Sequence[float] | None = None,
) -> float:
    """Weighted check (pinball) loss ``sum w * u * (tau - 1{u < 0})``."""
    uv = np.asarray(u, dtype=np.float64).reshape(-1)
    rho = uv * (float(tau) - (uv < 0.0))
    if weights is not None:
        wv = np.asarray(weights, dtype=np.float64).reshape(-1)
        if wv.shape[0] != uv.shape[0]:
            msg = "weights length must match the residual length."
            raise ValueError(msg)
        rho = wv * rho
    return float(np.sum(rho))


def _validate_inputs(
    X: Any, y: Any, tau: float, weights: Any, start: Any,
) -> tuple[sp.csr_matrix, NDArray[np.float64], NDArray[np.float64] | None, NDArray[np.float64] | None]:
    if not (0.0 < float(tau) < 1.0):
        msg = "tau must be in (0, 1)."
        raise ValueError(msg)
    A = la.to_csr(X)
    yv = np.asarray(y, dtype=np.float64).reshape(-1)
    n, k = A.shape
    if yv.shape[0] != n:
        msg = (
            f"Dimensions of design matrix ({n} rows) and response ({yv.shape[0]}) "
            "are not compatible."
        )
        raise ValueError(msg)
    if n == 0 or k == 0:
        msg = "Design matrix must have at least one row and one column."
        raise ValueError(msg)
    la._assert_all_finite(yv)
    la._assert_all_finite_matrix(A)
    wv = None
    if weights is not None:
        wv = np.asarray(weights, dtype=np.float64).reshape(-1)
        if wv.shape[0] != n:
            msg = (
                f"Dimensions of design matrix ({n} rows) and weights "
                f"({wv.shape[0]}) are not compatible."
            )
            raise ValueError(msg)
        if not np.all(np.isfinite(wv)) or np.any(wv <= 0.0):
            msg = "weights must be finite and strictly positive."
            raise ValueError(msg)
    sv = None
    if start is not None:
        sv = np.asarray(start, dtype=np.float64).reshape(-1)
        if sv.shape[0] != k:
            msg = f"start has {sv.shape[0]} entries but the design has {k} columns."
            raise ValueError(msg)
        if not np.all(np.isfinite(sv)):
            msg = "start must be finite."
            raise ValueError(msg)
    return A, yv, wv, sv


def _normal_solver(
    A: sp.csr_matrix, q: NDArray[np.float64],
) -> Callable[[NDArray[np.float64]], NDArray[np.float64]] | None:
    """Factorise ``A' diag(q) A`` and return a solve function, or None if singular."""
    AtQA = A.T @ sp.diags(q) @ A
    k = AtQA.shape[0]
    if k >= _SPARSE_FACTOR_MIN_COLS and AtQA.nnz < 0.25 * k * k:
        try:
            solve = spla.factorized(sp.csc_matrix(AtQA))
        except RuntimeError:
            return None
        return lambda rhs: np.asarray(solve(rhs), dtype=np.float64)
    dense = AtQA.toarray()
    try:
        factor = sla.cho_factor(dense, lower=False, check_finite=True)
    except (np.linalg.LinAlgError, ValueError):
        return None
    return lambda rhs: sla.cho_solve(factor, rhs)


def _bound(v: NDArray[np.float64], dv: NDArray[np.float64]) -> float:
    """Largest step keeping ``v + f * dv`` nonnegative (1e20 if unbounded)."""
    neg = dv < 0.0
    if not np.any(neg):
        return 1e20
    return float(np.min(-v[neg] / dv[neg]))


def _fnm(
    A: sp.csr_matrix,
    c: NDArray[np.float64],
    tau: float,
    dual: NDArray[np.float64],
    control: SolverControl,
) -> tuple[NDArray[np.float64], int, int, float]:
    """Frisch-Newton iterations on the bounded dual; returns (dual, ierr, it, gap)."""
    n = A.shape[0]
    small = float(control.small)
    beta = float(control.step)
    x = np.full(n, 1.0 - tau)
    s = 1.0 - x
    b = A.T @ x

    r = c - A @ dual
    z = np.where(np.abs(r) < small, r * (r > 0) + small, r * (r > 0))
    w = z - r
    gap = float(c @ x - dual @ b + np.sum(w))

    it = 0
    while gap > small and it < control.max_iter:
        it += 1
        q = 1.0 / (z / x + w / s)
        r = z - w
        solve = _normal_solver(A, q)
        if solve is None:
            LOGGER.debug("Singular Newton system at iteration %d (gap=%.3g)", it, gap)
            return dual, IERR_SINGULAR, it, gap

        # Affine (predictor) step
        dy = solve(A.T @ (q * r))
        dx = q * (A @ dy - r)
        ds = -dx
        dz = -z * (dx / x + 1.0)
        dw = -w * (ds / s + 1.0)
        fp = min(beta * min(_bound(x, dx), _bound(s, ds)), 1.0)
        fd = min(beta * min(_bound(w, dw), _bound(z, dz)), 1.0)

        if min(fp, fd) < 1.0:
            # Corrector step
            mu = float(z @ x + w @ s)
            g = float((z + fd * dz) @ (x + fp * dx) + (w + fd * dw) @ (s + fp * ds))
            mu = mu * (g / mu) ** 3 / (2.0 * n)
            dxdz = dx * dz
            dsdw = ds * dw
            xinv = 1.0 / x
            sinv = 1.0 / s
            xi = mu * (xinv - sinv)
            dy = solve(A.T @ (q * (r + dxdz - dsdw - xi)))
            dx = q * (A @ dy + xi - r - dxdz + dsdw)
            ds = -dx
            dz = mu * xinv - z - xinv * z * dx - dxdz
            dw = mu * sinv - w - sinv * w * ds - dsdw
            fp = min(beta * min(_bound(x, dx), _bound(s, ds)), 1.0)
            fd = min(beta * min(_bound(w, dw), _bound(z, dz)), 1.0)

        x = x + fp * dx
        s = s + fp * ds
        dual = dual + fd * dy
        w = w + fd * dw
        z = z + fd * dz
        gap = float(c @ x - dual @ b + np.sum(w))
        if not np.isfinite(gap):
            return dual, IERR_SINGULAR, it, gap

    ierr = 0 if gap <= small else IERR_MAX_ITER
    return dual, ierr, it, gap


def _highs(
    A: sp.csr_matrix, yw: NDArray[np.float64], tau: float,
) -> tuple[NDArray[np.float64], int, int, float]:
    """Exact LP: y = X b + u+ - u-, minimise tau*1'u+ + (1-tau)*1'u-."""
    n, k = A.shape
    c = np.concatenate([np.zeros(k), np.full(n, tau), np.full(n, 1.0 - tau)])
    A_eq = sp.hstack([A, sp.eye(n), -sp.eye(n)], format="csr")
    bounds = [(None, None)] * k + [(0.0, None)] * (2 * n)
    res = None
    for method in ("highs-ds", "highs-ipm"):
        res = linprog(c, A_eq=A_eq, b_eq=yw, bounds=bounds, method=method)
        if bool(getattr(res, "success", False)):
            return np.asarray(res.x[:k], dtype=np.float64), 0, int(res.nit), 0.0
    LOGGER.debug("HiGHS failed: %s", getattr(res, "message", ""))
    return np.zeros(k), IERR_NOT_SOLVED, int(getattr(res, "nit", 0) or 0), np.inf


def rq_fit_sfn(
    X: Any,
    y: Sequence[float],
    tau: float = 0.5,
    *,
    weights: Sequence[float] | None = None,
    start: Sequence[float] | None = None,
    control: SolverControl | None = None,
) -> SolverResult:
    """Fit a weighted quantile regression of ``y`` on ``X`` at quantile ``tau``.

    Parameters
    ----------
    X : ndarray or scipy.sparse matrix, shape (n, k)
        Design matrix; converted to CSR.
    y : array-like, shape (n,)
        Response.
    tau : float
        Quantile in (0, 1).
    weights : array-like, optional
        Strictly positive observation weights.
    start : array-like, optional
        Coefficient vector used to seed the interior point iterations.
    control : SolverControl, optional
        Kernel settings.

    Returns
    -------
    SolverResult
        Coefficients, residuals on the original (unweighted) scale and
        convergence diagnostics. Non-convergence is reported through
        ``ierr``; it never raises.

    """
    ctrl = control if control is not None else SolverControl()
    A, yv, wv, sv = _validate_inputs(X, y, tau, weights, start)
    tau = float(tau)

    if wv is not None:
        Aw = la.row_scale(A, wv)
        yw = yv * wv
    else:
        Aw = A
        yw = yv

    if ctrl.method == "highs":
        coef, ierr, it, gap = _highs(Aw, yw, tau)
    else:
        c = -yw
        if sv is None:
            ones = np.ones(A.shape[0])
            solve = _normal_solver(Aw, ones)
            if solve is None:
                dual0 = -la.wls_coef(Aw, yw)
            else:
                dual0 = solve(Aw.T @ c)
        else:
            dual0 = -sv
        dual, ierr, it, gap = _fnm(Aw, c, tau, np.asarray(dual0, dtype=np.float64), ctrl)
        coef = -dual

    residuals = yv - np.asarray(A @ coef, dtype=np.float64).reshape(-1)
    LOGGER.debug(
        "rq_fit_sfn(tau=%.4g, n=%d, k=%d): ierr=%d, iterations=%d, gap=%.3g",
        tau, A.shape[0], A.shape[1], ierr, it, gap,
    )
    if ierr != 0 and ctrl.warn:
        warnings.warn(
            f"Quantile regression at tau={tau:g}: {_IERR_MESSAGES[ierr]} (ierr={ierr}).",
            RuntimeWarning,
            stacklevel=2,
        )
    return SolverResult(
        coefficients=np.asarray(coef, dtype=np.float64).reshape(-1),
        residuals=residuals,
        ierr=int(ierr),
        iterations=int(it),
        weights=wv,
        gap=float(gap),
    )
