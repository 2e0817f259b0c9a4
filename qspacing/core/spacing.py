"""Quantile-spacing estimation.

The anchor quantile ``alpha[jstar]`` is fit by weighted quantile regression.
Each adjacent quantile is then reached through the log of the gap between
it and its neighbour: an upward walk models ``log(e)`` on the positive
residuals and a downward walk models ``log(-e)`` on the negative ones. Since
every spacing is ``exp(x'b) > 0``, fitted quantiles cannot cross.

All indices are 0-based. Coefficient tables are always expanded back to the
full set of variable names, with ``0.0`` for columns dropped by the rank
repair of a particular step.
"""

# qspacing/core/spacing.py
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from . import linalg as la
from .rank import ensure_full_rank, restore_columns
from .solver import SolverControl, check_loss, rq_fit_sfn

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "SpacingResult",
    "SpacingStep",
    "quant_reg_spacing",
    "quantile_label",
    "spacing_step",
    "spacings_to_quantiles",
]


def quantile_label(q: float) -> str:
    """Label used for a quantile in coefficient tables (``0.1 -> "0.1"``)."""
    return f"{float(q):g}"


@dataclass(frozen=True)
class SpacingStep:
    """Result of one spacing fit.

    ``coef`` is full width (dropped columns are 0.0) and ``residuals`` is the
    residual snapshot that the next step in the same walk starts from.
    """

    label: str
    tau: float
    coef: NDArray[np.float64]
    pseudo_r2: float
    ierr: int
    iterations: int
    count: int
    retained: list[str]
    residuals: NDArray[np.float64]


@dataclass
class SpacingResult:
    """Coefficients and diagnostics of a quantile-spacing fit.

    Attributes
    ----------
    coef : pandas.DataFrame
        ``p x K`` table indexed by quantile label with the full variable names
        as columns. Row ``jstar`` holds anchor quantile coefficients; other rows
        hold log-spacing coefficients.
    pseudo_r2, ierr, iterations, counts : pandas.Series
        Per-quantile diagnostics indexed by label.
    retained : dict
        Label -> names of the columns actually estimated.
    quantiles : ndarray
        The quantile grid.
    jstar : int
        0-based anchor index.

    """

    coef: pd.DataFrame
    pseudo_r2: pd.Series
    ierr: pd.Series
    iterations: pd.Series
    counts: pd.Series
    retained: dict[str, list[str]] = field(default_factory=dict)
    quantiles: NDArray[np.float64] = field(default_factory=lambda: np.empty(0))
    jstar: int = 0

    @property
    def converged(self) -> pd.Series:
        return self.ierr == 0

    @property
    def labels(self) -> list[str]:
        return list(self.coef.index)

    def flat_coef(self) -> pd.Series:
        """Coefficients flattened to ``"<label>_<var>"`` names in quantile order."""
        names = [f"{lab}_{var}" for lab in self.coef.index for var in self.coef.columns]
        return pd.Series(self.coef.to_numpy().reshape(-1), index=names, dtype=float)


def _validate_grid(alpha: Sequence[float], jstar: int) -> NDArray[np.float64]:
    a = np.asarray(alpha, dtype=np.float64).reshape(-1)
    if a.size == 0:
        msg = "alpha must contain at least one quantile."
        raise ValueError(msg)
    if not np.all(np.isfinite(a)) or np.any(a <= 0.0) or np.any(a >= 1.0):
        msg = "alpha values must lie strictly inside (0, 1)."
        raise ValueError(msg)
    if a.size > 1 and np.any(np.diff(a) <= 0.0):
        msg = "alpha must be strictly increasing."
        raise ValueError(msg)
    if not (0 <= int(jstar) < a.size):
        msg = f"jstar={jstar} is out of range for a grid of {a.size} quantiles."
        raise ValueError(msg)
    return a


def _check_start_table(
    start: pd.DataFrame | None, labels: Sequence[str], names: Sequence[str],
) -> None:
    """Require a row per quantile label and a column per variable name."""
    if start is None:
        return
    if not isinstance(start, pd.DataFrame):
        msg = "start must be a pandas DataFrame indexed by quantile label."
        raise ValueError(msg)
    missing_rows = [lab for lab in labels if lab not in start.index]
    if missing_rows:
        msg = f"start table has no row for quantile(s) {missing_rows}."
        raise ValueError(msg)
    missing_cols = [v for v in names if v not in start.columns]
    if missing_cols:
        msg = f"start table is missing columns {missing_cols}."
        raise ValueError(msg)


def _start_row(
    start: pd.DataFrame | None, label: str, retained: Sequence[str],
) -> NDArray[np.float64] | None:
    """Warm-start values for the retained columns of one quantile, if given."""
    if start is None:
        return None
    if label not in start.index:
        msg = f"start table has no row for quantile {label!r}."
        raise ValueError(msg)
    missing = [v for v in retained if v not in start.columns]
    if missing:
        msg = f"start table is missing columns {missing}."
        raise ValueError(msg)
    return start.loc[label, list(retained)].to_numpy(dtype=np.float64)


def _pseudo_r2(
    y: NDArray[np.float64],
    resid: NDArray[np.float64],
    tau: float,
    weights: NDArray[np.float64] | None,
    control: SolverControl,
) -> float:
    """``1 - V/V0`` against an intercept-only fit on the same rows."""
    V = check_loss(resid, tau, weights)
    ones = np.ones((y.shape[0], 1))
    null_fit = rq_fit_sfn(
        ones, y, tau, weights=weights, control=dataclasses.replace(control, warn=False),
    )
    V0 = check_loss(null_fit.residuals, tau, weights)
    if V0 <= 0.0:
        return float("nan")
    return 1.0 - V / V0


def spacing_step(
    X: Any,
    var_names: Sequence[str],
    residuals: Sequence[float],
    alpha: Sequence[float],
    j: int,
    direction: str,
    *,
    small: float = 1e-3,
    trunc: bool = False,
    weights: Sequence[float] | None = None,
    start: pd.DataFrame | None = None,
    control: SolverControl | None = None,
) -> SpacingStep:
    """Fit the log-spacing between ``alpha[j]`` and its inner neighbour.

    ``direction="up"`` models the gap between ``alpha[j-1]`` and ``alpha[j]``
    using rows with positive residuals; ``direction="down"`` models the gap
    between ``alpha[j]`` and ``alpha[j+1]`` using rows with negative
    residuals. With ``trunc=True`` every row of the right sign is used and
    the response is ``log(max(|e|, small))``; otherwise only rows with
    ``|e| > small`` enter and the response is ``log(|e|)``.

    Returns a new residual snapshot; the input residuals are not modified.

    Raises
    ------
    RuntimeError
        If no row is eligible for the step.

    """
    ctrl = control if control is not None else SolverControl()
    A = la.to_csr(X)
    names = [str(v) for v in var_names]
    e = np.asarray(residuals, dtype=np.float64).reshape(-1)
    a = np.asarray(alpha, dtype=np.float64).reshape(-1)
    wv = None if weights is None else np.asarray(weights, dtype=np.float64).reshape(-1)

    if direction == "up":
        if not (1 <= j < a.size):
            msg = f"Upward step index {j} out of range."
            raise ValueError(msg)
        tau = (a[j] - a[j - 1]) / (1.0 - a[j - 1])
        signed = e
    elif direction == "down":
        if not (0 <= j < a.size - 1):
            msg = f"Downward step index {j} out of range."
            raise ValueError(msg)
        tau = (a[j + 1] - a[j]) / a[j + 1]
        signed = -e
    else:
        msg = "direction must be 'up' or 'down'."
        raise ValueError(msg)

    rows = np.flatnonzero(signed > 0.0) if trunc else np.flatnonzero(signed > small)
    label = quantile_label(a[j])
    if rows.size == 0:
        msg = (
            f"No eligible rows for the spacing at quantile {label} "
            f"(direction={direction}, trunc={trunc})."
        )
        raise RuntimeError(msg)

    if trunc:
        response = np.log(np.maximum(signed[rows], small))
    else:
        response = np.log(signed[rows])
    w_rows = None if wv is None else wv[rows]

    reduced = ensure_full_rank(A[rows, :], names)
    fit = rq_fit_sfn(
        reduced.matrix,
        response,
        tau,
        weights=w_rows,
        start=_start_row(start, label, reduced.var_names),
        control=ctrl,
    )
    coef_full = restore_columns(fit.coefficients, reduced.var_names, names)
    r2 = _pseudo_r2(response, fit.residuals, tau, w_rows, ctrl)

    spacing = np.exp(np.asarray(A @ coef_full, dtype=np.float64).reshape(-1))
    next_resid = e - spacing if direction == "up" else e + spacing

    LOGGER.debug(
        "Spacing %s (%s, tau'=%.4g): rows=%d, ierr=%d, iterations=%d, pseudo-R2=%.4g",
        label, direction, tau, rows.size, fit.ierr, fit.iterations, r2,
    )
    return SpacingStep(
        label=label,
        tau=float(tau),
        coef=coef_full,
        pseudo_r2=float(r2),
        ierr=fit.ierr,
        iterations=fit.iterations,
        count=int(rows.size),
        retained=list(reduced.var_names),
        residuals=next_resid,
    )


def quant_reg_spacing(
    y: Sequence[float],
    X: Any,
    var_names: Sequence[str],
    alpha: Sequence[float],
    jstar: int,
    *,
    small: float = 1e-3,
    trunc: bool = False,
    start: pd.DataFrame | None = None,
    weights: Sequence[float] | None = None,
    control: SolverControl | None = None,
) -> SpacingResult:
    """Estimate the anchor quantile and all log-spacings.

    Parameters
    ----------
    y : array-like, shape (n,)
        Response.
    X : ndarray or scipy.sparse matrix, shape (n, K)
        Design matrix (converted to CSR).
    var_names : sequence of str
        Names of the K columns.
    alpha : sequence of float
        Strictly increasing quantile grid in (0, 1).
    jstar : int
        0-based index of the anchor quantile.
    small : float, default 1e-3
        Residual threshold for filtering, or floor for truncation.
    trunc : bool, default False
        Truncate small residuals instead of filtering them out.
    start : pandas.DataFrame, optional
        Warm-start table (labels x variable names) such as a previous
        ``SpacingResult.coef``.
    weights : array-like, optional
        Strictly positive observation weights.
    control : SolverControl, optional
        Settings forwarded to the quantile regression kernel.

    Returns
    -------
    SpacingResult

    """
    a = _validate_grid(alpha, jstar)
    jstar = int(jstar)
    if not (float(small) > 0.0):
        msg = "small must be positive."
        raise ValueError(msg)
    ctrl = control if control is not None else SolverControl()
    A = la.to_csr(X)
    yv = np.asarray(y, dtype=np.float64).reshape(-1)
    names = [str(v) for v in var_names]
    n, k = A.shape
    if yv.shape[0] != n:
        msg = f"y has {yv.shape[0]} rows but X has {n}."
        raise ValueError(msg)
    if len(names) != k:
        msg = f"var_names has {len(names)} entries but X has {k} columns."
        raise ValueError(msg)
    if len(set(names)) != len(names):
        msg = "var_names must be unique."
        raise ValueError(msg)
    wv = None
    if weights is not None:
        wv = np.asarray(weights, dtype=np.float64).reshape(-1)
        if wv.shape[0] != n:
            msg = f"weights has {wv.shape[0]} entries but X has {n} rows."
            raise ValueError(msg)

    p = a.size
    labels = [quantile_label(q) for q in a]
    _check_start_table(start, labels, names)
    coef = np.zeros((p, k))
    pseudo_r2 = np.full(p, np.nan)
    ierr = np.zeros(p, dtype=np.int64)
    iterations = np.zeros(p, dtype=np.int64)
    counts = np.zeros(p, dtype=np.int64)
    retained: dict[str, list[str]] = {}

    # Anchor quantile
    reduced = ensure_full_rank(A, names)
    anchor = rq_fit_sfn(
        reduced.matrix,
        yv,
        a[jstar],
        weights=wv,
        start=_start_row(start, labels[jstar], reduced.var_names),
        control=ctrl,
    )
    coef[jstar] = restore_columns(anchor.coefficients, reduced.var_names, names)
    pseudo_r2[jstar] = _pseudo_r2(yv, anchor.residuals, a[jstar], wv, ctrl)
    ierr[jstar] = anchor.ierr
    iterations[jstar] = anchor.iterations
    counts[jstar] = n
    retained[labels[jstar]] = list(reduced.var_names)
    LOGGER.debug(
        "Anchor quantile %s: ierr=%d, iterations=%d, pseudo-R2=%.4g",
        labels[jstar], anchor.ierr, anchor.iterations, pseudo_r2[jstar],
    )

    walks = (
        ("up", range(jstar + 1, p)),
        ("down", range(jstar - 1, -1, -1)),
    )
    for direction, steps in walks:
        resid = anchor.residuals
        for j in steps:
            step = spacing_step(
                A,
                names,
                resid,
                a,
                j,
                direction,
                small=small,
                trunc=trunc,
                weights=wv,
                start=start,
                control=ctrl,
            )
            coef[j] = step.coef
            pseudo_r2[j] = step.pseudo_r2
            ierr[j] = step.ierr
            iterations[j] = step.iterations
            counts[j] = step.count
            retained[labels[j]] = step.retained
            resid = step.residuals

    return SpacingResult(
        coef=pd.DataFrame(coef, index=labels, columns=names),
        pseudo_r2=pd.Series(pseudo_r2, index=labels, name="pseudo_r2"),
        ierr=pd.Series(ierr, index=labels, name="ierr"),
        iterations=pd.Series(iterations, index=labels, name="iterations"),
        counts=pd.Series(counts, index=labels, name="count"),
        retained=retained,
        quantiles=a,
        jstar=jstar,
    )


def spacings_to_quantiles(
    coef: pd.DataFrame | NDArray[np.float64],
    X: Any,
    jstar: int,
) -> NDArray[np.float64]:
    """Convert anchor and spacing coefficients to fitted quantiles.

    Column ``jstar`` is ``X b_jstar``; columns above add ``exp(X b_j)``
    cumulatively and columns below subtract it, so each row is
    non-decreasing across quantiles.

    Returns
    -------
    ndarray, shape (n, p)

    """
    B = coef.to_numpy(dtype=np.float64) if isinstance(coef, pd.DataFrame) else np.asarray(coef, dtype=np.float64)
    if B.ndim == 1:
        B = B.reshape(1, -1)
    p, k = B.shape
    if X.shape[1] != k:
        msg = f"X has {X.shape[1]} columns but the coefficient table has {k}."
        raise ValueError(msg)
    if not (0 <= int(jstar) < p):
        msg = f"jstar={jstar} is out of range for {p} quantiles."
        raise ValueError(msg)
    jstar = int(jstar)
    A = la.to_csr(X)
    lin = np.asarray(A @ B.T, dtype=np.float64)
    out = np.empty_like(lin)
    out[:, jstar] = lin[:, jstar]
    for j in range(jstar + 1, p):
        out[:, j] = out[:, j - 1] + np.exp(lin[:, j])
    for j in range(jstar - 1, -1, -1):
        out[:, j] = out[:, j + 1] - np.exp(lin[:, j])
    return out
