"""Linear algebra routines shared by the quantile-spacing estimators.

This module provides the numerical rank oracle, dense/sparse conversion,
sparsity-aware products, weighted least squares and group sums. Sparse
designs stay in compressed-row form; densification happens only where a
pivoted QR is required. Explicit matrix inversion is avoided.
"""

# qspacing/core/linalg.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

# Matrix type alias
Matrix = Any

# Relative tolerance of the rank oracle on |diag(R)|
RANK_TOL: float = 1e-9

__all__ = [
    "RANK_TOL",
    "group_sum",
    "is_sparse",
    "qr",
    "rank",
    "rank_from_diag",
    "row_scale",
    "to_csr",
    "to_dense",
    "wls_coef",
]


def _assert_all_finite(*arrays: NDArray[np.float64]) -> None:
    """Raise ValueError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        _check_array_finiteness(np.asarray(a))


def _check_array_finiteness(arr: NDArray[np.float64]) -> None:
    """Helper to validate array finiteness with clear error message."""
    if not np.all(np.isfinite(arr)):
        raise ValueError(
            "Input contains NA/NaN/Inf; please drop/clean rows before fitting.",
        )


def _assert_all_finite_matrix(*matrices: Matrix) -> None:
    """Check dense or sparse matrices for non-finite entries."""
    for M in matrices:
        if M is None:
            continue
        if is_sparse(M):
            # Only inspect the stored data array to avoid densification.
            _check_array_finiteness(M.data)
        else:
            _check_array_finiteness(np.asarray(M))


def is_sparse(A: Matrix) -> bool:
    return sp.issparse(A)


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object to a dense float64 numpy array."""
    if is_sparse(A):
        return np.asarray(A.toarray(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def to_csr(A: Matrix) -> sp.csr_matrix:
    """Convert a dense or sparse matrix to float64 compressed sparse row form.

    One-dimensional input is treated as a single column. CSR input is
    returned as-is (no copy) so that row slicing of large designs stays cheap.
    """
    if is_sparse(A):
        if A.format == "csr" and A.dtype == np.float64:
            return A
        return sp.csr_matrix(A, dtype=np.float64)
    Ad = np.asarray(A, dtype=np.float64)
    if Ad.ndim == 1:
        Ad = Ad.reshape(-1, 1)
    if Ad.ndim != 2:
        msg = "Design matrix must be 2-dimensional."
        raise ValueError(msg)
    return sp.csr_matrix(Ad)


def qr(A: Matrix, *, pivoting: bool = False, mode: str = "economic"):
    """Compute a (column-pivoted) QR decomposition via SciPy GEQP3."""
    Ad = to_dense(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode=mode, pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode=mode, pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def rank_from_diag(diagR: NDArray[np.float64], *, tol: float = RANK_TOL) -> int:
    """Numerical rank from |diag(R)| of a pivoted QR, relative to max|R_ii|."""
    d = np.abs(np.asarray(diagR, dtype=float).reshape(-1))
    if d.size == 0:
        return 0
    dmax = float(np.max(d))
    if dmax == 0.0:
        return 0
    return int(np.sum(d > float(tol) * dmax))


def rank(A: Matrix, tol: float = RANK_TOL) -> int:
    """Numerical column rank of a dense or sparse matrix.

    Uses the diagonal of a column-pivoted QR of the (densified) matrix and
    counts entries above ``tol * max|R_ii|``. Sparse and dense
    representations of the same matrix give the same answer.
    """
    Ad = to_dense(A)
    if Ad.ndim != 2:
        msg = "rank: matrix must be 2-dimensional."
        raise ValueError(msg)
    if Ad.size == 0:
        return 0
    _assert_all_finite(Ad)
    _Q, R, _P = qr(Ad, pivoting=True)
    return rank_from_diag(np.diag(R), tol=tol)


def row_scale(A: Matrix, w: NDArray[np.float64]) -> Matrix:
    """Return diag(w) @ A without forming the diagonal matrix densely."""
    wv = np.asarray(w, dtype=np.float64).reshape(-1)
    if wv.shape[0] != A.shape[0]:
        msg = "row_scale: weight length must match number of rows."
        raise ValueError(msg)
    if is_sparse(A):
        return sp.csr_matrix(sp.diags(wv) @ A)
    return np.asarray(A, dtype=np.float64) * wv.reshape(-1, 1)


def _validate_weights(
    weights: Sequence[float],
    n: int,
    *,
    allow_zero: bool = True,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,).

    Parameters
    ----------
    weights : Sequence[float]
        Weight values to validate.
    n : int
        Expected length.
    allow_zero : bool, default True
        Whether to allow zero weights. If False, raises ValueError on any zero weight.

    Returns
    -------
    NDArray[np.float64]
        Validated weights as 1D array.

    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = f"weights length ({w.shape[0]}) must match the number of rows ({n})."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    if not allow_zero and np.any(w == 0):
        msg = "Zero weights not allowed (allow_zero=False)."
        raise ValueError(msg)
    wsum = float(np.sum(w))
    if not np.isfinite(wsum) or wsum <= 0.0:
        raise ValueError("weights must sum to a positive finite value")
    return w


def _qr_ls_solve(
    Ad: NDArray[np.float64], Bd: NDArray[np.float64], *, tol: float = RANK_TOL,
) -> NDArray[np.float64]:
    """Solve least squares via pivoted QR; unidentified coefficients are 0."""
    Bd = Bd.reshape(-1, 1) if Bd.ndim == 1 else Bd
    Q, R, P = qr(Ad, pivoting=True)
    r = rank_from_diag(np.diag(R), tol=tol)
    out = np.zeros((Ad.shape[1], Bd.shape[1]), dtype=np.float64)
    if r > 0:
        QtB = Q.T @ Bd
        out[P[:r], :] = sla.solve_triangular(R[:r, :r], QtB[:r, :], lower=False)
    return out


def wls_coef(
    X: Matrix,
    y: Matrix,
    weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Weighted least squares coefficients minimising sum_i w_i (y_i - x_i'b)^2.

    Solved by pivoted QR on ``sqrt(w) * X`` (no normal equations). Columns that
    are not identified on the supplied rows receive a zero coefficient, which
    keeps the coefficient vector aligned with the full column set.
    """
    Xd = to_dense(X)
    yd = np.asarray(y, dtype=np.float64).reshape(-1, 1)
    if Xd.shape[0] != yd.shape[0]:
        msg = "wls_coef: X and y must have the same number of rows."
        raise ValueError(msg)
    _assert_all_finite(Xd, yd)
    if weights is not None:
        sw = np.sqrt(_validate_weights(weights, Xd.shape[0])).reshape(-1, 1)
        Xd = Xd * sw
        yd = yd * sw
    return _qr_ls_solve(Xd, yd).reshape(-1)


def group_sum(
    X: Matrix, codes: Matrix, *, n_groups: int | None = None,
) -> NDArray[np.float64]:
    """Sum rows of X within groups defined by non-negative integer codes.

    Parameters
    ----------
    X : (n x p) matrix or length-n vector
    codes : length-n integer codes in ``0 .. n_groups-1``
    n_groups : total number of groups; defaults to ``max(codes) + 1`` so that
        empty groups keep a zero row at their own position.

    Returns
    -------
    (G x p) dense float64 array of sums over groups.

    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    codes_arr = np.asarray(codes).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    if codes_arr.size and np.min(codes_arr) < 0:
        msg = "codes must be non-negative integers"
        raise ValueError(msg)
    G = int(n_groups) if n_groups is not None else (int(np.max(codes_arr)) + 1 if codes_arr.size else 0)
    out = np.zeros((G, Xd.shape[1]), dtype=np.float64)
    np.add.at(out, codes_arr.astype(np.int64), Xd)
    return out
