"""Intercept column handling for spacing designs.

R and Stata intercept placement: ``(Intercept)`` at the front or ``_cons``
at the back. An existing all-ones column is adopted as the intercept
instead of adding a duplicate; other constant columns are left in place
for the rank repair to drop.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["add_constant"]

# Constants
_NDIM_2D = 2
_CONST_TOL = 1e-12


def add_constant(
    X: Any,
    var_names: Sequence[str] | None = None,
    *,
    dialect: str | None = None,
    include_intercept: bool = True,
    warn_on_existing_constant: bool = True,
    tol: float = _CONST_TOL,
) -> tuple[Any, list[str], str]:
    """Add an intercept column to a dense or sparse design.

    Parameters
    ----------
    X : ndarray or scipy.sparse matrix, shape (n, k)
        Design matrix.
    var_names : Sequence[str] | None
        Variable names; defaults to ``x0 .. x{k-1}``.
    dialect : str | None
        'r' (default, ``(Intercept)`` at front) or 'stata' (``_cons`` at back).
    include_intercept : bool
        Whether to add the intercept.
    warn_on_existing_constant : bool
        Warn when an all-ones column is adopted as the intercept.

    Returns
    -------
    X_out : ndarray or scipy.sparse.csr_matrix
        Matrix with intercept (sparse input stays sparse).
    names_out : list[str]
        Variable names with intercept.
    const_name_out : str
        Intercept name used.

    """
    sparse_in = sp.issparse(X)
    if sparse_in:
        X = sp.csr_matrix(X, dtype=np.float64)
    else:
        X = np.asarray(X, dtype=np.float64, order="C")
        if X.ndim == 1:
            X = X.reshape(-1, 1)
    if X.ndim != _NDIM_2D:
        msg = "X must be 2D."
        raise ValueError(msg)
    n, k = X.shape

    names = _normalize_variable_names(var_names, k)
    _validate_unique_names(names)
    dialect_str = _validate_dialect(dialect)
    const_name = "(Intercept)" if dialect_str == "r" else "_cons"

    if not include_intercept:
        return X, names, const_name

    if const_name in names:
        j = names.index(const_name)
        if j not in _find_ones_cols(X, tol):
            msg = (
                f"A non-constant column uses the reserved name '{const_name}'. "
                "Rename the variable."
            )
            raise ValueError(msg)

    ones_idx = _find_ones_cols(X, tol)
    if ones_idx:
        j = ones_idx[0]
        if warn_on_existing_constant:
            warnings.warn(
                f"Existing all-ones column '{names[j]}' adopted as the intercept.",
                RuntimeWarning,
                stacklevel=2,
            )
        order = [i for i in range(k) if i != j]
        order = [j, *order] if dialect_str == "r" else [*order, j]
        X_out = X[:, order]
        names_out = [names[i] for i in order]
        names_out[0 if dialect_str == "r" else -1] = const_name
        return X_out, names_out, const_name

    ones = np.ones((n, 1), dtype=np.float64)
    if sparse_in:
        blocks = [sp.csr_matrix(ones), X] if dialect_str == "r" else [X, sp.csr_matrix(ones)]
        X_out = sp.hstack(blocks, format="csr")
    else:
        X_out = np.column_stack([ones, X] if dialect_str == "r" else [X, ones])
    names_out = [const_name, *names] if dialect_str == "r" else [*names, const_name]
    return X_out, names_out, const_name


def _normalize_variable_names(var_names: Sequence[str] | None, k: int) -> list[str]:
    """Normalize variable names to a list of strings."""
    if var_names is None:
        return [f"x{i}" for i in range(k)]

    names = [str(nm) for nm in var_names]
    if len(names) != k:
        msg = f"var_names length ({len(names)}) does not match X columns ({k})."
        raise ValueError(msg)
    return names


def _validate_unique_names(names: list[str]) -> None:
    """Ensure all variable names are unique."""
    if len(names) != len(set(names)):
        dup_seen = set()
        for nm in names:
            if nm in dup_seen:
                raise ValueError(
                    f"Duplicate variable name in var_names: '{nm}'. "
                    "Provide unique names.",
                )
            dup_seen.add(nm)


def _validate_dialect(dialect: str | None) -> str:
    """Validate and normalize dialect string."""
    dialect_str = "r" if dialect is None else str(dialect).lower()
    if dialect_str not in {"r", "stata"}:
        raise ValueError(
            f"Invalid dialect: '{dialect_str}'. Must be one of: 'r', 'stata'.",
        )
    return dialect_str


def _find_ones_cols(X: Any, tol: float) -> list[int]:
    """Indices of columns equal to one (within ``tol``) on every row."""
    if X.shape[0] == 0:
        return []
    if sp.issparse(X):
        # Only fully stored columns can be all ones.
        Xc = sp.csc_matrix(X)
        Xc.sum_duplicates()
        out = []
        for j in np.flatnonzero(np.diff(Xc.indptr) == X.shape[0]):
            vals = Xc.data[Xc.indptr[j] : Xc.indptr[j + 1]]
            if float(np.max(np.abs(vals - 1.0))) <= float(tol):
                out.append(int(j))
        return out
    colmax = np.max(np.abs(X - 1.0), axis=0)
    return [int(j) for j in np.flatnonzero(colmax <= float(tol))]
