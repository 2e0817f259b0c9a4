"""Rank-deficiency repair for design matrices.

Columns are scanned left to right and kept only when they raise the rank of
the columns kept so far, so among linearly dependent columns the later ones
are dropped. Coefficients estimated on the reduced design are re-expanded to
the full column ordering with :func:`restore_columns`.
"""

# qspacing/core/rank.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .linalg import RANK_TOL, is_sparse, rank, to_csr, to_dense

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "RankReducedDesign",
    "ensure_full_rank",
    "find_redundant_cols",
    "restore_columns",
]


@dataclass(frozen=True)
class RankReducedDesign:
    """Design matrix with linearly dependent columns removed.

    Attributes
    ----------
    matrix : ndarray or scipy.sparse.csr_matrix
        Full-column-rank design (same storage kind as the input).
    var_names : list[str]
        Names of the retained columns, in original order.
    dropped : list[str]
        Names of the removed columns.
    keep_mask : ndarray of bool
        Boolean mask over the original columns.

    """

    matrix: Any
    var_names: list[str]
    dropped: list[str]
    keep_mask: NDArray[np.bool_]

    @property
    def n_dropped(self) -> int:
        return len(self.dropped)


def find_redundant_cols(matrix: Any, tol: float = RANK_TOL) -> list[int]:
    """Return 0-based indices of columns that do not raise the running rank.

    A full-rank matrix returns an empty list without scanning. All-zero
    columns are always redundant.
    """
    Ad = to_dense(matrix)
    if Ad.ndim != 2:
        msg = "find_redundant_cols: matrix must be 2-dimensional."
        raise ValueError(msg)
    k = Ad.shape[1]
    if k == 0:
        return []
    full = rank(Ad, tol=tol)
    if full == k:
        return []

    kept: list[int] = []
    redundant: list[int] = []
    current = 0
    for j in range(k):
        if current == full:
            # The kept set already spans the column space.
            redundant.extend(range(j, k))
            break
        r = rank(Ad[:, [*kept, j]], tol=tol)
        if r > current:
            kept.append(j)
            current = r
        else:
            redundant.append(j)
    return redundant


def ensure_full_rank(
    matrix: Any,
    col_names: Sequence[str],
    tol: float = RANK_TOL,
) -> RankReducedDesign:
    """Drop redundant columns and record which names survive.

    Full-rank inputs are returned unchanged (no copy). Sparse inputs stay
    sparse in CSR form.
    """
    names = [str(c) for c in col_names]
    if matrix.shape[1] != len(names):
        msg = (
            f"col_names has {len(names)} entries but the matrix has "
            f"{matrix.shape[1]} columns."
        )
        raise ValueError(msg)
    redundant = find_redundant_cols(matrix, tol=tol)
    keep_mask = np.ones(len(names), dtype=bool)
    if not redundant:
        return RankReducedDesign(
            matrix=matrix, var_names=names, dropped=[], keep_mask=keep_mask,
        )

    keep_mask[redundant] = False
    keep_idx = np.flatnonzero(keep_mask)
    if is_sparse(matrix):
        reduced = to_csr(matrix)[:, keep_idx]
    else:
        reduced = np.asarray(matrix, dtype=np.float64)[:, keep_idx]
    dropped = [names[j] for j in redundant]
    LOGGER.debug("Dropping %d rank-deficient column(s): %s", len(dropped), dropped)
    return RankReducedDesign(
        matrix=reduced,
        var_names=[names[j] for j in keep_idx],
        dropped=dropped,
        keep_mask=keep_mask,
    )


def restore_columns(
    coef: Sequence[float],
    retained_names: Sequence[str],
    full_names: Sequence[str],
    fill: float = 0.0,
) -> NDArray[np.float64]:
    """Re-expand a coefficient vector to the full column ordering.

    Positions whose name is not in ``retained_names`` receive ``fill``.
    """
    b = np.asarray(coef, dtype=np.float64).reshape(-1)
    retained = [str(c) for c in retained_names]
    if b.shape[0] != len(retained):
        msg = (
            f"coef has {b.shape[0]} entries but {len(retained)} retained names "
            "were given."
        )
        raise ValueError(msg)
    position = {name: i for i, name in enumerate(retained)}
    missing = [name for name in retained if name not in set(map(str, full_names))]
    if missing:
        msg = f"Retained names not found in full_names: {missing}"
        raise ValueError(msg)
    out = np.full(len(full_names), float(fill), dtype=np.float64)
    for j, name in enumerate(full_names):
        i = position.get(str(name))
        if i is not None:
            out[j] = b[i]
    return out
