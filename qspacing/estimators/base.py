"""Base estimator and subsampling configuration.

This module defines the abstract base estimator and the frozen configuration
object used to request subsampling inference.
"""

# qspacing/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from qspacing.core.subsample import _resolve_workers

if TYPE_CHECKING:  # import-only typing to satisfy ruff TC00x without runtime cost
    from collections.abc import Sequence

    from qspacing.core.spacing import SpacingResult
    from qspacing.core.subsample import InferenceResult

__all__ = [
    "BaseEstimator",
    "SubsampleConfig",
]


@dataclass(frozen=True)
class SubsampleConfig:
    """Subsampling configuration shared by estimators.

    Notes
    -----
    - ``M`` is the fraction of clusters (or rows when no clusters are given)
      drawn per replicate; covariances are scaled by ``M``.
    - ``draw_weights`` multiplies the weights of each drawn cluster by a
      ``max(Exp(1), 5e-3)`` factor.
    - ``n_workers=None`` reads ``QSPACING_SUBSAMPLE_WORKERS`` (default 1).
    - Use ``seed`` for reproducible replicates (one generator per replicate
      is spawned from ``numpy.random.SeedSequence(seed)``).

    """

    M: float = 0.2
    n_boot: int = 100
    draw_weights: bool = False
    square_ols_weights: bool = False
    parallel: bool = False
    n_workers: int | None = None
    backend: str = "thread"
    seed: int | None = None
    small: float = 1e-6
    trunc: bool = False

    def __post_init__(self) -> None:
        if not (0.0 < float(self.M) <= 1.0):
            msg = "Subsampling fraction M must satisfy 0 < M <= 1."
            raise ValueError(msg)
        if int(self.n_boot) < 2:
            msg = "n_boot must be at least 2."
            raise ValueError(msg)
        if self.backend not in {"thread", "process"}:
            msg = "backend must be 'thread' or 'process'."
            raise ValueError(msg)
        if self.n_workers is not None and int(self.n_workers) < 1:
            msg = "n_workers must be a positive integer."
            raise ValueError(msg)
        if not (float(self.small) > 0.0):
            msg = "small must be positive."
            raise ValueError(msg)

    @property
    def workers(self) -> int:
        """Effective pool size (explicit value or environment default)."""
        return _resolve_workers(self.n_workers)


def _to_numpy_1d(values: Sequence | None) -> np.ndarray | None:
    """Convert 1-D like input to a numpy array without copying when possible."""
    if values is None:
        return None
    if hasattr(values, "to_numpy"):
        try:
            arr = values.to_numpy(copy=False)
        except (TypeError, AttributeError, ValueError):
            arr = np.asarray(values)
    else:
        arr = np.asarray(values)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    elif arr.ndim > 1:
        arr = arr.reshape(-1)
    return arr


def _ensure_no_missing(arr: np.ndarray | None, label: str) -> None:
    """Raise when identifier arrays contain missing entries."""
    if arr is None:
        return
    if bool(np.any(pd.isna(arr))):
        msg = f"{label} contains missing values; clean identifiers before estimation."
        raise ValueError(msg)


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract base class for `qspacing` estimators.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) Rank repair goes through `core.rank`.
    3) Inference goes through `core.subsample`.
    """

    def __init__(self) -> None:
        self._results: SpacingResult | None = None
        self._inference: InferenceResult | None = None

    @abstractmethod
    def fit(
        self, *args: Any, **kwargs: Any,
    ) -> SpacingResult:  # pragma: no cover - abstract
        """Fit the estimator and return SpacingResult (abstract)."""
        ...

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> SpacingResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.DataFrame:
        return self.results.coef

    @property
    def inference(self) -> InferenceResult:
        if self._inference is None:
            msg = "No inference available yet. Call .subsample_se() first."
            raise RuntimeError(msg)
        return self._inference

    @property
    def se(self) -> pd.Series | None:
        return None if self._inference is None else self._inference.quant_se
