"""Quantile-spacing estimator.

Wraps the spacing engine and subsampling inference behind the library's
estimator interface: construct with data, call :meth:`QuantileSpacing.fit`,
then optionally :meth:`QuantileSpacing.subsample_se` for covariances.
"""

# qspacing/estimators/spacing.py
from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp

from qspacing.core import linalg as la
from qspacing.core.solver import SolverControl
from qspacing.core.spacing import (
    SpacingResult,
    quant_reg_spacing,
    spacings_to_quantiles,
)
from qspacing.core.subsample import (
    InferenceResult,
    get_cluster_indices,
    subsample_standard_errors,
)
from qspacing.estimators.base import (
    BaseEstimator,
    SubsampleConfig,
    _ensure_no_missing,
    _to_numpy_1d,
)
from qspacing.utils.auto_constant import _CONST_TOL, _find_ones_cols, add_constant

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

ArrayLike = Union[pd.Series, np.ndarray]
MatrixLike = Union[pd.DataFrame, np.ndarray, Any]

LOGGER = logging.getLogger(__name__)

__all__ = ["QuantileSpacing"]


class QuantileSpacing(BaseEstimator):
    """Quantile regression by the quantile-spacing method.

    The quantile ``quantiles[jstar]`` is estimated directly; every other
    quantile is reached through a chain of log-spacing regressions, which
    guarantees non-crossing fitted quantiles.

    Inference
    ---------
    Subsampling of clusters (or rows) with optional exponential reweighting;
    see :class:`~qspacing.estimators.base.SubsampleConfig`.
    """

    def __init__(  # noqa: PLR0913
        self,
        y: ArrayLike,
        X: MatrixLike,
        *,
        quantiles: Sequence[float],
        jstar: int | None = None,
        var_names: Sequence[str] | None = None,
        add_const: bool = True,
        weights: Sequence[float] | None = None,
        small: float = 1e-3,
        trunc: bool = False,
        control: SolverControl | None = None,
    ) -> None:
        super().__init__()
        q = np.asarray(quantiles, dtype=np.float64).reshape(-1)
        if q.size == 0:
            msg = "quantiles must contain at least one value."
            raise ValueError(msg)
        if jstar is None:
            jstar = int(np.argmin(np.abs(q - 0.5)))

        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = [str(c) for c in X.columns]
        if la.is_sparse(X):
            X_arr = la.to_csr(X)
        else:
            X_arr = np.asarray(X, dtype=np.float64)
            if X_arr.ndim == 1:
                X_arr = X_arr.reshape(-1, 1)
        if X_arr.shape[0] != y_arr.shape[0]:
            msg = f"y has {y_arr.shape[0]} rows but X has {X_arr.shape[0]}."
            raise ValueError(msg)
        la._assert_all_finite(y_arr)
        la._assert_all_finite_matrix(X_arr)

        if add_const:
            X_aug, names, const_name = add_constant(X_arr, var_names)
            self._const_name: str | None = const_name
            # Raw column adopted as the intercept, if any
            self._adopted_col: int | None = None
            if X_aug.shape[1] == X_arr.shape[1]:
                self._adopted_col = _find_ones_cols(X_arr, _CONST_TOL)[0]
        else:
            X_aug = X_arr
            self._const_name = None
            self._adopted_col = None
            names = (
                [str(v) for v in var_names]
                if var_names is not None
                else [f"x{i}" for i in range(X_aug.shape[1])]
            )
            if len(names) != X_aug.shape[1]:
                msg = f"var_names length ({len(names)}) does not match X columns ({X_aug.shape[1]})."
                raise ValueError(msg)

        w_arr = None
        if weights is not None:
            w_arr = la._validate_weights(weights, y_arr.shape[0], allow_zero=False)

        self._var_names: list[str] = names
        self._add_const = bool(add_const)
        self.y_orig: NDArray[np.float64] = y_arr
        self.X_orig = la.to_csr(X_aug)
        self.weights: NDArray[np.float64] | None = w_arr
        self.quantiles: NDArray[np.float64] = q
        self.jstar: int = int(jstar)
        self.small: float = float(small)
        self.trunc: bool = bool(trunc)
        self.control: SolverControl = control if control is not None else SolverControl()
        self.n_features: int = X_aug.shape[1]

    @property
    def var_names(self) -> list[str]:
        return list(self._var_names)

    @property
    def n_obs(self) -> int:
        return int(self.y_orig.shape[0])

    def fit(self, start: pd.DataFrame | None = None) -> SpacingResult:
        """Estimate the anchor quantile and all spacings.

        Parameters
        ----------
        start : pandas.DataFrame, optional
            Warm-start table indexed by quantile label with variable-name
            columns (for instance the ``coef`` of an earlier fit).

        """
        self._results = quant_reg_spacing(
            self.y_orig,
            self.X_orig,
            self._var_names,
            self.quantiles,
            self.jstar,
            small=self.small,
            trunc=self.trunc,
            start=start,
            weights=self.weights,
            control=self.control,
        )
        return self._results

    def _cluster_design(
        self, cluster_ids: Sequence | None, strata: Sequence | None,
    ) -> tuple[NDArray[np.int64] | None, NDArray[Any] | None]:
        """Cluster ranges and per-cluster strata from row-level identifiers."""
        cl = _to_numpy_1d(cluster_ids)
        st = _to_numpy_1d(strata)
        if cl is None:
            if st is not None:
                msg = "strata require cluster_ids."
                raise ValueError(msg)
            return None, None
        if cl.shape[0] != self.n_obs:
            msg = f"cluster_ids length {cl.shape[0]} != n_obs {self.n_obs}."
            raise ValueError(msg)
        _ensure_no_missing(cl, "cluster_ids")
        ci = get_cluster_indices(cl)
        if st is None:
            return ci, None
        _ensure_no_missing(st, "strata")
        if st.shape[0] == self.n_obs:
            per_cluster = st[ci[:, 0]]
            expanded = np.repeat(per_cluster, ci[:, 1] - ci[:, 0])
            if not np.array_equal(pd.Series(expanded).to_numpy(), pd.Series(st).to_numpy()):
                msg = "strata must be constant within each cluster."
                raise ValueError(msg)
            return ci, per_cluster
        if st.shape[0] == ci.shape[0]:
            return ci, st
        msg = (
            f"strata length {st.shape[0]} matches neither n_obs ({self.n_obs}) "
            f"nor the number of clusters ({ci.shape[0]})."
        )
        raise ValueError(msg)

    def subsample_se(
        self,
        config: SubsampleConfig | None = None,
        *,
        cluster_ids: Sequence | None = None,
        strata: Sequence | None = None,
        executor: Executor | None = None,
    ) -> InferenceResult:
        """Subsampling covariance of the spacing coefficients.

        Parameters
        ----------
        config : SubsampleConfig, optional
            Subsampling settings; defaults to ``SubsampleConfig()``.
        cluster_ids : sequence, optional
            Row-level cluster labels. Rows must be sorted so that every
            cluster is one contiguous block.
        strata : sequence, optional
            Stratum label per row (constant within clusters) or per cluster.
        executor : concurrent.futures.Executor, optional
            Caller-owned executor used to run replicates.

        """
        cfg = config if config is not None else SubsampleConfig()
        ci, st = self._cluster_design(cluster_ids, strata)
        start = self._results.coef if self._results is not None else None
        self._inference = subsample_standard_errors(
            self.y_orig,
            self.X_orig,
            self._var_names,
            self.quantiles,
            self.jstar,
            cluster_indices=ci,
            strata=st,
            M=cfg.M,
            draw_weights=cfg.draw_weights,
            n_boot=cfg.n_boot,
            parallel=cfg.parallel,
            n_workers=cfg.n_workers,
            executor=executor,
            backend=cfg.backend,
            small=cfg.small,
            trunc=cfg.trunc,
            start=start,
            weights=self.weights,
            square_ols_weights=cfg.square_ols_weights,
            seed=cfg.seed,
            control=self.control,
        )
        LOGGER.debug(
            "Subsampling finished: %d of %d replicates succeeded",
            self._inference.n_success, self._inference.n_requested,
        )
        return self._inference

    def _with_intercept(self, Xn: Any) -> Any:
        """Place the intercept where the fitted design has it."""
        if self._adopted_col is not None:
            j = self._adopted_col
            order = [j, *[i for i in range(Xn.shape[1]) if i != j]]
            return Xn[:, order]
        pos = self._var_names.index(self._const_name)
        if la.is_sparse(Xn):
            ones = sp.csr_matrix(np.ones((Xn.shape[0], 1)))
            blocks = [b for b in (Xn[:, :pos], ones, Xn[:, pos:]) if b.shape[1]]
            return sp.hstack(blocks, format="csr")
        return np.insert(Xn, pos, 1.0, axis=1)

    def predict_quantiles(self, X: MatrixLike | None = None) -> NDArray[np.float64]:
        """Fitted conditional quantiles, one column per grid point.

        ``X`` holds the raw regressors in the column order used for fitting;
        the intercept is inserted again when the model was built with
        ``add_const=True``. Defaults to the estimation sample.
        """
        res = self.results
        if X is None:
            design = self.X_orig
        else:
            if la.is_sparse(X):
                Xn = la.to_csr(X)
            else:
                Xn = np.asarray(X, dtype=np.float64)
                if Xn.ndim == 1:
                    Xn = Xn.reshape(-1, 1)
            n_raw = self.n_features
            if self._add_const and self._adopted_col is None:
                n_raw -= 1
            if Xn.shape[1] != n_raw:
                msg = f"X has {Xn.shape[1]} columns; expected {n_raw} regressors."
                raise ValueError(msg)
            design = self._with_intercept(Xn) if self._add_const else Xn
        return spacings_to_quantiles(res.coef, design, res.jstar)
