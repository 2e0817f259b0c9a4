"""Subsampling inference for the quantile-spacing estimator.

Each replicate draws a fraction ``M`` of the clusters (optionally within
strata) or of the rows, optionally reweights them with exponential factors,
and refits both the spacing model and an OLS companion. Covariances are the
sample covariances of the replicate estimates scaled by ``M``.

Replicates never raise: failures are returned as tagged outcomes and
excluded from aggregation. Every replicate owns a generator spawned from a
single ``SeedSequence``, so results are reproducible whatever the execution
order or the number of workers.
"""

# qspacing/core/subsample.py
from __future__ import annotations

import dataclasses
import logging
import os
import warnings
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from . import linalg as la
from .solver import SolverControl
from .spacing import (
    _check_start_table,
    _validate_grid,
    quant_reg_spacing,
    quantile_label,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "WORKERS_ENV",
    "InferenceResult",
    "ReplicateOutcome",
    "ReplicateTask",
    "SubsampleDraw",
    "cluster_sample",
    "compose_weights",
    "get_cluster_indices",
    "row_sample",
    "run_replicate",
    "subsample_standard_errors",
]

WORKERS_ENV = "QSPACING_SUBSAMPLE_WORKERS"

# Floor applied to exponential reweighting factors
MIN_EXP_WEIGHT = 5e-3


def _check_fraction(M: float) -> float:
    M = float(M)
    if not (0.0 < M <= 1.0):
        msg = "Subsampling fraction M must satisfy 0 < M <= 1."
        raise ValueError(msg)
    return M


def _exp_factors(rng: np.random.Generator, size: int) -> NDArray[np.float64]:
    return np.maximum(rng.exponential(1.0, size=size), MIN_EXP_WEIGHT)


@dataclass(frozen=True)
class SubsampleDraw:
    """Sorted row indices of one subsample and their optional weight factors."""

    rows: NDArray[np.int64]
    weights: NDArray[np.float64] | None = None

    @property
    def n_rows(self) -> int:
        return int(self.rows.shape[0])


def get_cluster_indices(cluster_col: Sequence[Any]) -> NDArray[np.int64]:
    """Half-open ``[start, stop)`` row ranges of each cluster.

    Clusters are listed in order of first appearance. Rows must be sorted so
    that each label occupies one contiguous block.

    Raises
    ------
    ValueError
        If a label appears in more than one block.

    """
    labels = pd.Series(np.asarray(cluster_col).reshape(-1))
    if labels.empty:
        return np.empty((0, 2), dtype=np.int64)
    if labels.isna().any():
        msg = "cluster labels must not contain missing values."
        raise ValueError(msg)
    codes, uniques = pd.factorize(labels)
    change = np.flatnonzero(np.diff(codes) != 0) + 1
    starts = np.concatenate([[0], change])
    stops = np.concatenate([change, [codes.shape[0]]])
    if starts.shape[0] != len(uniques):
        run_codes = codes[starts]
        repeated = pd.Series(run_codes).duplicated()
        bad = [uniques[c] for c in run_codes[repeated.to_numpy()]]
        msg = (
            "cluster labels are not contiguous; sort the data by cluster first "
            f"(repeated blocks for {bad[:5]})."
        )
        raise ValueError(msg)
    return np.column_stack([starts, stops]).astype(np.int64)


def _validate_cluster_indices(
    cluster_indices: Any, n_rows: int | None = None,
) -> NDArray[np.int64]:
    ci = np.asarray(cluster_indices)
    if ci.ndim != 2 or ci.shape[1] != 2:
        msg = "cluster_indices must have shape (n_cluster, 2)."
        raise ValueError(msg)
    ci = ci.astype(np.int64)
    if np.any(ci[:, 0] < 0) or np.any(ci[:, 1] <= ci[:, 0]):
        msg = "cluster_indices must hold non-empty [start, stop) ranges."
        raise ValueError(msg)
    if n_rows is not None and ci.shape[0] and int(np.max(ci[:, 1])) > n_rows:
        msg = "cluster_indices refer to rows beyond the data."
        raise ValueError(msg)
    return ci


def cluster_sample(
    cluster_indices: Any,
    strata: Sequence[Any] | None = None,
    M: float = 1.0,
    draw_weights: bool = False,
    rng: np.random.Generator | None = None,
) -> SubsampleDraw:
    """Draw ``floor(n * M)`` clusters, overall or within each stratum.

    All rows of a chosen cluster enter the subsample. With ``draw_weights``,
    each chosen cluster receives one ``max(Exp(1), 5e-3)`` factor shared by
    its rows.
    """
    M = _check_fraction(M)
    ci = _validate_cluster_indices(cluster_indices)
    gen = rng if rng is not None else np.random.default_rng()
    n_cluster = ci.shape[0]

    if strata is not None:
        st = np.asarray(strata).reshape(-1)
        if st.shape[0] != n_cluster:
            msg = (
                f"strata has {st.shape[0]} entries but there are {n_cluster} clusters."
            )
            raise ValueError(msg)
        codes, _ = pd.factorize(pd.Series(st))
        chosen_parts = []
        for code in range(int(codes.max()) + 1 if codes.size else 0):
            members = np.flatnonzero(codes == code)
            n_take = int(np.floor(members.shape[0] * M))
            if n_take:
                chosen_parts.append(gen.choice(members, size=n_take, replace=False))
        chosen = np.concatenate(chosen_parts) if chosen_parts else np.empty(0, dtype=np.int64)
    else:
        n_take = int(np.floor(n_cluster * M))
        chosen = gen.choice(n_cluster, size=n_take, replace=False)

    picked = ci[np.asarray(chosen, dtype=np.int64)]
    picked = picked[np.argsort(picked[:, 0], kind="stable")]
    sizes = picked[:, 1] - picked[:, 0]
    if picked.shape[0]:
        rows = np.concatenate([np.arange(a, b) for a, b in picked])
    else:
        rows = np.empty(0, dtype=np.int64)

    weights = None
    if draw_weights:
        weights = np.repeat(_exp_factors(gen, picked.shape[0]), sizes)
    return SubsampleDraw(rows=rows.astype(np.int64), weights=weights)


def row_sample(
    n_rows: int,
    M: float,
    draw_weights: bool = False,
    rng: np.random.Generator | None = None,
) -> SubsampleDraw:
    """Draw ``floor(M * n_rows)`` rows without replacement (sorted)."""
    M = _check_fraction(M)
    gen = rng if rng is not None else np.random.default_rng()
    n_take = int(np.floor(M * int(n_rows)))
    rows = np.sort(gen.choice(int(n_rows), size=n_take, replace=False)).astype(np.int64)
    weights = _exp_factors(gen, n_take) if draw_weights else None
    return SubsampleDraw(rows=rows, weights=weights)


def compose_weights(
    draw: SubsampleDraw,
    base_weights: Sequence[float] | None = None,
    square_ols_weights: bool = False,
) -> tuple[NDArray[np.float64] | None, NDArray[np.float64] | None]:
    """Weights for the quantile fit and for the OLS companion of one draw.

    The quantile weight is the product of the drawn factor and the base
    weight (either may be absent). The OLS weight multiplies in the base
    weight once more when ``square_ols_weights`` is set.
    """
    base = None
    if base_weights is not None:
        base = np.asarray(base_weights, dtype=np.float64).reshape(-1)[draw.rows]
    if draw.weights is not None and base is not None:
        qr_w = draw.weights * base
    elif draw.weights is not None:
        qr_w = np.asarray(draw.weights, dtype=np.float64)
    else:
        qr_w = base
    if square_ols_weights and base is not None:
        ols_w = qr_w * base
    else:
        ols_w = qr_w
    return qr_w, ols_w


@dataclass(frozen=True)
class ReplicateTask:
    """Everything one replicate needs; shared arrays are read-only."""

    index: int
    y: NDArray[np.float64]
    X: Any
    var_names: list[str]
    alpha: NDArray[np.float64]
    jstar: int
    seed: np.random.SeedSequence
    M: float
    cluster_indices: NDArray[np.int64] | None = None
    strata: NDArray[Any] | None = None
    draw_weights: bool = False
    weights: NDArray[np.float64] | None = None
    square_ols_weights: bool = False
    small: float = 1e-6
    trunc: bool = False
    start: pd.DataFrame | None = None
    control: SolverControl | None = None


@dataclass(frozen=True)
class ReplicateOutcome:
    """Tagged result of a replicate; ``ok=False`` carries the failure reason."""

    index: int
    ok: bool
    coef: NDArray[np.float64] | None = None
    ols: NDArray[np.float64] | None = None
    pseudo_r2: NDArray[np.float64] | None = None
    ierr: NDArray[np.int64] | None = None
    iterations: NDArray[np.int64] | None = None
    counts: NDArray[np.int64] | None = None
    reason: str | None = None


def run_replicate(task: ReplicateTask) -> ReplicateOutcome:
    """Draw one subsample and refit the spacing model and OLS companion."""
    try:
        rng = np.random.default_rng(task.seed)
        if task.cluster_indices is None:
            draw = row_sample(task.X.shape[0], task.M, task.draw_weights, rng)
        else:
            draw = cluster_sample(
                task.cluster_indices, task.strata, task.M, task.draw_weights, rng,
            )
        qr_w, ols_w = compose_weights(draw, task.weights, task.square_ols_weights)
        X_sub = task.X[draw.rows, :]
        y_sub = task.y[draw.rows]
        fit = quant_reg_spacing(
            y_sub,
            X_sub,
            task.var_names,
            task.alpha,
            task.jstar,
            small=task.small,
            trunc=task.trunc,
            start=task.start,
            weights=qr_w,
            control=task.control,
        )
        ols = la.wls_coef(X_sub, y_sub, ols_w)
    except Exception as exc:
        return ReplicateOutcome(
            index=task.index, ok=False, reason=f"{type(exc).__name__}: {exc}",
        )
    return ReplicateOutcome(
        index=task.index,
        ok=True,
        coef=fit.coef.to_numpy().reshape(-1),
        ols=ols,
        pseudo_r2=fit.pseudo_r2.to_numpy(),
        ierr=fit.ierr.to_numpy(),
        iterations=fit.iterations.to_numpy(),
        counts=fit.counts.to_numpy(),
    )


@dataclass
class InferenceResult:
    """Covariance estimates and replicate diagnostics from subsampling.

    Covariances are computed over successful replicates only and scaled by
    ``M``. Replicate tables are indexed by replicate number.
    """

    quant_cov: pd.DataFrame
    ols_cov: pd.DataFrame
    coef_boot: pd.DataFrame
    ols_boot: pd.DataFrame
    pseudo_r2: pd.DataFrame
    ierr: pd.DataFrame
    iterations: pd.DataFrame
    counts: pd.DataFrame
    n_requested: int
    n_failed: int
    failures: list[str] = field(default_factory=list)
    M: float = 0.2
    var_names: list[str] = field(default_factory=list)

    @property
    def n_success(self) -> int:
        return self.n_requested - self.n_failed

    @property
    def quant_se(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.quant_cov.to_numpy())), index=self.quant_cov.index, name="se")

    @property
    def ols_se(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.ols_cov.to_numpy())), index=self.ols_cov.index, name="se")

    def quantile_block(self, label: str | float) -> pd.DataFrame:
        """K x K covariance block of one quantile."""
        lab = label if isinstance(label, str) else quantile_label(label)
        names = [f"{lab}_{v}" for v in self.var_names]
        missing = [nm for nm in names if nm not in self.quant_cov.index]
        if missing:
            msg = f"No coefficients for quantile {lab!r} in the covariance matrix."
            raise KeyError(msg)
        return self.quant_cov.loc[names, names]


def _resolve_workers(n_workers: int | None) -> int:
    if n_workers is None:
        n_workers = int(os.getenv(WORKERS_ENV, "1"))
    return max(1, int(n_workers))


def _scaled_cov(table: pd.DataFrame, M: float) -> pd.DataFrame:
    if table.shape[0] < 2:
        return pd.DataFrame(np.nan, index=table.columns, columns=table.columns)
    return table.cov(ddof=1) * M


def subsample_standard_errors(
    y: Sequence[float],
    X: Any,
    var_names: Sequence[str],
    alpha: Sequence[float],
    jstar: int,
    *,
    cluster_indices: Any = None,
    strata: Sequence[Any] | None = None,
    M: float = 0.2,
    draw_weights: bool = False,
    n_boot: int = 100,
    parallel: bool = False,
    n_workers: int | None = None,
    executor: Executor | None = None,
    backend: str = "thread",
    small: float = 1e-6,
    trunc: bool = False,
    start: pd.DataFrame | None = None,
    weights: Sequence[float] | None = None,
    square_ols_weights: bool = False,
    seed: int | None = None,
    control: SolverControl | None = None,
) -> InferenceResult:
    """Subsampling covariance of the spacing coefficients and OLS companion.

    Parameters
    ----------
    y, X, var_names, alpha, jstar
        As for :func:`~qspacing.core.spacing.quant_reg_spacing`.
    cluster_indices : array-like, shape (n_cluster, 2), optional
        ``[start, stop)`` row ranges of the clusters (rows sorted by
        cluster). Without it, individual rows are subsampled.
    strata : sequence, optional
        Stratum label of each cluster; ``floor(n * M)`` clusters are drawn
        within every stratum.
    M : float, default 0.2
        Subsampled fraction, ``0 < M <= 1``.
    draw_weights : bool, default False
        Multiply weights by ``max(Exp(1), 5e-3)`` factors.
    n_boot : int, default 100
        Number of replicates, at least 2.
    parallel : bool, default False
        Run replicates concurrently. Ignored when ``executor`` is given.
    n_workers : int, optional
        Pool size when a pool is created here; defaults to the
        ``QSPACING_SUBSAMPLE_WORKERS`` environment variable, else 1.
    executor : concurrent.futures.Executor, optional
        Caller-owned executor; it is not shut down.
    backend : {"thread", "process"}
        Pool type created when ``parallel`` is set and no executor is given.
    weights : array-like, optional
        Base observation weights.
    square_ols_weights : bool, default False
        Multiply the OLS weights by the base weights once more.
    seed : int, optional
        Seed of the ``SeedSequence`` that spawns one generator per replicate.
    control : SolverControl, optional
        Kernel settings; warnings are silenced inside replicates.

    Returns
    -------
    InferenceResult

    """
    M = _check_fraction(M)
    n_boot = int(n_boot)
    if n_boot < 2:
        msg = "n_boot must be at least 2."
        raise ValueError(msg)
    if backend not in {"thread", "process"}:
        msg = "backend must be 'thread' or 'process'."
        raise ValueError(msg)
    A = la.to_csr(X)
    yv = np.asarray(y, dtype=np.float64).reshape(-1)
    names = [str(v) for v in var_names]
    a = np.asarray(alpha, dtype=np.float64).reshape(-1)
    n = A.shape[0]
    if yv.shape[0] != n:
        msg = f"y has {yv.shape[0]} rows but X has {n}."
        raise ValueError(msg)
    if len(names) != A.shape[1]:
        msg = f"var_names has {len(names)} entries but X has {A.shape[1]} columns."
        raise ValueError(msg)
    if len(set(names)) != len(names):
        msg = "var_names must be unique."
        raise ValueError(msg)
    a = _validate_grid(a, jstar)
    if not (float(small) > 0.0):
        msg = "small must be positive."
        raise ValueError(msg)
    _check_start_table(start, [quantile_label(q) for q in a], names)
    wv = None
    if weights is not None:
        wv = la._validate_weights(weights, n, allow_zero=False)
    ci = None
    st = None
    if cluster_indices is not None:
        ci = _validate_cluster_indices(cluster_indices, n)
        if strata is not None:
            st = np.asarray(strata).reshape(-1)
            if st.shape[0] != ci.shape[0]:
                msg = f"strata has {st.shape[0]} entries but there are {ci.shape[0]} clusters."
                raise ValueError(msg)
    elif strata is not None:
        msg = "strata require cluster_indices."
        raise ValueError(msg)

    base_ctrl = control if control is not None else SolverControl()
    ctrl = dataclasses.replace(base_ctrl, warn=False)
    children = np.random.SeedSequence(seed).spawn(n_boot)
    tasks = [
        ReplicateTask(
            index=b,
            y=yv,
            X=A,
            var_names=names,
            alpha=a,
            jstar=int(jstar),
            seed=children[b],
            M=M,
            cluster_indices=ci,
            strata=st,
            draw_weights=bool(draw_weights),
            weights=wv,
            square_ols_weights=bool(square_ols_weights),
            small=float(small),
            trunc=bool(trunc),
            start=start,
            control=ctrl,
        )
        for b in range(n_boot)
    ]

    if executor is not None:
        futures = [executor.submit(run_replicate, t) for t in tasks]
        outcomes = [fut.result() for fut in futures]
    elif parallel:
        workers = _resolve_workers(n_workers)
        LOGGER.debug("Subsampling %d replicates on %d %s worker(s)", n_boot, workers, backend)
        pool_cls = ProcessPoolExecutor if backend == "process" else ThreadPoolExecutor
        with pool_cls(max_workers=workers) as ex:
            futures = [ex.submit(run_replicate, t) for t in tasks]
            outcomes = [fut.result() for fut in futures]
    else:
        outcomes = [run_replicate(t) for t in tasks]

    ok = [o for o in outcomes if o.ok]
    failed = [o for o in outcomes if not o.ok]
    for o in failed:
        LOGGER.debug("Replicate %d dropped: %s", o.index, o.reason)

    labels = [quantile_label(q) for q in a]
    flat_names = [f"{lab}_{v}" for lab in labels for v in names]
    idx = pd.Index([o.index for o in ok], name="replicate")

    def _table(attr: str, columns: list[str], dtype: Any = float) -> pd.DataFrame:
        if not ok:
            return pd.DataFrame(columns=columns, index=idx, dtype=dtype)
        return pd.DataFrame(
            np.vstack([getattr(o, attr) for o in ok]), index=idx, columns=columns,
        ).astype(dtype)

    coef_boot = _table("coef", flat_names)
    ols_boot = _table("ols", names)
    if len(ok) < 2:
        warnings.warn(
            f"Only {len(ok)} of {n_boot} subsample replicates succeeded; "
            "covariance matrices are undefined (NaN).",
            RuntimeWarning,
            stacklevel=2,
        )

    return InferenceResult(
        quant_cov=_scaled_cov(coef_boot, M),
        ols_cov=_scaled_cov(ols_boot, M),
        coef_boot=coef_boot,
        ols_boot=ols_boot,
        pseudo_r2=_table("pseudo_r2", labels),
        ierr=_table("ierr", labels, np.int64),
        iterations=_table("iterations", labels, np.int64),
        counts=_table("counts", labels, np.int64),
        n_requested=n_boot,
        n_failed=len(failed),
        failures=[f"replicate {o.index}: {o.reason}" for o in failed],
        M=M,
        var_names=names,
    )
