from concurrent.futures import ThreadPoolExecutor

import pytest
import numpy as np
import pandas as pd
from qspacing.core.subsample import (
    WORKERS_ENV,
    ReplicateTask,
    SubsampleDraw,
    _resolve_workers,
    cluster_sample,
    compose_weights,
    get_cluster_indices,
    row_sample,
    run_replicate,
    subsample_standard_errors,
)

ALPHA = [0.1, 0.5, 0.9]

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(99)

@pytest.fixture
def clustered_data(rng):
    # 50 clusters x 20 rows, sorted by cluster.
    n_cluster, size = 50, 20
    cluster = np.repeat(np.arange(n_cluster), size)
    effect = np.repeat(0.3 * rng.standard_normal(n_cluster), size)
    x = rng.uniform(0.0, 2.0, size=n_cluster * size)
    X = np.column_stack([np.ones(x.shape[0]), x])
    y = 1.0 + 0.5 * x + effect + (0.5 + 0.5 * x) * rng.standard_normal(x.shape[0])
    return y, X, ["const", "x"], cluster

@pytest.fixture
def cluster_indices(clustered_data):
    return get_cluster_indices(clustered_data[3])

# ---------------------------------------------------------------------
# get_cluster_indices
# ---------------------------------------------------------------------

def test_cluster_indices_half_open():
    ci = get_cluster_indices(["a", "a", "b", "b", "b", "c"])
    assert ci.tolist() == [[0, 2], [2, 5], [5, 6]]

def test_cluster_indices_not_contiguous():
    with pytest.raises(ValueError, match="not contiguous"):
        get_cluster_indices([1, 1, 2, 1])

def test_cluster_indices_shape(cluster_indices):
    assert cluster_indices.shape == (50, 2)
    assert np.all(cluster_indices[:, 1] - cluster_indices[:, 0] == 20)

# ---------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------

@pytest.mark.parametrize("M", [0.0, -0.1, 1.5])
def test_cluster_sample_rejects_bad_fraction(cluster_indices, M):
    with pytest.raises(ValueError, match="0 < M <= 1"):
        cluster_sample(cluster_indices, M=M)

def test_cluster_sample_whole_clusters(cluster_indices, rng):
    draw = cluster_sample(cluster_indices, M=0.2, rng=rng)
    assert draw.n_rows == 10 * 20
    assert draw.weights is None
    assert np.all(np.diff(draw.rows) > 0)
    clusters = draw.rows // 20
    assert np.all(np.bincount(clusters)[np.unique(clusters)] == 20)

def test_cluster_sample_weights_shared_within_cluster(cluster_indices, rng):
    draw = cluster_sample(cluster_indices, M=0.2, draw_weights=True, rng=rng)
    assert draw.weights.shape == draw.rows.shape
    assert np.all(draw.weights >= 5e-3)
    per_cluster = pd.Series(draw.weights).groupby(draw.rows // 20).nunique()
    assert (per_cluster == 1).all()

def test_cluster_sample_full_fraction(cluster_indices, rng):
    draw = cluster_sample(cluster_indices, M=1.0, rng=rng)
    assert np.array_equal(draw.rows, np.arange(1000))

def test_stratified_sample(cluster_indices, rng):
    strata = np.repeat(["small", "large"], 25)
    draw = cluster_sample(cluster_indices, strata=strata, M=0.2, rng=rng)
    chosen = np.unique(draw.rows // 20)
    assert np.sum(chosen < 25) == 5
    assert np.sum(chosen >= 25) == 5

def test_stratified_sample_length_mismatch(cluster_indices):
    with pytest.raises(ValueError, match="strata"):
        cluster_sample(cluster_indices, strata=["a"] * 3, M=0.5)

def test_row_sample(rng):
    draw = row_sample(101, 0.5, draw_weights=True, rng=rng)
    assert draw.n_rows == 50
    assert np.all(np.diff(draw.rows) > 0)
    assert draw.weights.shape == (50,)

# ---------------------------------------------------------------------
# Weight composition
# ---------------------------------------------------------------------

def test_compose_weights_combinations():
    rows = np.array([0, 2])
    base = np.array([2.0, 5.0, 3.0])
    factor = SubsampleDraw(rows=rows, weights=np.array([0.5, 4.0]))
    plain = SubsampleDraw(rows=rows)

    qr_w, ols_w = compose_weights(factor, base)
    assert np.allclose(qr_w, [1.0, 12.0])
    assert np.allclose(ols_w, qr_w)

    qr_w, ols_w = compose_weights(factor, base, square_ols_weights=True)
    assert np.allclose(ols_w, [2.0, 36.0])

    qr_w, ols_w = compose_weights(plain, base, square_ols_weights=True)
    assert np.allclose(qr_w, [2.0, 3.0])
    assert np.allclose(ols_w, [4.0, 9.0])

    qr_w, ols_w = compose_weights(factor, None)
    assert np.allclose(qr_w, [0.5, 4.0])
    assert np.allclose(ols_w, [0.5, 4.0])

    assert compose_weights(plain, None) == (None, None)

# ---------------------------------------------------------------------
# Replicates
# ---------------------------------------------------------------------

def test_failed_replicate_is_tagged(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    task = ReplicateTask(
        index=3,
        y=y,
        X=X,
        var_names=names,
        alpha=np.asarray(ALPHA),
        jstar=1,
        seed=np.random.SeedSequence(0),
        M=0.01,  # floor(50 * 0.01) == 0 clusters
        cluster_indices=cluster_indices,
    )
    out = run_replicate(task)
    assert not out.ok
    assert out.index == 3
    assert out.reason

# ---------------------------------------------------------------------
# subsample_standard_errors
# ---------------------------------------------------------------------

@pytest.mark.parametrize("draw_weights", [False, True])
def test_cluster_subsampling_scenario(clustered_data, cluster_indices, draw_weights):
    y, X, names, _ = clustered_data
    res = subsample_standard_errors(
        y, X, names, ALPHA, 1,
        cluster_indices=cluster_indices,
        M=0.2,
        draw_weights=draw_weights,
        n_boot=200,
        seed=1,
    )
    assert res.quant_cov.shape == (6, 6)
    assert res.ols_cov.shape == (2, 2)
    assert res.n_requested == 200
    assert res.n_failed == len(res.failures)
    assert res.coef_boot.shape[0] == 200 - res.n_failed
    cov = res.quant_cov.to_numpy()
    assert np.allclose(cov, cov.T)
    assert np.min(np.linalg.eigvalsh(cov)) > -1e-10
    assert np.all(np.isfinite(res.quant_se.to_numpy()))
    block = res.quantile_block("0.5")
    assert block.shape == (2, 2)
    assert list(block.index) == ["0.5_const", "0.5_x"]
    assert np.allclose(res.quant_cov.to_numpy(), res.coef_boot.cov().to_numpy() * 0.2)
    assert (res.counts["0.5"] == 200).all()

def test_row_subsampling_without_clusters(clustered_data):
    y, X, names, _ = clustered_data
    res = subsample_standard_errors(y, X, names, ALPHA, 1, M=0.3, n_boot=10, seed=3)
    assert (res.counts["0.5"] == 300).all()
    assert res.quant_cov.shape == (6, 6)

def test_seed_reproducible_and_parallel_matches_serial(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    kwargs = dict(cluster_indices=cluster_indices, M=0.2, draw_weights=True, n_boot=12, seed=7)
    serial = subsample_standard_errors(y, X, names, ALPHA, 1, **kwargs)
    again = subsample_standard_errors(y, X, names, ALPHA, 1, **kwargs)
    threaded = subsample_standard_errors(
        y, X, names, ALPHA, 1, parallel=True, n_workers=4, **kwargs,
    )
    pd.testing.assert_frame_equal(serial.coef_boot, again.coef_boot)
    pd.testing.assert_frame_equal(serial.coef_boot, threaded.coef_boot)
    pd.testing.assert_frame_equal(serial.ols_boot, threaded.ols_boot)

def test_caller_executor_left_open(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    with ThreadPoolExecutor(max_workers=2) as ex:
        res = subsample_standard_errors(
            y, X, names, ALPHA, 1,
            cluster_indices=cluster_indices, n_boot=4, seed=2, executor=ex,
        )
        assert ex.submit(lambda: 1).result() == 1
    assert res.coef_boot.shape[0] == 4 - res.n_failed

def test_all_replicates_fail_gives_nan_and_warning(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    with pytest.warns(RuntimeWarning, match="succeeded"):
        res = subsample_standard_errors(
            y, X, names, ALPHA, 1,
            cluster_indices=cluster_indices, M=0.01, n_boot=5, seed=0,
        )
    assert res.n_failed == 5
    assert len(res.failures) == 5
    assert res.quant_cov.isna().all().all()
    assert res.coef_boot.empty

def test_base_weights_and_square_ols(clustered_data, cluster_indices, rng):
    y, X, names, _ = clustered_data
    w = rng.uniform(0.5, 2.0, size=y.shape[0])
    res = subsample_standard_errors(
        y, X, names, ALPHA, 1,
        cluster_indices=cluster_indices, n_boot=5, seed=4,
        weights=w, square_ols_weights=True,
    )
    assert res.n_failed == 0
    assert res.ols_boot.shape == (5, 2)

def test_validation(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    with pytest.raises(ValueError, match="0 < M <= 1"):
        subsample_standard_errors(y, X, names, ALPHA, 1, M=0.0)
    with pytest.raises(ValueError, match="n_boot"):
        subsample_standard_errors(y, X, names, ALPHA, 1, n_boot=1)
    with pytest.raises(ValueError, match="strata require"):
        subsample_standard_errors(y, X, names, ALPHA, 1, strata=["a"] * 50)
    with pytest.raises(ValueError, match="backend"):
        subsample_standard_errors(y, X, names, ALPHA, 1, backend="mpi")

def test_configuration_errors_raise_before_replicates(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    with pytest.raises(ValueError, match="strictly increasing"):
        subsample_standard_errors(y, X, names, [0.5, 0.1, 0.9], 0, M=0.5, n_boot=3)
    with pytest.raises(ValueError, match="inside"):
        subsample_standard_errors(y, X, names, [0.1, 0.5, 1.0], 1, M=0.5, n_boot=3)
    with pytest.raises(ValueError, match="small must be positive"):
        subsample_standard_errors(y, X, names, ALPHA, 1, M=0.5, n_boot=3, small=-1.0)
    start = pd.DataFrame([[0.0, 0.0]], index=["0.5"], columns=names)
    with pytest.raises(ValueError, match="no row"):
        subsample_standard_errors(
            y, X, names, ALPHA, 1, cluster_indices=cluster_indices, n_boot=3, start=start,
        )
    start = pd.DataFrame(0.0, index=["0.1", "0.5", "0.9"], columns=["const"])
    with pytest.raises(ValueError, match="missing columns"):
        subsample_standard_errors(
            y, X, names, ALPHA, 1, cluster_indices=cluster_indices, n_boot=3, start=start,
        )

def test_draw_weights_changes_covariance(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    kwargs = dict(cluster_indices=cluster_indices, M=0.2, n_boot=20, seed=5)
    plain = subsample_standard_errors(y, X, names, ALPHA, 1, **kwargs)
    weighted = subsample_standard_errors(y, X, names, ALPHA, 1, draw_weights=True, **kwargs)
    assert plain.n_failed == 0 and weighted.n_failed == 0
    assert not np.allclose(plain.quant_cov.to_numpy(), weighted.quant_cov.to_numpy())

def test_process_backend_matches_serial(clustered_data, cluster_indices):
    y, X, names, _ = clustered_data
    kwargs = dict(cluster_indices=cluster_indices, M=0.2, draw_weights=True, n_boot=4, seed=9)
    serial = subsample_standard_errors(y, X, names, ALPHA, 1, **kwargs)
    pooled = subsample_standard_errors(
        y, X, names, ALPHA, 1, parallel=True, n_workers=2, backend="process", **kwargs,
    )
    assert pooled.n_failed == serial.n_failed
    pd.testing.assert_frame_equal(serial.coef_boot, pooled.coef_boot)

def test_workers_from_environment(monkeypatch):
    monkeypatch.setenv(WORKERS_ENV, "3")
    assert _resolve_workers(None) == 3
    assert _resolve_workers(2) == 2
    monkeypatch.delenv(WORKERS_ENV)
    assert _resolve_workers(None) == 1
