import warnings

import pytest
import numpy as np
import scipy.sparse as sp
from qspacing.core.solver import (
    IERR_MAX_ITER,
    SolverControl,
    check_loss,
    rq_fit_sfn,
)

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(2024)

@pytest.fixture
def hetero_data(rng):
    n = 300
    x = rng.uniform(0.0, 2.0, size=n)
    X = np.column_stack([np.ones(n), x])
    y = 1.0 + 0.5 * x + (0.5 + 0.5 * x) * rng.standard_normal(n)
    return X, y

# ---------------------------------------------------------------------
# Check loss
# ---------------------------------------------------------------------

def test_check_loss_values():
    u = np.array([1.0, -2.0, 0.0])
    assert check_loss(u, 0.25) == pytest.approx(0.25 * 1.0 + 0.75 * 2.0)
    assert check_loss(u, 0.25, weights=[2.0, 1.0, 5.0]) == pytest.approx(0.5 + 1.5)

def test_check_loss_weight_length():
    with pytest.raises(ValueError, match="weights length"):
        check_loss([1.0, 2.0], 0.5, weights=[1.0])

# ---------------------------------------------------------------------
# Kernel accuracy
# ---------------------------------------------------------------------

@pytest.mark.parametrize("tau", [0.1, 0.5, 0.8])
def test_sfn_matches_highs_objective(hetero_data, tau):
    X, y = hetero_data
    fit = rq_fit_sfn(X, y, tau)
    ref = rq_fit_sfn(X, y, tau, control=SolverControl(method="highs"))
    assert fit.converged and ref.converged
    loss = check_loss(fit.residuals, tau)
    loss_ref = check_loss(ref.residuals, tau)
    assert loss == pytest.approx(loss_ref, rel=1e-5)
    assert np.allclose(fit.coefficients, ref.coefficients, atol=1e-2)

def test_median_recovers_location(rng):
    n = 2000
    x = rng.standard_normal(n)
    X = np.column_stack([np.ones(n), x])
    y = 2.0 - 1.0 * x + rng.standard_normal(n)
    fit = rq_fit_sfn(X, y, 0.5)
    assert np.allclose(fit.coefficients, [2.0, -1.0], atol=0.1)

def test_residuals_on_original_scale(hetero_data, rng):
    X, y = hetero_data
    w = rng.uniform(0.5, 3.0, size=y.shape[0])
    fit = rq_fit_sfn(X, y, 0.3, weights=w)
    assert np.allclose(fit.residuals, y - X @ fit.coefficients)
    assert fit.weights is not None

def test_sparse_input_matches_dense(hetero_data):
    X, y = hetero_data
    dense = rq_fit_sfn(X, y, 0.5)
    sparse = rq_fit_sfn(sp.csr_matrix(X), y, 0.5)
    assert np.allclose(dense.coefficients, sparse.coefficients)

# ---------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------

def test_unit_weights_equal_no_weights(hetero_data):
    X, y = hetero_data
    a = rq_fit_sfn(X, y, 0.5)
    b = rq_fit_sfn(X, y, 0.5, weights=np.ones(y.shape[0]))
    assert np.allclose(a.coefficients, b.coefficients)
    assert a.iterations == b.iterations

def test_integer_weights_equal_replicated_rows(hetero_data):
    X, y = hetero_data
    w = np.where(np.arange(y.shape[0]) % 3 == 0, 2.0, 1.0)
    weighted = rq_fit_sfn(X, y, 0.7, weights=w)
    rep = np.repeat(np.arange(y.shape[0]), w.astype(int))
    replicated = rq_fit_sfn(X[rep], y[rep], 0.7)
    loss_w = check_loss(y - X @ weighted.coefficients, 0.7, w)
    loss_r = check_loss(y - X @ replicated.coefficients, 0.7, w)
    assert loss_w == pytest.approx(loss_r, rel=1e-5)

# ---------------------------------------------------------------------
# Warm start and diagnostics
# ---------------------------------------------------------------------

def test_warm_start_from_solution(hetero_data):
    X, y = hetero_data
    cold = rq_fit_sfn(X, y, 0.25)
    warm = rq_fit_sfn(X, y, 0.25, start=cold.coefficients)
    assert warm.converged
    assert check_loss(warm.residuals, 0.25) == pytest.approx(
        check_loss(cold.residuals, 0.25), rel=1e-5,
    )

def test_max_iter_sets_ierr_and_warns(hetero_data):
    X, y = hetero_data
    with pytest.warns(RuntimeWarning, match="ierr=1"):
        fit = rq_fit_sfn(X, y, 0.5, control=SolverControl(max_iter=1))
    assert fit.ierr == IERR_MAX_ITER
    assert fit.iterations == 1
    assert not fit.converged
    assert np.all(np.isfinite(fit.coefficients))

def test_warn_false_is_silent(hetero_data):
    X, y = hetero_data
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        fit = rq_fit_sfn(X, y, 0.5, control=SolverControl(max_iter=1, warn=False))
    assert fit.ierr == IERR_MAX_ITER

# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def test_invalid_tau(hetero_data):
    X, y = hetero_data
    with pytest.raises(ValueError, match="tau"):
        rq_fit_sfn(X, y, 1.0)

def test_dimension_mismatch(hetero_data):
    X, y = hetero_data
    with pytest.raises(ValueError, match="not compatible"):
        rq_fit_sfn(X, y[:-1], 0.5)

def test_weights_must_be_positive(hetero_data):
    X, y = hetero_data
    w = np.ones(y.shape[0])
    w[0] = 0.0
    with pytest.raises(ValueError, match="strictly positive"):
        rq_fit_sfn(X, y, 0.5, weights=w)

def test_start_length(hetero_data):
    X, y = hetero_data
    with pytest.raises(ValueError, match="start"):
        rq_fit_sfn(X, y, 0.5, start=[0.0])

def test_control_validation():
    with pytest.raises(ValueError, match="method"):
        SolverControl(method="simplex")
    with pytest.raises(ValueError, match="step"):
        SolverControl(step=1.5)
