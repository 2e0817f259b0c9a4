import pytest
import numpy as np
import scipy.sparse as sp
from qspacing.core.rank import (
    ensure_full_rank,
    find_redundant_cols,
    restore_columns,
)

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(7)

@pytest.fixture
def dependent_design(rng):
    # Columns: const, x1, x2, x1 + x2, zero, x3
    n = 60
    x = rng.standard_normal((n, 3))
    X = np.column_stack(
        [np.ones(n), x[:, 0], x[:, 1], x[:, 0] + x[:, 1], np.zeros(n), x[:, 2]],
    )
    names = ["const", "x1", "x2", "x12", "zero", "x3"]
    return X, names

# ---------------------------------------------------------------------
# find_redundant_cols
# ---------------------------------------------------------------------

def test_full_rank_has_no_redundant_cols(rng):
    X = rng.standard_normal((30, 4))
    assert find_redundant_cols(X) == []

def test_later_dependent_column_is_dropped(dependent_design):
    X, _ = dependent_design
    assert find_redundant_cols(X) == [3, 4]

def test_duplicate_column_keeps_first(rng):
    x = rng.standard_normal(20)
    X = np.column_stack([x, rng.standard_normal(20), x])
    assert find_redundant_cols(X) == [2]

def test_sparse_input_same_answer(dependent_design):
    X, _ = dependent_design
    assert find_redundant_cols(sp.csr_matrix(X)) == find_redundant_cols(X)

# ---------------------------------------------------------------------
# ensure_full_rank / restore_columns
# ---------------------------------------------------------------------

def test_ensure_full_rank_unchanged_when_full(rng):
    X = rng.standard_normal((25, 3))
    out = ensure_full_rank(X, ["a", "b", "c"])
    assert out.matrix is X
    assert out.var_names == ["a", "b", "c"]
    assert out.dropped == []
    assert out.keep_mask.all()

def test_ensure_full_rank_drops_and_records(dependent_design):
    X, names = dependent_design
    out = ensure_full_rank(X, names)
    assert out.var_names == ["const", "x1", "x2", "x3"]
    assert out.dropped == ["x12", "zero"]
    assert out.matrix.shape == (X.shape[0], 4)
    assert out.n_dropped == 2

def test_ensure_full_rank_sparse_stays_sparse(dependent_design):
    X, names = dependent_design
    out = ensure_full_rank(sp.csr_matrix(X), names)
    assert sp.issparse(out.matrix) and out.matrix.format == "csr"
    assert np.allclose(out.matrix.toarray(), X[:, out.keep_mask])

def test_ensure_full_rank_name_mismatch(dependent_design):
    X, _ = dependent_design
    with pytest.raises(ValueError, match="col_names"):
        ensure_full_rank(X, ["a"])

def test_restore_round_trip(dependent_design):
    X, names = dependent_design
    out = ensure_full_rank(X, names)
    coef = np.array([1.0, 2.0, 3.0, 4.0])
    full = restore_columns(coef, out.var_names, names)
    assert np.allclose(full, [1.0, 2.0, 3.0, 0.0, 0.0, 4.0])
    assert np.allclose(full[out.keep_mask], coef)

def test_restore_custom_fill():
    full = restore_columns([5.0], ["b"], ["a", "b", "c"], fill=np.nan)
    assert np.isnan(full[0]) and np.isnan(full[2])
    assert full[1] == 5.0

def test_restore_unknown_name():
    with pytest.raises(ValueError, match="not found"):
        restore_columns([1.0], ["zz"], ["a", "b"])
