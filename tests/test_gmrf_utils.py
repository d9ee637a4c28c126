import numpy as np
import pytest
from scipy.sparse import csr_matrix, diags, eye
from scipy.stats import norm

import jax
import jax.numpy as jnp

from spde_utils import SPDEMatrices, precision_dlogkappa, precision_matrix
from gmrf_utils import (
    SPDEPrecision,
    gmrf_nll,
    logdet_and_derivative,
    precision_pattern,
    sparse_logdet,
)
from conftest import diagonal_spde


def test_diagonal_precision_equals_independent_normals():
    d = np.array([0.5, 2.0, 4.0])
    prec = SPDEPrecision(diagonal_spde(d))
    v = np.array([0.3, -1.2, 0.8])

    expected = -np.sum(norm.logpdf(v, loc=0.0, scale=1.0 / np.sqrt(d)))
    assert float(gmrf_nll(prec, 0.0, jnp.asarray(v))) == pytest.approx(expected, rel=1e-12)


def test_kappa_scales_diagonal_precision():
    d = np.array([1.0, 3.0])
    prec = SPDEPrecision(diagonal_spde(d))
    v = np.array([0.4, -0.1])
    log_kappa = 0.25
    q = np.exp(4 * log_kappa) * d

    expected = -np.sum(norm.logpdf(v, loc=0.0, scale=1.0 / np.sqrt(q)))
    assert float(gmrf_nll(prec, log_kappa, jnp.asarray(v))) == pytest.approx(expected, rel=1e-12)


def test_matrix_input_scores_each_column(unit_spde):
    prec = SPDEPrecision(unit_spde)
    rng = np.random.default_rng(0)
    V = rng.standard_normal((unit_spde.n_x, 3))

    per_col = np.asarray(gmrf_nll(prec, 0.1, jnp.asarray(V)))
    assert per_col.shape == (3,)
    for t in range(3):
        assert per_col[t] == pytest.approx(float(gmrf_nll(prec, 0.1, jnp.asarray(V[:, t]))))


def test_sparse_logdet_matches_dense(unit_spde):
    Q = precision_matrix(unit_spde, -0.4)
    sign, logdet = np.linalg.slogdet(Q.toarray())
    assert sign > 0
    assert sparse_logdet(Q) == pytest.approx(logdet, rel=1e-10)


def test_sparse_logdet_is_nan_when_not_positive_definite():
    indefinite = csr_matrix(np.array([[1.0, 2.0], [2.0, 1.0]]))
    assert np.isnan(sparse_logdet(indefinite))
    assert np.isnan(sparse_logdet(csr_matrix(np.zeros((2, 2)))))


def test_nll_is_nan_for_non_positive_definite_precision():
    # Q = (kappa^4 - 2 kappa^2) I = -I at log_kappa = 0
    spde = SPDEMatrices(G0=eye(2).tocsr(), G1=-eye(2).tocsr(), G2=csr_matrix((2, 2)))
    prec = SPDEPrecision(spde)
    assert np.isnan(float(gmrf_nll(prec, 0.0, jnp.zeros(2))))


def test_logdet_derivative_matches_finite_differences(unit_spde):
    h = 1e-5
    lk = 0.2
    _, d = logdet_and_derivative(unit_spde, lk)
    fd = (sparse_logdet(precision_matrix(unit_spde, lk + h)) - sparse_logdet(precision_matrix(unit_spde, lk - h))) / (2 * h)
    assert d == pytest.approx(fd, rel=1e-6)

    prec = SPDEPrecision(unit_spde)
    assert float(jax.grad(prec.logdet)(lk)) == pytest.approx(d, rel=1e-10)
    assert float(jax.jit(prec.logdet)(lk)) == pytest.approx(sparse_logdet(precision_matrix(unit_spde, lk)))


def test_nll_gradient_in_log_kappa(unit_spde):
    prec = SPDEPrecision(unit_spde)
    v = jnp.asarray(np.linspace(-1.0, 1.0, unit_spde.n_x))
    f = lambda lk: gmrf_nll(prec, lk, v)
    h = 1e-5
    fd = (float(f(0.1 + h)) - float(f(0.1 - h))) / (2 * h)
    assert float(jax.grad(f)(0.1)) == pytest.approx(fd, rel=1e-6)


def test_sparse_matvec_matches_dense(unit_spde):
    prec = SPDEPrecision(unit_spde)
    v = np.arange(unit_spde.n_x, dtype=float)
    np.testing.assert_allclose(np.asarray(prec.matvec(0.3, jnp.asarray(v))), prec.dense(0.3) @ v, rtol=1e-12)


def test_logdet_derivative_matches_dense_trace(grid_spde):
    lk = -0.7
    val, d = logdet_and_derivative(grid_spde, lk)
    Q = precision_matrix(grid_spde, lk).toarray()
    dQ = precision_dlogkappa(grid_spde, lk).toarray()
    assert val == pytest.approx(np.linalg.slogdet(Q)[1], rel=1e-10)
    assert d == pytest.approx(np.trace(np.linalg.solve(Q, dQ)), rel=1e-10)


def test_precision_pattern_holds_every_structural_entry(unit_spde):
    pattern = precision_pattern(unit_spde)
    assert pattern.b == 1
    for G in (unit_spde.G0, unit_spde.G1, unit_spde.G2):
        c = G.tocoo()
        pattern.positions(c.row, c.col)
