import numpy as np
import pytest

import jax
import jax.numpy as jnp
from scipy.sparse import csr_matrix
from skfem import MeshTri

from gompertz_utils import GompertzData, GompertzModel
from laplace_utils import GompertzObjective, ParameterLayout, evaluate, optim_hessian, sdreport
from spde_utils import build_spde_matrices, spde_range
from gmrf_utils import LOG_2PI


def _fd_grad(f, x, h=1e-5):
    g = np.zeros_like(x)
    for j in range(x.size):
        e = np.zeros_like(x)
        e[j] = h
        g[j] = (f(x + e) - f(x - e)) / (2 * h)
    return g


def test_layout_order_and_epsilon_column_major(two_vertex_data):
    layout = ParameterLayout(two_vertex_data)
    assert layout.fixed_labels == ["alpha", "phi", "log_tau_E", "log_tau_O", "log_kappa", "rho", "theta_z", "theta_z"]
    assert layout.n_random == 2 * 3 + 2
    assert layout.index_of("log_kappa") == 4

    eps = np.arange(6.0).reshape(2, 3)
    params = dict(Epsilon_input=eps, Omega_input=np.array([10.0, 11.0]))
    u = layout.pack_random(params)
    # year 0 for every vertex first
    np.testing.assert_allclose(u, [0.0, 3.0, 1.0, 4.0, 2.0, 5.0, 10.0, 11.0])
    back = layout.unpack_numpy(np.zeros(layout.n_fixed), u)
    np.testing.assert_allclose(back["Epsilon_input"], eps)

    with pytest.raises(ValueError):
        layout.index_of("theta_z")


def test_joint_gradient_matches_finite_differences(two_vertex_data):
    rng = np.random.default_rng(0)
    obj = GompertzObjective(two_vertex_data, parameters=dict(alpha=[0.4], rho=0.3, log_kappa=0.1))
    theta = obj.par.copy()
    u = rng.normal(scale=0.3, size=obj.layout.n_random)

    val, grad = obj.evaluate(theta, u)
    x = np.concatenate([theta, u])
    n = theta.size
    fd = _fd_grad(lambda z: obj.evaluate(z[:n], z[n:])[0], x)
    assert np.isfinite(val)
    np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-6)


def test_module_evaluate_matches_joint_nll(two_vertex_data):
    params = dict(alpha=np.array([0.2]), phi=np.array(0.1), rho=np.array(0.4))
    random_effects = dict(Omega_input=np.array([0.3, -0.3]), Epsilon_input=np.zeros((2, 3)))
    val, grad = evaluate(params, random_effects, two_vertex_data)

    model = GompertzModel(two_vertex_data)
    obj = GompertzObjective(two_vertex_data, parameters={**params, **random_effects})
    p = {k: jnp.asarray(v) for k, v in obj.parameters(u=obj.layout.pack_random(random_effects)).items()}
    assert val == pytest.approx(float(model.jnll(p)))
    assert grad.shape == (obj.layout.n_fixed + obj.layout.n_random,)


def test_laplace_is_exact_without_observations(two_vertex_data):
    # all counts missing: the integrand is a normalised Gaussian density in the random effects
    data = GompertzData(
        x_s=two_vertex_data.x_s, c_i=np.full(6, np.nan), t_i=two_vertex_data.t_i,
        X_xp=two_vertex_data.X_xp, spde=two_vertex_data.spde, n_t=3,
    )
    obj = GompertzObjective(data, parameters=dict(log_kappa=0.3, rho=0.2))
    assert obj.fn(obj.par) == pytest.approx(0.0, abs=1e-10)
    np.testing.assert_allclose(obj.gr(obj.par), 0.0, atol=1e-10)


def test_inner_mode_is_stationary(two_vertex_data):
    obj = GompertzObjective(two_vertex_data, parameters=dict(alpha=[1.0], rho=0.5))
    inner = obj.inner_mode(obj.par)
    assert inner.converged
    assert inner.max_grad < 1e-6
    assert np.all(np.linalg.eigvalsh(inner.H.toarray()) > 0)


def test_laplace_value_formula(two_vertex_data):
    obj = GompertzObjective(two_vertex_data, parameters=dict(alpha=[1.0], rho=0.5))
    par = obj.par
    inner = obj.inner_mode(par)
    joint, _ = obj.evaluate(par, inner.u)
    sign, logdet_H = np.linalg.slogdet(inner.H.toarray())
    expected = joint + 0.5 * logdet_H - 0.5 * obj.layout.n_random * LOG_2PI
    assert sign > 0
    assert obj.fn(par) == pytest.approx(expected, rel=1e-8)


def test_laplace_gradient_matches_finite_differences(two_vertex_data):
    obj = GompertzObjective(
        two_vertex_data,
        parameters=dict(alpha=[0.8], rho=0.4, log_kappa=0.2, log_tau_E=0.5, log_tau_O=0.7),
        inner_params=dict(grad_tol=1e-11, warm_start=False),
    )
    par = obj.par.copy()
    g = obj.gr(par)
    fd = _fd_grad(obj.fn, par, h=1e-5)
    # theta_z does not enter the Poisson likelihood
    assert g[-2:] == pytest.approx([0.0, 0.0], abs=1e-10)
    np.testing.assert_allclose(g, fd, rtol=1e-4, atol=1e-6)


def _random_part_hessians(obj, theta, u):
    theta = jnp.asarray(theta)
    rand = lambda uu: obj.model.random_part(obj.layout.unpack(theta, uu))
    dense = np.asarray(jax.hessian(rand)(jnp.asarray(u)))
    values = obj.hessian.values(obj.layout.unpack(theta, jnp.asarray(u)))
    return obj.hessian.matrix(np.asarray(values)).toarray(), dense


def _grid_data(n_side, n_t, seed, obs_model="poisson", side_km=40.0):
    mesh = MeshTri.init_tensor(np.linspace(0.0, side_km, n_side), np.linspace(0.0, side_km, n_side))
    spde = build_spde_matrices(mesh)
    rng = np.random.default_rng(seed)
    c = rng.poisson(4.0, size=spde.n_x * n_t).astype(float)
    c[::7] = np.nan
    return GompertzData(
        x_s=np.repeat(np.arange(spde.n_x), n_t), c_i=c, t_i=np.tile(np.arange(n_t), spde.n_x),
        X_xp=np.ones((spde.n_x, 1)), spde=spde, n_t=n_t, obs_model=obs_model,
    )


def test_sparse_hessian_matches_dense(two_vertex_data):
    rng = np.random.default_rng(3)
    obj = GompertzObjective(
        two_vertex_data,
        parameters=dict(alpha=[0.5], rho=0.6, log_kappa=0.1, log_tau_E=0.3, log_tau_O=-0.2),
    )
    u = rng.normal(scale=0.5, size=obj.layout.n_random)
    sparse, dense = _random_part_hessians(obj, obj.par, u)
    np.testing.assert_allclose(sparse, dense, rtol=1e-10, atol=1e-12)


def test_sparse_hessian_matches_dense_on_mesh_with_lognormal_counts():
    data = _grid_data(3, 3, seed=4, obs_model="poisson_lognormal")
    rng = np.random.default_rng(5)
    obj = GompertzObjective(
        data,
        parameters=dict(alpha=[1.0], rho=0.4, log_kappa=-1.0, theta_z=[-0.5, 0.2]),
    )
    u = rng.normal(scale=0.5, size=obj.layout.n_random)
    sparse, dense = _random_part_hessians(obj, obj.par, u)
    np.testing.assert_allclose(sparse, dense, rtol=1e-9, atol=1e-10)
    # one block of n_t + 1 random effects per vertex
    assert obj.hessian.pattern.b == data.n_t + 1
    assert obj.hessian.pattern.m == data.n_x


def test_sparse_hessian_follows_previous_record_when_unordered():
    from conftest import diagonal_spde

    data = GompertzData(
        x_s=[0, 1, 0, 1], c_i=[2.0, 4.0, 1.0, 3.0], t_i=[0, 1, 1, 2],
        X_xp=np.ones((2, 1)), spde=diagonal_spde([1.0, 2.0]), n_t=3, check_order=False,
    )
    rng = np.random.default_rng(6)
    obj = GompertzObjective(data, parameters=dict(rho=0.7, log_tau_E=0.4))
    u = rng.normal(scale=0.3, size=obj.layout.n_random)
    sparse, dense = _random_part_hessians(obj, obj.par, u)
    np.testing.assert_allclose(sparse, dense, rtol=1e-10, atol=1e-12)


def test_laplace_gradient_on_mesh_matches_finite_differences():
    data = _grid_data(3, 3, seed=8)
    obj = GompertzObjective(
        data,
        parameters=dict(alpha=[1.2], rho=0.3, log_kappa=-1.0, log_tau_E=0.5, log_tau_O=0.2),
        inner_params=dict(grad_tol=1e-11, warm_start=False),
    )
    par = obj.par.copy()
    g = obj.gr(par)
    fd = _fd_grad(obj.fn, par, h=1e-5)
    np.testing.assert_allclose(g, fd, rtol=1e-4, atol=1e-5)


def test_laplace_objective_on_a_fine_mesh_stays_sparse():
    data = _grid_data(15, 6, seed=9, side_km=100.0)
    obj = GompertzObjective(data, parameters=dict(alpha=[1.0], log_kappa=-1.5))
    n_r = obj.layout.n_random
    assert n_r == 225 * 7

    inner = obj.inner_mode(obj.par)
    assert inner.converged
    assert isinstance(inner.H, csr_matrix)
    assert inner.H.nnz < 0.05 * n_r * n_r

    val, grad = obj.fn_gr(obj.par)
    assert np.isfinite(val)
    assert np.all(np.isfinite(grad))
    assert val == pytest.approx(obj.fn(obj.par))


def test_non_positive_definite_precision_gives_inf_objective():
    from scipy.sparse import csr_matrix, eye
    from spde_utils import SPDEMatrices

    spde = SPDEMatrices(G0=eye(1).tocsr(), G1=-eye(1).tocsr(), G2=csr_matrix((1, 1)))
    data = GompertzData(x_s=[0, 0], c_i=[1.0, 2.0], t_i=[0, 1], X_xp=np.ones((1, 1)), spde=spde, n_t=2)

    joint = GompertzObjective(data, random=False)
    assert joint.fn(joint.par) == np.inf
    assert np.all(np.isnan(joint.gr(joint.par)))
    val, _ = joint.evaluate(joint.par)
    assert np.isnan(val)


def test_fixed_only_objective_uses_joint_nll(one_vertex_data):
    obj = GompertzObjective(one_vertex_data, parameters=dict(alpha=[1.0]), random=False)
    assert obj.layout.n_random == 0
    assert obj.par.size == obj.layout.n_fixed == 1 + 5 + 2 + 3 + 1
    val, grad = obj.fn_gr(obj.par)
    assert val == pytest.approx(obj.evaluate(obj.par)[0])
    np.testing.assert_allclose(grad, _fd_grad(obj.fn, obj.par), rtol=1e-5, atol=1e-6)


def test_report_at_mode(two_vertex_data):
    obj = GompertzObjective(two_vertex_data, parameters=dict(alpha=[1.0]))
    rep = obj.report()
    assert rep["log_chat_i"].shape == (6,)
    assert rep["Epsilon_xt"].shape == (2, 3)
    assert np.isfinite(rep["jnll"])


def test_optim_hessian_of_quadratic_is_exact():
    A = np.array([[2.0, 0.5], [0.5, 1.0]])
    H = optim_hessian(lambda p: A @ p, np.array([0.3, -0.2]), np.array([True, True]))
    np.testing.assert_allclose(H, A, rtol=1e-8)
    H1 = optim_hessian(lambda p: A @ p, np.array([0.3, -0.2]), np.array([False, True]))
    np.testing.assert_allclose(H1, [[1.0]], rtol=1e-8)


def test_sdreport_delta_method(two_vertex_data):
    obj = GompertzObjective(two_vertex_data, parameters=dict(log_kappa=0.5, log_tau_E=1.0, log_tau_O=0.5))
    n = obj.par.size
    rng = np.random.default_rng(2)
    B = rng.standard_normal((n, n))
    A = B @ B.T + n * np.eye(n)
    m = obj.par.copy()

    # replace the objective by an exact quadratic around par
    obj.gr = lambda p: A @ (np.asarray(p) - m)
    obj.fn_gr = lambda p: (0.5 * (np.asarray(p) - m) @ A @ (np.asarray(p) - m), A @ (np.asarray(p) - m))

    rep = sdreport(obj, m)
    cov = np.linalg.inv(A)
    assert rep.pd_hess
    np.testing.assert_allclose(rep.se, np.sqrt(np.diag(cov)), rtol=1e-6)

    k = obj.layout.index_of("log_kappa")
    assert rep.derived["Range"] == pytest.approx(spde_range(0.5))
    # dRange/dlog_kappa = -Range
    assert rep.derived_se["Range"] == pytest.approx(rep.derived["Range"] * rep.se[k], rel=1e-6)
    assert set(rep.summary()) >= {"alpha", "rho", "theta_z[0]", "theta_z[1]", "Range", "SigmaE", "SigmaO"}


def test_sdreport_holds_const_parameters_fixed(two_vertex_data):
    obj = GompertzObjective(two_vertex_data)
    n = obj.par.size
    m = obj.par.copy()
    obj.gr = lambda p: 3.0 * (np.asarray(p) - m)
    obj.fn_gr = lambda p: (1.5 * np.sum((np.asarray(p) - m) ** 2), 3.0 * (np.asarray(p) - m))

    free = np.ones(n, dtype=bool)
    free[-2:] = False
    rep = sdreport(obj, m, free=free)
    assert rep.hessian.shape == (n - 2, n - 2)
    np.testing.assert_allclose(rep.se[:-2], np.sqrt(1.0 / 3.0), rtol=1e-6)
    np.testing.assert_allclose(rep.se[-2:], 0.0)
