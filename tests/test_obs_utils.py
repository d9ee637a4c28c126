import numpy as np
import pytest
from scipy import integrate
from scipy.stats import lognorm, poisson

import jax
import jax.numpy as jnp

from obs_utils import (
    Poisson,
    PoissonLognormal,
    d_poisson_lognormal,
    dlognorm,
    dpois,
    dpois_log_rate,
    observation_model,
    rlpois,
)


def test_dpois_matches_scipy():
    x = np.array([0.0, 1.0, 4.0, 12.0])
    lam = 3.5
    np.testing.assert_allclose(np.asarray(dpois(x, lam, give_log=True)), poisson.logpmf(x, lam), rtol=1e-12)
    np.testing.assert_allclose(np.asarray(dpois(x, lam)), poisson.pmf(x, lam), rtol=1e-12)
    np.testing.assert_allclose(
        np.asarray(dpois_log_rate(x, np.log(lam), give_log=True)), poisson.logpmf(x, lam), rtol=1e-12
    )


def test_dpois_zero_rate_at_zero_count():
    assert float(dpois(0.0, 0.0, give_log=True)) == 0.0


def test_dlognorm_matches_scipy():
    x = np.array([0.2, 1.0, 7.5])
    log_mean, log_sd = 0.4, np.log(0.8)
    expected = lognorm.logpdf(x, s=0.8, scale=np.exp(log_mean))
    np.testing.assert_allclose(np.asarray(dlognorm(x, log_mean, log_sd, give_log=True)), expected, rtol=1e-10)
    np.testing.assert_allclose(np.asarray(dlognorm(x, log_mean, log_sd)), np.exp(expected), rtol=1e-10)


def test_pln_zero_mass_is_exact():
    log_mean, log_sd, log_cs = 0.7, -0.3, 0.2
    got = float(d_poisson_lognormal(0.0, log_mean, log_sd, log_cs, give_log=True))
    assert got == pytest.approx(-1.0 * np.exp(log_mean) / np.exp(log_cs), rel=1e-14)


@pytest.mark.parametrize("log_mean,log_sd,log_cs", [(0.5, -0.5, 0.0), (-1.0, 0.2, 1.0)])
def test_pln_integrates_to_one(log_mean, log_sd, log_cs):
    p0 = float(d_poisson_lognormal(0.0, log_mean, log_sd, log_cs))
    f = lambda x: float(d_poisson_lognormal(x, log_mean, log_sd, log_cs))
    pos, _ = integrate.quad(f, 0.0, np.inf, limit=200)
    assert p0 + pos == pytest.approx(1.0, abs=1e-6)


def test_pln_log_and_natural_scales_agree():
    x = jnp.array([0.0, 0.5, 3.0])
    lg = np.asarray(d_poisson_lognormal(x, 0.1, -0.2, 0.3, give_log=True))
    nat = np.asarray(d_poisson_lognormal(x, 0.1, -0.2, 0.3))
    np.testing.assert_allclose(np.exp(lg), nat, rtol=1e-12)


def test_pln_gradient_is_finite_at_zero_count():
    g = jax.grad(lambda lm: d_poisson_lognormal(0.0, lm, -0.2, 0.3, give_log=True))(0.4)
    assert np.isfinite(float(g))
    assert float(g) == pytest.approx(-np.exp(0.4) / np.exp(0.3))


def test_observation_model_selection():
    assert observation_model(0) == Poisson()
    assert observation_model(1) == PoissonLognormal()
    assert observation_model("poisson_lognormal") == PoissonLognormal()
    assert observation_model(np.int64(0)) == Poisson()
    m = PoissonLognormal()
    assert observation_model(m) is m
    with pytest.raises(ValueError):
        observation_model(2)
    with pytest.raises(ValueError):
        observation_model("negbin")


def test_missing_counts_contribute_zero():
    c = jnp.array([2.0, np.nan, 0.0])
    log_chat = jnp.array([0.5, 0.5, 0.5])
    for model in (Poisson(), PoissonLognormal()):
        nll = np.asarray(model.nll_i(c, log_chat, jnp.array([0.0, 0.0])))
        assert nll[1] == 0.0
        assert np.all(nll[[0, 2]] > 0)


def test_missing_counts_do_not_leak_nan_into_gradient():
    c = jnp.array([2.0, np.nan])
    g = jax.grad(lambda lc: jnp.sum(Poisson().nll_i(c, lc, jnp.zeros(2))))(jnp.array([0.1, 0.2]))
    assert np.all(np.isfinite(np.asarray(g)))
    assert float(g[1]) == 0.0


def test_rlpois_zero_fraction_and_mean():
    rng = np.random.default_rng(3)
    log_mean, sdlog, log_cs = 0.5, 0.4, 0.3
    draws = rlpois(rng, np.full(200_000, log_mean), sdlog, log_cs)

    p0 = np.exp(-np.exp(log_mean) / np.exp(log_cs))
    assert np.mean(draws == 0) == pytest.approx(p0, abs=5e-3)
    assert np.mean(draws) == pytest.approx(np.exp(log_mean + 0.5 * sdlog**2), rel=2e-2)
    assert np.all(draws >= 0)


def test_kernels_evaluate_in_double_precision():
    out = dpois_log_rate(jnp.asarray(3.0), jnp.asarray(0.1), give_log=True)
    assert out.dtype == jnp.float64
    assert jnp.zeros(2).dtype == jnp.float64
