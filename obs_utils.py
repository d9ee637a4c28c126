#!/usr/bin/env python3
"""
obs_utils.py

Observation density kernels for count data (JAX, differentiable).

    dpois(x, lam)                             Poisson
    dlognorm(x, log_mean, log_sd)             lognormal, Jacobian-corrected
    d_poisson_lognormal(x, log_mean, log_sd, log_clustersize)

The Poisson-lognormal is a hurdle mixture for clustered encounters
(Bulmer 1974; Thorson's cluster form). With mean cluster size exp(log_clustersize)

    log P(x = 0)  = -exp(log_mean) / exp(log_clustersize)
    p_enc         = 1 - P(x = 0)
    x > 0         : log p_enc + dlognorm(x, log_mean - log p_enc, log_sd)

so that E[x] = exp(log_mean + sd^2 / 2) whatever the cluster size. Every kernel takes
give_log=False/True and returns the density or its log.
"""

from __future__ import annotations

from typing import Union

import numpy as np

import jax.numpy as jnp
from jax.scipy.special import gammaln, xlogy

from linalg_utils import LOG_2PI


# =============================================================================
# Kernels
# =============================================================================

def dpois(x, lam, give_log: bool = False):
    logp = xlogy(x, lam) - lam - gammaln(x + 1.0)
    return logp if give_log else jnp.exp(logp)


def dpois_log_rate(x, log_lam, give_log: bool = False):
    """Poisson with the rate given on the log scale (avoids log(exp(.)))."""
    logp = x * log_lam - jnp.exp(log_lam) - gammaln(x + 1.0)
    return logp if give_log else jnp.exp(logp)


def dlognorm(x, log_mean, log_sd, give_log: bool = False):
    """Undefined for x <= 0; callers guard."""
    log_x = jnp.log(x)
    z = (log_x - log_mean) / jnp.exp(log_sd)
    logp = -0.5 * LOG_2PI - log_sd - 0.5 * z * z - log_x
    return logp if give_log else jnp.exp(logp)


def d_poisson_lognormal(x, log_mean, log_sd, log_clustersize, give_log: bool = False):
    log_notencounterprob = -1.0 * jnp.exp(log_mean) / jnp.exp(log_clustersize)
    # log(1 - exp(a)) for a < 0
    log_encounterprob = jnp.log(-jnp.expm1(log_notencounterprob))

    # keep the unused branch finite so gradients through jnp.where stay clean
    x_pos = jnp.where(x > 0, x, 1.0)
    log_pos = log_encounterprob + dlognorm(x_pos, log_mean - log_encounterprob, log_sd, give_log=True)

    out = jnp.where(x == 0, log_notencounterprob, log_pos)
    return out if give_log else jnp.exp(out)


# =============================================================================
# Observation models (tagged variants)
# =============================================================================

class ObservationModel:
    """Per-observation log-likelihood of counts given log expected density."""

    code: int = -1
    name: str = "base"

    def logpdf(self, c, log_chat, theta_z):
        raise NotImplementedError

    def nll_i(self, c, log_chat, theta_z):
        """
        -log p(c_i | log_chat_i) with missing counts (NaN) contributing 0.
        """
        c = jnp.asarray(c, dtype=jnp.float64)
        observed = ~jnp.isnan(c)
        c_safe = jnp.where(observed, c, 0.0)
        ll = self.logpdf(c_safe, log_chat, theta_z)
        return jnp.where(observed, -ll, 0.0)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))


class Poisson(ObservationModel):
    code = 0
    name = "poisson"

    def logpdf(self, c, log_chat, theta_z):
        return dpois_log_rate(c, log_chat, give_log=True)


class PoissonLognormal(ObservationModel):
    """theta_z = (log_sd, log_clustersize)."""
    code = 1
    name = "poisson_lognormal"

    def logpdf(self, c, log_chat, theta_z):
        return d_poisson_lognormal(c, log_chat, theta_z[0], theta_z[1], give_log=True)


_MODELS = {m.code: m for m in (Poisson, PoissonLognormal)}
_NAMES = {m.name: m for m in (Poisson, PoissonLognormal)}


def observation_model(option: Union[int, str, ObservationModel]) -> ObservationModel:
    """
    Options_vec[0] (0 = Poisson, 1 = Poisson-lognormal), a model name, or an instance.
    """
    if isinstance(option, ObservationModel):
        return option
    if isinstance(option, str):
        key = option.strip().lower()
        if key not in _NAMES:
            raise ValueError(f"Unknown observation model {option!r}. Available: {sorted(_NAMES)}")
        return _NAMES[key]()
    if isinstance(option, (int, np.integer)) and int(option) in _MODELS:
        return _MODELS[int(option)]()
    raise ValueError(f"Observation model selector must be 0 (Poisson) or 1 (Poisson-lognormal), got {option!r}")


# =============================================================================
# Random draws (numpy; used by sim_utils)
# =============================================================================

def rlpois(rng: np.random.Generator, log_mean: np.ndarray, sdlog: float, log_clustersize: float) -> np.ndarray:
    """Poisson-lognormal draws: Bernoulli encounter times a lognormal catch."""
    log_mean = np.asarray(log_mean, float)
    encounterprob = 1.0 - np.exp(-1.0 * np.exp(log_mean) / np.exp(log_clustersize))
    posTF = rng.binomial(n=1, p=encounterprob)
    with np.errstate(divide="ignore"):
        meanlog = log_mean - np.log(encounterprob)
    catch = posTF * rng.lognormal(mean=np.where(np.isfinite(meanlog), meanlog, 0.0), sigma=sdlog)
    return catch
