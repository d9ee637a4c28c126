#!/usr/bin/env python3
"""
gompertz_utils.py

Spatial Gompertz state recursion and joint negative log-likelihood.

Model (per mesh vertex x, year t):
    eta_x       = X_xp @ alpha
    Omega_x     = Omega_input / exp(log_tau_O)
    Epsilon_xt  = Epsilon_input / exp(log_tau_E)
    Equil_x     = (eta_x + Omega_x) / (1 - rho)

Per record i, in input order:
    t_i == 0 : log_chat_i = phi + Equil_x[x_s] + Epsilon_xt[x_s, 0]
    t_i  > 0 : log_chat_i = rho * log_chat_{i-1} + eta_x[x_s] + Omega_x[x_s] + Epsilon_xt[x_s, t_i]

log_chat_{i-1} is the previous *record*. Data preparation sorts records by
vertex/site then year so that it is the same site's previous year; GompertzData
checks this unless check_order=False.

Joint NLL:
    jnll_comp[0] = GMRF(Q)(Omega_input)
    jnll_comp[1] = sum_t GMRF(Q)(Epsilon_input[:, t])
    jnll_comp[2] = sum_i -log p(c_i | log_chat_i)       (missing c_i skipped)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import numpy as np

import jax.numpy as jnp
from jax import lax

from spde_utils import SPDEMatrices, spde_range, spde_marginal_sd
from gmrf_utils import SPDEPrecision, gmrf_nll, gmrf_quad_part, gmrf_logdet_part
from obs_utils import ObservationModel, Poisson, observation_model


FIXED_NAMES = ("alpha", "phi", "log_tau_E", "log_tau_O", "log_kappa", "rho", "theta_z")
RANDOM_NAMES = ("Epsilon_input", "Omega_input")


# =============================================================================
# Data
# =============================================================================

def check_record_order(x_s: np.ndarray, t_i: np.ndarray) -> None:
    """
    Every record with t_i > 0 must directly follow the same vertex's previous year.
    """
    x_s = np.asarray(x_s)
    t_i = np.asarray(t_i)
    later = np.flatnonzero(t_i > 0)
    if later.size == 0:
        return
    if later[0] == 0:
        raise ValueError("Record 0 has t_i > 0; the recursion has no previous record to read.")

    prev = later - 1
    bad = (x_s[prev] != x_s[later]) | (t_i[prev] != t_i[later] - 1)
    if np.any(bad):
        i = int(later[np.argmax(bad)])
        raise ValueError(
            f"Record {i} (x_s={int(x_s[i])}, t_i={int(t_i[i])}) does not follow its own previous year "
            f"(record {i - 1}: x_s={int(x_s[i - 1])}, t_i={int(t_i[i - 1])}). "
            "Sort records by vertex then year and fill missing years with NaN counts."
        )


def _as_index_vector(a, name: str) -> np.ndarray:
    arr = np.asarray(a)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be 1-D, got shape {arr.shape}")
    if arr.size and not np.all(np.isfinite(arr.astype(float))):
        raise ValueError(f"{name} has non-finite entries")
    if arr.size and not np.all(np.equal(np.mod(arr.astype(float), 1.0), 0.0)):
        raise ValueError(f"{name} must hold integers")
    return arr.astype(np.int64)


@dataclass
class GompertzData:
    """
    Validated inputs of one fit. Construction fails (ValueError) on any
    dimension or range violation, before any likelihood evaluation.
    """
    x_s: np.ndarray          # (n_i,) vertex of each record
    c_i: np.ndarray          # (n_i,) counts, NaN = missing
    t_i: np.ndarray          # (n_i,) year index, 0-based
    X_xp: np.ndarray         # (n_x, n_p) per-vertex covariates
    spde: SPDEMatrices
    n_t: int
    obs_model: ObservationModel = field(default_factory=Poisson)
    check_order: bool = True

    def __post_init__(self):
        self.obs_model = observation_model(self.obs_model)
        self.x_s = _as_index_vector(self.x_s, "x_s")
        self.t_i = _as_index_vector(self.t_i, "t_i")
        self.c_i = np.asarray(self.c_i, dtype=float)
        if self.c_i.ndim != 1:
            raise ValueError(f"c_i must be 1-D, got shape {self.c_i.shape}")

        n_i = self.c_i.size
        if self.x_s.size != n_i or self.t_i.size != n_i:
            raise ValueError(f"x_s, c_i, t_i lengths differ: {self.x_s.size}, {n_i}, {self.t_i.size}")

        self.n_t = int(self.n_t)
        if self.n_t < 1:
            raise ValueError(f"n_t must be >= 1, got {self.n_t}")

        n_x = self.spde.n_x
        self.X_xp = np.asarray(self.X_xp, dtype=float)
        if self.X_xp.ndim == 1:
            self.X_xp = self.X_xp[:, None]
        if self.X_xp.ndim != 2 or self.X_xp.shape[0] != n_x:
            raise ValueError(f"X_xp must be (n_x={n_x}, n_p), got shape {self.X_xp.shape}")
        if not np.all(np.isfinite(self.X_xp)):
            raise ValueError("X_xp has non-finite entries")

        if n_i:
            if self.x_s.min() < 0 or self.x_s.max() >= n_x:
                raise ValueError(f"x_s values must lie in [0, {n_x}), got [{self.x_s.min()}, {self.x_s.max()}]")
            if self.t_i.min() < 0 or self.t_i.max() >= self.n_t:
                raise ValueError(f"t_i values must lie in [0, {self.n_t}), got [{self.t_i.min()}, {self.t_i.max()}]")
            obs = self.c_i[~np.isnan(self.c_i)]
            if np.any(obs < 0) or not np.all(np.isfinite(obs)):
                raise ValueError("c_i must be non-negative and finite where not missing")

        if self.check_order:
            check_record_order(self.x_s, self.t_i)

    @property
    def n_i(self) -> int:
        return int(self.c_i.size)

    @property
    def n_x(self) -> int:
        return self.spde.n_x

    @property
    def n_p(self) -> int:
        return int(self.X_xp.shape[1])

    @property
    def options_vec(self) -> np.ndarray:
        return np.array([self.obs_model.code], dtype=np.int64)

    @classmethod
    def from_arrays(
        cls,
        Options_vec: Sequence[int],
        n_i: int,
        n_x: int,
        n_t: int,
        n_p: int,
        x_s,
        c_i,
        t_i,
        X_xp,
        G0,
        G1,
        G2,
        check_order: bool = True,
    ) -> "GompertzData":
        """Data list as passed to the compiled objective, with declared sizes checked."""
        spde = SPDEMatrices(G0, G1, G2)
        if spde.n_x != int(n_x):
            raise ValueError(f"n_x={n_x} but structural matrices are {spde.n_x} x {spde.n_x}")
        X_xp = np.asarray(X_xp, dtype=float)
        if X_xp.ndim != 2 or X_xp.shape != (int(n_x), int(n_p)):
            raise ValueError(f"X_xp must be ({n_x}, {n_p}), got {X_xp.shape}")
        for name, arr in (("x_s", x_s), ("c_i", c_i), ("t_i", t_i)):
            if np.asarray(arr).shape != (int(n_i),):
                raise ValueError(f"{name} must have length n_i={n_i}, got shape {np.asarray(arr).shape}")

        return cls(
            x_s=x_s, c_i=c_i, t_i=t_i, X_xp=X_xp, spde=spde, n_t=int(n_t),
            obs_model=observation_model(int(np.asarray(Options_vec)[0])),
            check_order=check_order,
        )


# =============================================================================
# Parameters
# =============================================================================

def default_parameters(data: GompertzData) -> Dict[str, np.ndarray]:
    return dict(
        alpha=np.zeros(data.n_p, dtype=float),
        phi=np.array(0.0),
        log_tau_E=np.array(1.0),
        log_tau_O=np.array(1.0),
        log_kappa=np.array(0.0),
        rho=np.array(0.5),
        theta_z=np.array([0.0, 0.0]),
        Epsilon_input=np.zeros((data.n_x, data.n_t), dtype=float),
        Omega_input=np.zeros(data.n_x, dtype=float),
    )


def check_parameters(params: Dict[str, Any], data: GompertzData) -> None:
    expected = {
        "alpha": (data.n_p,),
        "phi": (),
        "log_tau_E": (),
        "log_tau_O": (),
        "log_kappa": (),
        "rho": (),
        "theta_z": (2,),
        "Epsilon_input": (data.n_x, data.n_t),
        "Omega_input": (data.n_x,),
    }
    missing = [k for k in expected if k not in params]
    if missing:
        raise ValueError(f"Missing parameters: {missing}")
    for k, shape in expected.items():
        got = tuple(np.shape(params[k]))
        if got != shape:
            raise ValueError(f"Parameter {k} must have shape {shape}, got {got}")


# =============================================================================
# Recursion
# =============================================================================

def equilibrium(eta_x, Omega_x, rho):
    # rho == 1 is outside the parameter domain (division by zero)
    return (eta_x + Omega_x) / (1.0 - rho)


def transform_fields(params: Dict[str, Any], X_xp) -> Dict[str, Any]:
    eta_x = jnp.asarray(X_xp) @ params["alpha"]
    Omega_x = params["Omega_input"] / jnp.exp(params["log_tau_O"])
    Epsilon_xt = params["Epsilon_input"] / jnp.exp(params["log_tau_E"])
    Equil_x = equilibrium(eta_x, Omega_x, params["rho"])
    return dict(eta_x=eta_x, Omega_x=Omega_x, Epsilon_xt=Epsilon_xt, Equil_x=Equil_x)


def gompertz_recursion(x_s, t_i, phi, rho, eta_x, Omega_x, Equil_x, Epsilon_xt):
    """
    log_chat_i for every record, scanned in input order with the previous
    record's value as the carry.
    """
    x_s = jnp.asarray(x_s)
    t_i = jnp.asarray(t_i)
    productivity = eta_x + Omega_x
    start = phi + Equil_x + Epsilon_xt[:, 0]

    def step(log_chat_prev, rec):
        x, t = rec
        first = start[x]
        later = rho * log_chat_prev + productivity[x] + Epsilon_xt[x, t]
        log_chat = jnp.where(t == 0, first, later)
        return log_chat, log_chat

    init = jnp.zeros((), dtype=productivity.dtype)
    _, log_chat_i = lax.scan(step, init, (x_s, t_i))
    return log_chat_i


# =============================================================================
# Joint likelihood
# =============================================================================

class GompertzModel:
    """
    Joint NLL of fixed and random parameters for one GompertzData.

    jnll() is split as logdet_part() + random_part(): the log-determinant terms
    depend on log_kappa only, so the random-effect Hessian is taken on
    random_part() alone.
    """

    def __init__(self, data: GompertzData):
        self.data = data
        self.prec = SPDEPrecision(data.spde)
        self.obs_model = data.obs_model

        self._x_s = jnp.asarray(data.x_s)
        self._t_i = jnp.asarray(data.t_i)
        self._c_i = jnp.asarray(data.c_i)
        self._X_xp = jnp.asarray(data.X_xp)

    # -------------------------
    # Pieces
    # -------------------------
    def latent(self, params: Dict[str, Any]) -> Dict[str, Any]:
        fields = transform_fields(params, self._X_xp)
        fields["log_chat_i"] = gompertz_recursion(
            self._x_s, self._t_i, params["phi"], params["rho"],
            fields["eta_x"], fields["Omega_x"], fields["Equil_x"], fields["Epsilon_xt"],
        )
        return fields

    def jnll_i(self, params: Dict[str, Any], log_chat_i):
        return self.obs_model.nll_i(self._c_i, log_chat_i, params["theta_z"])

    def logdet_part(self, params: Dict[str, Any]):
        n_fields = 1 + self.data.n_t
        return n_fields * gmrf_logdet_part(self.prec, params["log_kappa"])

    def random_part(self, params: Dict[str, Any]):
        log_kappa = params["log_kappa"]
        quad = gmrf_quad_part(self.prec, log_kappa, params["Omega_input"])
        quad = quad + jnp.sum(gmrf_quad_part(self.prec, log_kappa, params["Epsilon_input"]))
        log_chat_i = self.latent(params)["log_chat_i"]
        return quad + jnp.sum(self.jnll_i(params, log_chat_i))

    # -------------------------
    # Full evaluation
    # -------------------------
    def components(self, params: Dict[str, Any]) -> Dict[str, Any]:
        log_kappa = params["log_kappa"]
        fields = self.latent(params)
        jnll_i = self.jnll_i(params, fields["log_chat_i"])

        jnll_comp = jnp.stack([
            gmrf_nll(self.prec, log_kappa, params["Omega_input"]),
            jnp.sum(gmrf_nll(self.prec, log_kappa, params["Epsilon_input"])),
            jnp.sum(jnll_i),
        ])
        out = dict(fields)
        out["jnll_i"] = jnll_i
        out["jnll_comp"] = jnll_comp
        out["jnll"] = jnp.sum(jnll_comp)
        return out

    def jnll(self, params: Dict[str, Any]):
        return self.logdet_part(params) + self.random_part(params)

    def derived(self, params: Dict[str, Any]) -> Dict[str, Any]:
        log_kappa = params["log_kappa"]
        return dict(
            Range=spde_range(log_kappa, xp=jnp),
            SigmaE=spde_marginal_sd(params["log_tau_E"], log_kappa, xp=jnp),
            SigmaO=spde_marginal_sd(params["log_tau_O"], log_kappa, xp=jnp),
        )

    def report(self, params: Dict[str, Any]) -> Dict[str, np.ndarray]:
        """
        Post-evaluation diagnostics (numpy copies): likelihood breakdown, spatial
        summaries, latent fields, echoed data and fixed parameters.
        """
        comp = self.components(params)
        rep: Dict[str, Any] = {}
        rep["jnll_comp"] = comp["jnll_comp"]
        rep["jnll"] = comp["jnll"]
        rep.update(self.derived(params))
        rep["rho"] = params["rho"]
        rep["Epsilon_xt"] = comp["Epsilon_xt"]
        rep["Omega_x"] = comp["Omega_x"]
        rep["Equil_x"] = comp["Equil_x"]
        rep["log_chat_i"] = comp["log_chat_i"]
        rep["jnll_i"] = comp["jnll_i"]
        rep["theta_z"] = params["theta_z"]
        rep["x_s"] = self.data.x_s
        rep["c_i"] = self.data.c_i
        rep["t_i"] = self.data.t_i
        for k in ("alpha", "phi", "log_tau_E", "log_tau_O", "log_kappa"):
            rep[k] = params[k]
        rep["eta_x"] = comp["eta_x"]
        return {k: np.asarray(v) for k, v in rep.items()}


def joint_nll(params: Dict[str, Any], data: GompertzData, model: Optional[GompertzModel] = None) -> float:
    model = model if model is not None else GompertzModel(data)
    p = {k: jnp.asarray(v, dtype=jnp.float64) for k, v in params.items()}
    return float(model.jnll(p))
