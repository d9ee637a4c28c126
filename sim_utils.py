#!/usr/bin/env python3
"""
sim_utils.py

Simulate spatial Gompertz count data from the model itself, for self-tests and
recovery runs.

    Omega_input        ~ N(0, Q^{-1})
    Epsilon_input[:,t] ~ N(0, Q^{-1})   (independent years)
    log_chat           : Gompertz recursion per site (gompertz_utils.gompertz_recursion)
    count              : Poisson(exp(log_chat)) or Poisson-lognormal (rlpois)

Draws use a dense Cholesky factor of Q, so this is meant for small meshes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from scipy.linalg import cholesky, solve_triangular

from spde_utils import SPDEMatrices, precision_matrix
from obs_utils import ObservationModel, PoissonLognormal, observation_model, rlpois
from gompertz_utils import gompertz_recursion, transform_fields


@dataclass
class SimResult:
    counts: pd.DataFrame            # site, year, vertex, count, x, y
    params: Dict[str, np.ndarray]   # true fixed + random parameters
    log_chat: np.ndarray            # (n_sites, n_t)


def sample_gmrf(rng: np.random.Generator, Q: np.ndarray, n_draws: int = 1) -> np.ndarray:
    """
    (n, n_draws) draws from N(0, Q^{-1}): Q = L L^T, x = L^{-T} z.
    """
    L = cholesky(np.asarray(Q, dtype=float), lower=True)
    z = rng.standard_normal((L.shape[0], int(n_draws)))
    return solve_triangular(L.T, z, lower=False)


def simulate_gompertz(
    spde: SPDEMatrices,
    n_t: int,
    params: Dict[str, Any],
    obs_model: Union[int, str, ObservationModel] = 0,
    seed: int = 0,
    mesh_xy: Optional[np.ndarray] = None,
    vertices: Optional[Sequence[int]] = None,
    X_xp: Optional[np.ndarray] = None,
    first_year: int = 0,
    p_missing: float = 0.0,
) -> SimResult:
    """
    One site per entry of `vertices` (default: every mesh vertex), observed in
    years first_year .. first_year + n_t - 1. params needs alpha, phi,
    log_tau_E, log_tau_O, log_kappa, rho and, for the Poisson-lognormal,
    theta_z = (log_sd, log_clustersize). A fraction p_missing of counts is
    replaced by NaN.
    """
    n_t = int(n_t)
    if n_t < 1:
        raise ValueError(f"n_t must be >= 1, got {n_t}")
    if not (0.0 <= float(p_missing) < 1.0):
        raise ValueError(f"p_missing must lie in [0, 1), got {p_missing}")

    model = observation_model(obs_model)
    rng = np.random.default_rng(int(seed))
    n_x = spde.n_x

    X_xp = np.ones((n_x, 1)) if X_xp is None else np.asarray(X_xp, dtype=float).reshape(n_x, -1)
    alpha = np.atleast_1d(np.asarray(params["alpha"], dtype=float))
    if alpha.size != X_xp.shape[1]:
        raise ValueError(f"alpha has {alpha.size} entries but X_xp has {X_xp.shape[1]} columns")
    phi = float(params["phi"])
    rho = float(params["rho"])
    theta_z = np.asarray(params.get("theta_z", [0.0, 0.0]), dtype=float)

    Q = precision_matrix(spde, float(params["log_kappa"])).toarray()
    Omega_input = sample_gmrf(rng, Q, 1)[:, 0]
    Epsilon_input = sample_gmrf(rng, Q, n_t)

    vertices = np.arange(n_x) if vertices is None else np.asarray(vertices, dtype=np.int64)
    if vertices.size and (vertices.min() < 0 or vertices.max() >= n_x):
        raise ValueError(f"vertices must lie in [0, {n_x})")

    fields = transform_fields(
        dict(alpha=alpha, rho=rho, Omega_input=Omega_input, Epsilon_input=Epsilon_input,
             log_tau_O=float(params["log_tau_O"]), log_tau_E=float(params["log_tau_E"])),
        X_xp,
    )
    # one record per site and year, sites in order, years ascending
    x_s = np.repeat(vertices, n_t)
    t_i = np.tile(np.arange(n_t), vertices.size)
    log_chat = np.asarray(gompertz_recursion(
        x_s, t_i, phi, rho,
        fields["eta_x"], fields["Omega_x"], fields["Equil_x"], fields["Epsilon_xt"],
    )).reshape(vertices.size, n_t)

    if isinstance(model, PoissonLognormal):
        counts = rlpois(rng, log_chat, sdlog=float(np.exp(theta_z[0])), log_clustersize=float(theta_z[1]))
    else:
        counts = rng.poisson(np.exp(log_chat)).astype(float)

    if p_missing > 0.0:
        counts[rng.random(counts.shape) < p_missing] = np.nan

    xy = None if mesh_xy is None else np.asarray(mesh_xy, dtype=float)
    rows = []
    for s, x in enumerate(vertices):
        for t in range(n_t):
            rows.append(dict(
                site=f"S{s:04d}",
                year=int(first_year) + t,
                vertex=int(x),
                count=float(counts[s, t]),
                x=float(xy[x, 0]) if xy is not None else np.nan,
                y=float(xy[x, 1]) if xy is not None else np.nan,
            ))

    truth = dict(
        alpha=alpha,
        phi=np.array(phi),
        log_tau_E=np.array(float(params["log_tau_E"])),
        log_tau_O=np.array(float(params["log_tau_O"])),
        log_kappa=np.array(float(params["log_kappa"])),
        rho=np.array(rho),
        theta_z=theta_z,
        Epsilon_input=Epsilon_input,
        Omega_input=Omega_input,
    )
    return SimResult(counts=pd.DataFrame(rows), params=truth, log_chat=log_chat)
