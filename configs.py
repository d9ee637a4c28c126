#!/usr/bin/env python3
"""
configs.py

Configurations for running the procedure.
"""


default = dict(
    data_params=dict(
        msh_path=None,
        grid=dict(width_km=100, height_km=100, n=6),
        counts_csv="processed/counts.csv",
        obs_model=0,
        epsg_project=5070,
        min_year=None,
        max_year=None,
    ),
    mle_model_params=dict(
        alpha=("free", -1000, 1000),
        phi=("free", -1000, 1000),
        log_tau_E=("free", -1000, 1000),
        log_tau_O=("free", -1000, 1000),
        log_kappa=("free", -1000, 1000),
        rho=("free", -0.999, 0.999),
        theta_z=("const", 0, 0), # Poisson ignores theta_z
    ),
    init_params=dict(
        phi=0.0,
        log_tau_E=1.0,
        log_tau_O=1.0,
        log_kappa=0.0,
        rho=0.5,
    ),
    inner_params=dict(
        max_iter=100,
        grad_tol=1e-9,
        warm_start=True,
    ),
    optim_params=dict(
        maxiter=800,
        ftol=1e-12,
        gtol=1e-8,
        run_sdreport=True,
    ),
    multiStart_params=dict(
        n_starts=3,
        start_ranges=dict(
            phi=(-1, 1),
            log_tau_E=(-1, 2),
            log_tau_O=(-1, 2),
            log_kappa=(-4, -1),
            rho=(0, 0.9),
        ),
    ),
    sim_params=dict(
        n_t=10,
        first_year=2000,
        p_missing=0.0,
        true_params=dict(
            alpha=[1.0],
            phi=0.0,
            log_tau_E=1.0,
            log_tau_O=1.0,
            log_kappa=-2.5,
            rho=0.5,
            theta_z=[0.0, 0.0],
        ),
    ),
    verbose=False,
    verbose_freq=50,
)


POISSON = dict(
    data_params=dict(
        obs_model=0,
    ),
)


PLN = dict(
    data_params=dict(
        obs_model=1,
    ),
    mle_model_params=dict(
        alpha=("free", -1000, 1000),
        phi=("free", -1000, 1000),
        log_tau_E=("free", -1000, 1000),
        log_tau_O=("free", -1000, 1000),
        log_kappa=("free", -1000, 1000),
        rho=("free", -0.999, 0.999),
        theta_z=("free", -1000, 1000),
    ),
    init_params=dict(
        theta_z=[0.0, 0.0],
    ),
    sim_params=dict(
        true_params=dict(
            alpha=[1.5],
            phi=0.0,
            log_tau_E=1.0,
            log_tau_O=1.0,
            log_kappa=-2.5,
            rho=0.5,
            theta_z=[-1.0, 0.5], # log_sd, log_clustersize
        ),
    ),
)


SMALL_SIM = dict(
    data_params=dict(
        msh_path=None,
        grid=dict(width_km=40, height_km=40, n=4),
        obs_model=0,
    ),
    sim_params=dict(
        n_t=5,
        seed=1,
        p_missing=0.1,
    ),
    multiStart_params=dict(
        n_starts=1,
    ),
    optim_params=dict(
        maxiter=200,
        run_sdreport=True,
    ),
    verbose_freq=10,
)
