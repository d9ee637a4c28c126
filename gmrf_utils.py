#!/usr/bin/env python3
"""
gmrf_utils.py

GMRF negative log-density for the SPDE precision, differentiable in JAX.

    NLL(v) = -0.5 log|Q| + 0.5 v^T Q v + (n/2) log(2 pi)

Notes:
- Q v is evaluated as three sparse (BCOO) products, so Q is never densified.
- log|Q| comes from a sparse LU (scipy/SuperLU) in symmetric mode with diagonal
  pivoting only. For a symmetric matrix this succeeds with all pivots > 0 iff Q
  is positive definite; otherwise the log-determinant is NaN.
- log|Q| is exposed to JAX as a custom_jvp primitive of log_kappa:
      d log|Q| / d log_kappa = tr(Q^{-1} dQ/dlog_kappa)
  The trace only needs Q^{-1} on the pattern of Q, read from the selected
  inverse of a sparse Cholesky factor (linalg_utils). First-order only;
  curvature in log_kappa is taken by finite differences of the gradient
  (see laplace_utils.sdreport).
"""

from __future__ import annotations

from typing import Callable, Optional, Tuple

import numpy as np

import jax
import jax.numpy as jnp
from jax.experimental import sparse as jsparse

from spde_utils import SPDEMatrices, precision_matrix, precision_dlogkappa
from linalg_utils import LOG_2PI, BlockPattern, sparse_logdet


# =============================================================================
# Host-side log-determinant
# =============================================================================

def precision_pattern(spde: SPDEMatrices) -> BlockPattern:
    """Union sparsity pattern of G0, G1, G2 (and the diagonal), one entry per node."""
    S = (abs(spde.G0) + abs(spde.G1) + abs(spde.G2)).tocoo()
    diag = np.arange(spde.n_x)
    return BlockPattern(
        np.concatenate([S.row, diag]), np.concatenate([S.col, diag]),
        n=spde.n_x, n_nodes=spde.n_x,
    )


def logdet_and_derivative(
    spde: SPDEMatrices,
    log_kappa: float,
    pattern: Optional[BlockPattern] = None,
) -> Tuple[float, float]:
    """
    log|Q(log_kappa)| and its derivative in log_kappa.
    """
    pattern = precision_pattern(spde) if pattern is None else pattern
    Q = precision_matrix(spde, log_kappa)
    chol = pattern.factor(pattern.values_of(Q))
    if chol is None:
        return float("nan"), float("nan")
    dQ = precision_dlogkappa(spde, log_kappa)
    return chol.logdet, chol.trace_product(dQ)


def _make_logdet_primitive(spde: SPDEMatrices, pattern: BlockPattern) -> Callable:
    out_value = jax.ShapeDtypeStruct((), jnp.float64)
    out_pair = (jax.ShapeDtypeStruct((), jnp.float64), jax.ShapeDtypeStruct((), jnp.float64))

    def _host_value(log_kappa):
        Q = precision_matrix(spde, float(log_kappa))
        return np.asarray(sparse_logdet(Q), dtype=np.float64)

    def _host_pair(log_kappa):
        val, dval = logdet_and_derivative(spde, float(log_kappa), pattern)
        return np.asarray(val, dtype=np.float64), np.asarray(dval, dtype=np.float64)

    @jax.custom_jvp
    def logdet_q(log_kappa):
        return jax.pure_callback(_host_value, out_value, log_kappa)

    @logdet_q.defjvp
    def _logdet_q_jvp(primals, tangents):
        (log_kappa,) = primals
        (dlog_kappa,) = tangents
        val, dval = jax.pure_callback(_host_pair, out_pair, log_kappa)
        return val, dval * dlog_kappa

    return logdet_q


# =============================================================================
# Differentiable precision operator
# =============================================================================

class SPDEPrecision:
    """
    Q(log_kappa) = kappa^4 G0 + 2 kappa^2 G1 + G2 as a JAX operator.

    Holds BCOO copies of the structural matrices, the symbolic factorization
    of their pattern and the log-determinant primitive. One instance per
    dataset; evaluation state is not kept.
    """

    def __init__(self, spde: SPDEMatrices):
        self.spde = spde
        self.n_x = spde.n_x
        self._G0 = jsparse.BCOO.from_scipy_sparse(spde.G0)
        self._G1 = jsparse.BCOO.from_scipy_sparse(spde.G1)
        self._G2 = jsparse.BCOO.from_scipy_sparse(spde.G2)
        self.pattern = precision_pattern(spde)
        self.logdet = _make_logdet_primitive(spde, self.pattern)

    def matvec(self, log_kappa, v):
        kappa2 = jnp.exp(2.0 * log_kappa)
        kappa4 = kappa2 * kappa2
        return kappa4 * (self._G0 @ v) + 2.0 * kappa2 * (self._G1 @ v) + self._G2 @ v

    def quad_form(self, log_kappa, v):
        """v^T Q v, per column when v is (n_x, k)."""
        return jnp.sum(v * self.matvec(log_kappa, v), axis=0)

    def dense(self, log_kappa: float) -> np.ndarray:
        return precision_matrix(self.spde, log_kappa).toarray()


def gmrf_quad_part(prec: SPDEPrecision, log_kappa, v):
    """0.5 v^T Q v + (n/2) log 2pi; the part of the GMRF NLL that depends on v."""
    n = v.shape[0]
    return 0.5 * prec.quad_form(log_kappa, v) + 0.5 * n * LOG_2PI


def gmrf_logdet_part(prec: SPDEPrecision, log_kappa):
    """-0.5 log|Q| for one field."""
    return -0.5 * prec.logdet(log_kappa)


def gmrf_nll(prec: SPDEPrecision, log_kappa, v):
    """
    Zero-mean GMRF negative log-density with precision Q(log_kappa).

    v: (n_x,) -> scalar; (n_x, k) -> (k,) one value per column, all scored
    against the same Q.
    """
    return gmrf_logdet_part(prec, log_kappa) + gmrf_quad_part(prec, log_kappa, v)
