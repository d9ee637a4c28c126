#!/usr/bin/env python3
"""
laplace_utils.py

Parameter interface for the spatial Gompertz model: an objective (fn, gr, report) with
the random effects (Epsilon_input, Omega_input) integrated out by the Laplace
approximation, plus delta-method standard errors.

    fn(theta) = f(u*, theta) + 0.5 log|H(u*, theta)| - (n_r / 2) log(2 pi)
    u*        = argmin_u f(u, theta),   H = d^2 f / du^2

Notes:
- H is assembled sparsely (RandomEffectHessian) and factored with the block
  Cholesky of linalg_utils, one block per mesh vertex holding its n_t + 1
  random effects. Nothing of size n_r x n_r is formed.
- Inner mode: damped Newton on f(., theta) with step halving, warm-started from
  the previous mode.
- Gradient in theta by the implicit function theorem. With
  F(theta, u) = f(u, theta) + 0.5 log|H(u, theta)|,
      dfn/dtheta = F_theta - d/dtheta [ grad_u f(u*, theta) . s ],   s = H*^{-1} F_u
  where s is solved with the factor of H* and d log|H| comes from its selected
  inverse.
- Non-finite values are reported as fn = +inf and gr = NaN so an outer
  optimizer can reject the trial point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

import jax
import jax.numpy as jnp

from scipy.sparse import csr_matrix

from gompertz_utils import (
    FIXED_NAMES,
    RANDOM_NAMES,
    GompertzData,
    GompertzModel,
    check_parameters,
    default_parameters,
)
from linalg_utils import LOG_2PI, BlockCholesky, BlockPattern, make_sparse_logdet


# =============================================================================
# Parameter layout
# =============================================================================

class ParameterLayout:
    """
    Flat-vector layout of the parameter list.

    Fixed vector: alpha, phi, log_tau_E, log_tau_O, log_kappa, rho, theta_z.
    Random vector: Epsilon_input (column-major, one year after another), Omega_input.
    With random=False every parameter is in the fixed vector (same order).
    """

    def __init__(self, data: GompertzData, random: bool = True):
        self.n_x = data.n_x
        self.n_t = data.n_t
        self.shapes: Dict[str, Tuple[int, ...]] = {
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
        self.random = bool(random)
        if self.random:
            self.fixed_names: Tuple[str, ...] = FIXED_NAMES
            self.random_names: Tuple[str, ...] = RANDOM_NAMES
        else:
            self.fixed_names = FIXED_NAMES + RANDOM_NAMES
            self.random_names = ()

        self.fixed_slices = self._slices(self.fixed_names)
        self.random_slices = self._slices(self.random_names)
        self.n_fixed = sum(self._size(n) for n in self.fixed_names)
        self.n_random = sum(self._size(n) for n in self.random_names)

    def _size(self, name: str) -> int:
        return int(np.prod(self.shapes[name], dtype=np.int64))

    def _slices(self, names: Sequence[str]) -> Dict[str, slice]:
        out: Dict[str, slice] = {}
        pos = 0
        for n in names:
            k = self._size(n)
            out[n] = slice(pos, pos + k)
            pos += k
        return out

    @property
    def fixed_labels(self) -> List[str]:
        """One label per fixed-vector entry; vector parameters repeat their name."""
        labels: List[str] = []
        for n in self.fixed_names:
            labels.extend([n] * self._size(n))
        return labels

    def index_of(self, name: str) -> int:
        """Position of a scalar fixed parameter."""
        sl = self.fixed_slices[name]
        if sl.stop - sl.start != 1:
            raise ValueError(f"{name} is not a scalar parameter")
        return sl.start

    # -------------------------
    # pack / unpack
    # -------------------------
    def _flat(self, name: str, value) -> np.ndarray:
        arr = np.asarray(value, dtype=float)
        if name == "Epsilon_input":
            return arr.reshape(self.shapes[name]).T.reshape(-1)
        return arr.reshape(-1)

    def _shape_back(self, name: str, flat):
        if name == "Epsilon_input":
            return flat.reshape(self.n_t, self.n_x).T
        return flat.reshape(self.shapes[name])

    def pack_fixed(self, params: Dict[str, Any]) -> np.ndarray:
        if not self.fixed_names:
            return np.zeros(0)
        return np.concatenate([self._flat(n, params[n]) for n in self.fixed_names])

    def pack_random(self, params: Dict[str, Any]) -> np.ndarray:
        if not self.random_names:
            return np.zeros(0)
        return np.concatenate([self._flat(n, params[n]) for n in self.random_names])

    def unpack(self, theta, u) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for n, sl in self.fixed_slices.items():
            out[n] = self._shape_back(n, theta[sl])
        for n, sl in self.random_slices.items():
            out[n] = self._shape_back(n, u[sl])
        return out

    def unpack_numpy(self, theta, u) -> Dict[str, np.ndarray]:
        return {k: np.asarray(v) for k, v in self.unpack(np.asarray(theta, float), np.asarray(u, float)).items()}


# =============================================================================
# Random-effect Hessian
# =============================================================================

class RandomEffectHessian:
    """
    Hessian of random_part() in the random vector u, built sparsely:

        H = I_(n_t+1) (x) Q(log_kappa) + A^T diag(w) A

    A = d log_chat_i / du is linear in u. Record i reaches back along its chain
    of records to the last t_i == 0 record j0:
        d log_chat_i / d Epsilon_input[x_j, t_j] = rho^(i-j) / tau_E
        d log_chat_i / d Omega_input[x_j]        = rho^(i-j) / tau_O   (j > j0)
                                                 = rho^(i-j) / (tau_O (1 - rho))   (j = j0)
    w_i is the second derivative of -log p(c_i | log_chat_i); missing counts
    have w_i = 0 and are left out of the pattern.

    The sparsity pattern is fixed per dataset; values(params) returns the stored
    values in the pattern's order as a JAX function of all parameters.
    """

    def __init__(self, model: GompertzModel):
        data = model.data
        self.model = model
        n_x, n_t = data.n_x, data.n_t
        n_fields = n_t + 1
        n = n_x * n_fields
        self.n = n

        # structural matrices, repeated over the n_t + 1 fields
        k_rows, k_cols, self._g = [], [], []
        offset_field = np.arange(n_fields, dtype=np.int64) * n_x
        for G in (data.spde.G0, data.spde.G1, data.spde.G2):
            c = G.tocoo()
            off = np.repeat(offset_field, c.nnz)
            k_rows.append(np.tile(c.row.astype(np.int64), n_fields) + off)
            k_cols.append(np.tile(c.col.astype(np.int64), n_fields) + off)
            self._g.append(jnp.asarray(np.tile(c.data, n_fields)))

        # A: one raw term per (record, ancestor record, field)
        x_s, t_i = data.x_s, data.t_i
        observed = ~np.isnan(data.c_i)
        rec, col, power, omega, start = [], [], [], [], []
        chain: List[int] = []
        for i in range(data.n_i):
            if t_i[i] == 0:
                chain = []
            chain.append(i)
            if not observed[i]:
                continue
            for j in chain:
                x, t = int(x_s[j]), int(t_i[j])
                rec += [i, i]
                col += [t * n_x + x, n_t * n_x + x]
                power += [i - j, i - j]
                omega += [False, True]
                start += [t == 0, t == 0]

        rec = np.asarray(rec, dtype=np.int64)
        col = np.asarray(col, dtype=np.int64)
        self._power = jnp.asarray(np.asarray(power, dtype=np.int64))
        self._omega = jnp.asarray(np.asarray(omega, dtype=bool))
        self._start = jnp.asarray(np.asarray(start, dtype=bool))
        self._max_power = int(np.max(power, initial=0))

        keys, uid = np.unique(rec * n + col, return_inverse=True)
        a_rec, a_col = keys // n, keys % n
        self._uid = jnp.asarray(uid.reshape(-1))
        self.n_a = int(keys.size)

        # A^T diag(w) A: every pair of entries within a record
        _, first, counts = np.unique(a_rec, return_index=True, return_counts=True)
        e1, e2 = [], []
        for f, k in zip(first, counts):
            e = np.arange(f, f + k)
            e1.append(np.repeat(e, k))
            e2.append(np.tile(e, k))
        e1 = np.concatenate(e1) if e1 else np.zeros(0, dtype=np.int64)
        e2 = np.concatenate(e2) if e2 else np.zeros(0, dtype=np.int64)
        self._e1 = jnp.asarray(e1)
        self._e2 = jnp.asarray(e2)
        self._pair_rec = jnp.asarray(a_rec[e1])

        rows = np.concatenate(k_rows + [a_col[e1]])
        cols = np.concatenate(k_cols + [a_col[e2]])
        diag = np.arange(n, dtype=np.int64)
        self.pattern = BlockPattern(np.concatenate([rows, diag]), np.concatenate([cols, diag]), n=n, n_nodes=n_x)
        self._positions = jnp.asarray(self.pattern.positions(rows, cols))
        self.diag_positions = self.pattern.positions(diag, diag)
        self.logdet = make_sparse_logdet(self.pattern)

    def observation_weights(self, params: Dict[str, Any]):
        """w_i = d^2 (-log p(c_i | eta)) / d eta^2 at eta = log_chat_i."""
        model = self.model
        log_chat_i = model.latent(params)["log_chat_i"]

        def nll(eta):
            return jnp.sum(model.jnll_i(params, eta))

        _, w = jax.jvp(jax.grad(nll), (log_chat_i,), (jnp.ones_like(log_chat_i),))
        return w

    def values(self, params: Dict[str, Any]):
        rho = params["rho"]
        kappa2 = jnp.exp(2.0 * params["log_kappa"])
        coef = (kappa2 * kappa2, 2.0 * kappa2, 1.0)

        pows = jnp.cumprod(jnp.concatenate([jnp.ones(1), jnp.full(self._max_power, rho)]))
        scale = jnp.where(
            self._omega,
            jnp.exp(-params["log_tau_O"]) * jnp.where(self._start, 1.0 / (1.0 - rho), 1.0),
            jnp.exp(-params["log_tau_E"]),
        )
        a = jax.ops.segment_sum(pows[self._power] * scale, self._uid, num_segments=self.n_a)
        w = self.observation_weights(params)

        parts = [c * g for c, g in zip(coef, self._g)]
        parts.append(a[self._e1] * w[self._pair_rec] * a[self._e2])
        return jax.ops.segment_sum(jnp.concatenate(parts), self._positions, num_segments=self.pattern.nnz)

    def matrix(self, values) -> csr_matrix:
        return self.pattern.matrix(values)


# =============================================================================
# Inner optimizer config
# =============================================================================

@dataclass
class InnerConfig:
    max_iter: int = 100
    grad_tol: float = 1e-9
    min_step: float = 1e-10
    damping0: float = 1e-8
    damping_max: float = 1e8
    warm_start: bool = True


@dataclass
class InnerResult:
    u: np.ndarray
    H: csr_matrix
    f: float
    n_iter: int
    converged: bool
    max_grad: float
    factor: Optional[BlockCholesky] = None


# =============================================================================
# Objective
# =============================================================================

class GompertzObjective:
    """
    Marginal negative log-likelihood of the fixed parameters for one dataset.

    Attributes / methods:
        par            initial fixed-parameter vector
        fn(par)        Laplace-marginal NLL (joint NLL when random=False)
        gr(par)        gradient of fn
        fn_gr(par)     both, computed once
        evaluate(theta, u)  joint NLL and its gradient w.r.t. (theta, u)
        inner_mode(par)     mode of the random effects
        hessian        RandomEffectHessian (None when random=False)
        report(par)    diagnostics dictionary at the last inner mode
    """

    def __init__(
        self,
        data: GompertzData,
        parameters: Optional[Dict[str, Any]] = None,
        random: bool = True,
        inner_params: Optional[Dict[str, Any]] = None,
        printer: Optional[Callable[[str], None]] = None,
    ):
        self.data = data
        self.model = GompertzModel(data)
        self.layout = ParameterLayout(data, random=random)
        self.inner_cfg = InnerConfig(**(inner_params or {}))
        self.printer = printer

        params = default_parameters(data)
        if parameters:
            unknown = set(parameters) - set(params)
            if unknown:
                raise ValueError(f"Unknown parameters: {sorted(unknown)}")
            params.update({k: np.asarray(v, dtype=float) for k, v in parameters.items()})
        check_parameters(params, data)

        self.par = self.layout.pack_fixed(params)
        self._u_init = self.layout.pack_random(params)
        self._u_last = self._u_init.copy()
        self._last_par: Optional[np.ndarray] = None
        self._last_fn_gr: Optional[Tuple[float, np.ndarray]] = None
        self.n_fn = 0
        self.n_gr = 0

        self._build_functions()

    # -------------------------
    # JAX functions
    # -------------------------
    def _build_functions(self) -> None:
        model = self.model
        layout = self.layout

        def joint(theta, u):
            return model.jnll(layout.unpack(theta, u))

        def rand(theta, u):
            return model.random_part(layout.unpack(theta, u))

        self._joint = jax.jit(joint)
        self._joint_val_grad = jax.jit(jax.value_and_grad(joint, argnums=(0, 1)))
        if not layout.random:
            self.hessian = None
            return

        hessian = RandomEffectHessian(model)
        self.hessian = hessian
        grad_u = jax.grad(rand, argnums=1)

        def hessian_values(theta, u):
            return hessian.values(layout.unpack(theta, u))

        def laplace_terms(theta, u):
            p = layout.unpack(theta, u)
            return model.jnll(p) + 0.5 * hessian.logdet(hessian.values(p))

        def coupling(theta, u, s):
            return jnp.vdot(grad_u(theta, u), s)

        self._rand_val_grad_u = jax.jit(jax.value_and_grad(rand, argnums=1))
        self._hessian_values = jax.jit(hessian_values)
        self._laplace_val_grad = jax.jit(jax.value_and_grad(laplace_terms, argnums=(0, 1)))
        self._coupling_grad = jax.jit(jax.grad(coupling, argnums=0))

    def _log(self, msg: str) -> None:
        if self.printer is not None:
            self.printer(msg)

    def reset_inner(self) -> None:
        """Forget the warm start and the cached (fn, gr) pair."""
        self._u_last = self._u_init.copy()
        self._last_par = None
        self._last_fn_gr = None

    # -------------------------
    # Joint evaluation
    # -------------------------
    def evaluate(self, theta, u=None) -> Tuple[float, np.ndarray]:
        """
        Joint NLL and gradient with respect to the concatenated (theta, u) vector.
        """
        theta = jnp.asarray(np.asarray(theta, dtype=float))
        u = jnp.asarray(self._u_last if u is None else np.asarray(u, dtype=float))
        val, (g_theta, g_u) = self._joint_val_grad(theta, u)
        return float(val), np.concatenate([np.asarray(g_theta), np.asarray(g_u)])

    # -------------------------
    # Inner problem
    # -------------------------
    def _hessian_at(self, theta, u) -> np.ndarray:
        return np.asarray(self._hessian_values(theta, jnp.asarray(u)))

    def _newton_direction(self, values: np.ndarray, g: np.ndarray) -> Optional[np.ndarray]:
        cfg = self.inner_cfg
        pattern = self.hessian.pattern
        diag = self.hessian.diag_positions
        lam = 0.0
        scale = max(float(np.max(np.abs(values[diag]), initial=0.0)), 1.0)
        while lam <= cfg.damping_max * scale:
            damped = values.copy()
            damped[diag] += lam
            chol = pattern.factor(damped)
            if chol is not None:
                return chol.solve(g)
            lam = cfg.damping0 * scale if lam == 0.0 else 10.0 * lam
        return None

    def inner_mode(self, par) -> InnerResult:
        cfg = self.inner_cfg
        theta = jnp.asarray(np.asarray(par, dtype=float))
        u = (self._u_last if cfg.warm_start else self._u_init).copy()

        f, g = self._rand_val_grad_u(theta, jnp.asarray(u))
        f, g = float(f), np.asarray(g)
        n_iter = 0
        converged = bool(np.isfinite(f) and np.all(np.isfinite(g)) and np.max(np.abs(g), initial=0.0) < cfg.grad_tol)

        while not converged and n_iter < cfg.max_iter:
            if not (np.isfinite(f) and np.all(np.isfinite(g))):
                break
            step = self._newton_direction(self._hessian_at(theta, u), g)
            if step is None:
                break

            t = 1.0
            accepted = False
            while t >= cfg.min_step:
                u_new = u - t * step
                f_new, g_new = self._rand_val_grad_u(theta, jnp.asarray(u_new))
                f_new = float(f_new)
                if np.isfinite(f_new) and f_new <= f + 1e-12 * max(1.0, abs(f)):
                    accepted = True
                    break
                t *= 0.5
            if not accepted:
                break

            u, f, g = u_new, f_new, np.asarray(g_new)
            n_iter += 1
            converged = bool(np.max(np.abs(g), initial=0.0) < cfg.grad_tol)

        # a full Newton step that no longer decreases f is the mode to working precision
        if not converged and np.all(np.isfinite(g)):
            converged = bool(np.max(np.abs(g), initial=0.0) < 1e3 * cfg.grad_tol)

        values = self._hessian_at(theta, u)
        return InnerResult(
            u=np.asarray(u, dtype=float),
            H=self.hessian.matrix(values),
            f=float(f),
            n_iter=n_iter,
            converged=converged,
            max_grad=float(np.max(np.abs(g), initial=0.0)) if np.all(np.isfinite(g)) else float("nan"),
            factor=self.hessian.pattern.factor(values),
        )

    # -------------------------
    # Outer interface
    # -------------------------
    def _laplace_ready(self, inner: InnerResult) -> bool:
        if not inner.converged:
            self._log(f"inner mode not converged after {inner.n_iter} iterations (max|g|={inner.max_grad:.3e})")
        elif inner.factor is None:
            self._log("random-effect Hessian at the inner mode is not positive definite")
        else:
            return True
        self._u_last = self._u_init.copy()
        return False

    def fn_gr(self, par) -> Tuple[float, np.ndarray]:
        par = np.asarray(par, dtype=float)
        if self._last_par is not None and self._last_fn_gr is not None and np.array_equal(par, self._last_par):
            return self._last_fn_gr

        self.n_gr += 1
        if not self.layout.random:
            val, g = self._joint_val_grad(jnp.asarray(par), jnp.zeros(0))
            val, grad = float(val), np.asarray(g[0])
        else:
            inner = self.inner_mode(par)
            if not self._laplace_ready(inner):
                val, grad = float("inf"), np.full(par.size, np.nan)
            else:
                theta, u = jnp.asarray(par), jnp.asarray(inner.u)
                v, (g_theta, g_u) = self._laplace_val_grad(theta, u)
                s = inner.factor.solve(np.asarray(g_u))
                coupling = np.asarray(self._coupling_grad(theta, u, jnp.asarray(s)))
                val = float(v) - 0.5 * self.layout.n_random * LOG_2PI
                grad = np.asarray(g_theta) - coupling
                if self.inner_cfg.warm_start and np.isfinite(val):
                    self._u_last = inner.u

        if not (np.isfinite(val) and np.all(np.isfinite(grad))):
            val, grad = float("inf"), np.full(par.size, np.nan)

        self._last_par = par.copy()
        self._last_fn_gr = (val, grad)
        return val, grad

    def fn(self, par) -> float:
        self.n_fn += 1
        par = np.asarray(par, dtype=float)
        if self._last_par is not None and self._last_fn_gr is not None and np.array_equal(par, self._last_par):
            return self._last_fn_gr[0]

        if not self.layout.random:
            val = float(self._joint(jnp.asarray(par), jnp.zeros(0)))
        else:
            inner = self.inner_mode(par)
            if not self._laplace_ready(inner):
                return float("inf")
            joint = float(self._joint(jnp.asarray(par), jnp.asarray(inner.u)))
            val = joint + 0.5 * inner.factor.logdet - 0.5 * self.layout.n_random * LOG_2PI
            if self.inner_cfg.warm_start and np.isfinite(val):
                self._u_last = inner.u
        return val if np.isfinite(val) else float("inf")

    def gr(self, par) -> np.ndarray:
        return self.fn_gr(par)[1]

    def random_mode(self, par=None) -> np.ndarray:
        if not self.layout.random:
            return np.zeros(0)
        par = self.par if par is None else np.asarray(par, dtype=float)
        return self.inner_mode(par).u

    def parameters(self, par=None, u=None) -> Dict[str, np.ndarray]:
        par = self.par if par is None else np.asarray(par, dtype=float)
        u = self.random_mode(par) if u is None else np.asarray(u, dtype=float)
        return self.layout.unpack_numpy(par, u)

    def report(self, par=None) -> Dict[str, np.ndarray]:
        """Diagnostics at par (default: initial par) with random effects at their mode."""
        p = self.parameters(par)
        return self.model.report({k: jnp.asarray(v) for k, v in p.items()})

    def derived_fn(self) -> Callable:
        """theta -> [Range, SigmaE, SigmaO] as a JAX function."""
        layout = self.layout
        model = self.model
        i_kappa = layout.index_of("log_kappa")
        i_tau_E = layout.index_of("log_tau_E")
        i_tau_O = layout.index_of("log_tau_O")

        def derived(theta):
            d = model.derived(dict(
                log_kappa=theta[i_kappa],
                log_tau_E=theta[i_tau_E],
                log_tau_O=theta[i_tau_O],
            ))
            return jnp.stack([d["Range"], d["SigmaE"], d["SigmaO"]])

        return derived


# =============================================================================
# Standard errors
# =============================================================================

DERIVED_NAMES = ("Range", "SigmaE", "SigmaO")


@dataclass
class SDReport:
    par: np.ndarray
    labels: List[str]
    se: np.ndarray
    cov: np.ndarray
    hessian: np.ndarray
    pd_hess: bool
    gradient: np.ndarray
    derived: Dict[str, float] = field(default_factory=dict)
    derived_se: Dict[str, float] = field(default_factory=dict)

    def summary(self) -> Dict[str, Tuple[float, float]]:
        out: Dict[str, Tuple[float, float]] = {}
        for i, (n, v, s) in enumerate(zip(self.labels, self.par, self.se)):
            key = f"{n}[{self.labels[:i].count(n)}]" if self.labels.count(n) > 1 else n
            out[key] = (float(v), float(s))
        for k in self.derived:
            out[k] = (float(self.derived[k]), float(self.derived_se[k]))
        return out


def optim_hessian(gr: Callable[[np.ndarray], np.ndarray], par: np.ndarray, free: np.ndarray, h: float = 1e-4) -> np.ndarray:
    """Central differences of the gradient over the free coordinates, symmetrised."""
    idx = np.flatnonzero(free)
    H = np.zeros((idx.size, idx.size))
    for col, j in enumerate(idx):
        step = h * max(1.0, abs(float(par[j])))
        e = np.zeros_like(par)
        e[j] = step
        g_plus = np.asarray(gr(par + e))[idx]
        g_minus = np.asarray(gr(par - e))[idx]
        H[:, col] = (g_plus - g_minus) / (2.0 * step)
    return 0.5 * (H + H.T)


def sdreport(obj: GompertzObjective, par=None, free: Optional[np.ndarray] = None, h: float = 1e-4) -> SDReport:
    """
    Asymptotic covariance of the fixed parameters from the inverse Hessian of fn,
    and delta-method SEs for Range, SigmaE, SigmaO. Parameters held constant
    (free=False) get zero variance.
    """
    par = obj.par if par is None else np.asarray(par, dtype=float)
    n = par.size
    free = np.ones(n, dtype=bool) if free is None else np.asarray(free, dtype=bool)
    idx = np.flatnonzero(free)

    gradient = obj.gr(par)
    H = optim_hessian(obj.gr, par, free, h=h)

    cov = np.full((n, n), np.nan)
    pd_hess = False
    if np.all(np.isfinite(H)):
        eig = np.linalg.eigvalsh(H) if idx.size else np.zeros(0)
        pd_hess = bool(np.all(eig > 0))
        try:
            cov_free = np.linalg.inv(H) if idx.size else np.zeros((0, 0))
            cov = np.zeros((n, n))
            cov[np.ix_(idx, idx)] = cov_free
        except np.linalg.LinAlgError:
            pass
    # restore the inner warm start at par
    obj.fn_gr(par)

    se = np.sqrt(np.where(np.diag(cov) >= 0, np.diag(cov), np.nan))

    derived = obj.derived_fn()
    d_val = np.asarray(derived(jnp.asarray(par)))
    J = np.asarray(jax.jacobian(derived)(jnp.asarray(par)))
    d_cov = J @ cov @ J.T
    d_se = np.sqrt(np.where(np.diag(d_cov) >= 0, np.diag(d_cov), np.nan))

    return SDReport(
        par=par.copy(),
        labels=obj.layout.fixed_labels,
        se=se,
        cov=cov,
        hessian=H,
        pd_hess=pd_hess,
        gradient=np.asarray(gradient),
        derived={k: float(v) for k, v in zip(DERIVED_NAMES, d_val)},
        derived_se={k: float(v) for k, v in zip(DERIVED_NAMES, d_se)},
    )


# =============================================================================
# Single-call interface
# =============================================================================

def evaluate(
    parameters: Dict[str, Any],
    random_effects: Optional[Dict[str, Any]],
    data: GompertzData,
) -> Tuple[float, np.ndarray]:
    """
    Joint NLL and its gradient for one parameter set.

    parameters: fixed parameters by name; random_effects: Epsilon_input and
    Omega_input (zeros when None). The gradient is ordered as
    ParameterLayout(data).fixed_labels followed by the flattened random effects.
    """
    params = dict(parameters)
    params.update(random_effects or {})
    obj = GompertzObjective(data, parameters=params, random=True)
    return obj.evaluate(obj.par, obj._u_init)
