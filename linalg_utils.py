#!/usr/bin/env python3
"""
linalg_utils.py

Sparse symmetric positive-definite linear algebra shared by the GMRF and
Laplace layers.

- factor_spd / sparse_logdet: SuperLU in symmetric mode with diagonal pivots
  only; None / NaN when the matrix is not positive definite.
- BlockPattern / BlockCholesky: Cholesky factorization on a fixed sparsity
  pattern whose unknowns are grouped into graph nodes of b entries each
  (index k belongs to node k % n_nodes, slot k // n_nodes). Blocks are dense
  b x b; the node graph is ordered by SuperLU's minimum-degree permutation.
  Provides log|A|, solves and the selected inverse (Takahashi recursion), i.e.
  the entries of A^{-1} on the pattern of the factor.
- make_sparse_logdet: log|A| as a JAX function of the stored values of A on a
  BlockPattern; its gradient is A^{-1} on the pattern.

JAX runs in 64-bit mode once this module is imported.
"""

from __future__ import annotations

from typing import Callable, List, Optional

import numpy as np

import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp

from scipy.linalg import solve_triangular
from scipy.sparse import coo_matrix, csr_matrix, diags, issparse
from scipy.sparse.linalg import splu


LOG_2PI = float(np.log(2.0 * np.pi))


# =============================================================================
# SuperLU in symmetric mode
# =============================================================================

def factor_spd(Q: csr_matrix):
    """
    Sparse LU restricted to symmetric permutations and diagonal pivots.
    Returns None when Q is singular or not positive definite.
    """
    try:
        lu = splu(
            Q.tocsc(),
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options=dict(SymmetricMode=True),
        )
    except RuntimeError:
        # "Factor is exactly singular"
        return None

    if not np.array_equal(lu.perm_r, lu.perm_c):
        return None
    d = lu.U.diagonal()
    if not np.all(np.isfinite(d)) or np.any(d <= 0.0):
        return None
    return lu


def sparse_logdet(Q: csr_matrix) -> float:
    lu = factor_spd(Q)
    if lu is None:
        return float("nan")
    return float(np.sum(np.log(lu.U.diagonal())))


# =============================================================================
# Symbolic analysis
# =============================================================================

def _fill_reducing_order(node_r: np.ndarray, node_c: np.ndarray, m: int) -> np.ndarray:
    """
    Elimination position of every node (node -> position), taken from SuperLU's
    minimum-degree column permutation of a diagonally dominant matrix with the
    node graph's pattern.
    """
    off = node_r != node_c
    G = coo_matrix((np.ones(int(off.sum())), (node_r[off], node_c[off])), shape=(m, m)).tocsc()
    G.sum_duplicates()
    G.data[:] = -1.0
    degree = np.asarray(-G.sum(axis=1)).ravel()
    M = (G + diags(degree + 1.0)).tocsc()
    lu = splu(M, permc_spec="MMD_AT_PLUS_A", diag_pivot_thresh=0.0, options=dict(SymmetricMode=True))
    return np.asarray(lu.perm_c, dtype=np.int64)


def _symbolic_factor(P_r: np.ndarray, P_c: np.ndarray, m: int) -> List[np.ndarray]:
    """
    Row structure below the diagonal of every column of the (node-level)
    Cholesky factor, in elimination positions. Children in the elimination
    tree pass their structure to their parent.
    """
    below = P_r > P_c
    A = coo_matrix((np.ones(int(below.sum())), (P_r[below], P_c[below])), shape=(m, m)).tocsc()
    A.sum_duplicates()

    children: List[List[int]] = [[] for _ in range(m)]
    struct: List[np.ndarray] = []
    for j in range(m):
        parts = [A.indices[A.indptr[j]:A.indptr[j + 1]].astype(np.int64)]
        for c in children[j]:
            parts.append(struct[c][1:])     # struct[c][0] == j
        s = np.unique(np.concatenate(parts))
        struct.append(s)
        if s.size:
            children[int(s[0])].append(j)
    return struct


class BlockPattern:
    """
    Fixed symmetric sparsity pattern of an n x n matrix with its symbolic
    block factorization.

    Stored entries are kept in CSR order (row-major, sorted columns); `values`
    arrays passed to factor()/matrix() follow that order. The pattern is
    symmetrised on construction.
    """

    def __init__(self, rows, cols, n: int, n_nodes: int):
        n = int(n)
        m = int(n_nodes)
        if m < 1 or n % m:
            raise ValueError(f"n={n} is not a multiple of n_nodes={m}")
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        if rows.shape != cols.shape:
            raise ValueError("rows and cols differ in length")
        if rows.size and (min(rows.min(), cols.min()) < 0 or max(rows.max(), cols.max()) >= n):
            raise ValueError(f"pattern indices must lie in [0, {n})")

        self.n = n
        self.m = m
        self.b = n // m

        keys = np.unique(np.concatenate([rows * n + cols, cols * n + rows]))
        self.keys = keys
        self.rows = keys // n
        self.cols = keys % n
        self.nnz = int(keys.size)
        self.indptr = np.concatenate([[0], np.cumsum(np.bincount(self.rows, minlength=n))]).astype(np.int64)

        node_r, node_c = self.rows % m, self.cols % m
        self.position = _fill_reducing_order(node_r, node_c, m)
        P_r, P_c = self.position[node_r], self.position[node_c]
        self.struct = _symbolic_factor(P_r, P_c, m)

        sizes = np.array([s.size for s in self.struct], dtype=np.int64)
        self.start = np.concatenate([[0], np.cumsum(1 + sizes)]).astype(np.int64)
        block_keys = np.empty(int(self.start[-1]), dtype=np.int64)
        for p, s in enumerate(self.struct):
            block_keys[self.start[p]] = p * m + p
            block_keys[self.start[p] + 1:self.start[p + 1]] = p * m + s
        self.block_keys = block_keys

        # stored entries that land in the lower block triangle (diagonal blocks in full)
        lower = P_r >= P_c
        b = self.b
        blk = self._block_index(P_c[lower], P_r[lower])
        self._entry_sel = np.flatnonzero(lower)
        self._entry_flat = (blk * b + self.rows[lower] // m) * b + self.cols[lower] // m

    @property
    def n_blocks(self) -> int:
        return int(self.block_keys.size)

    def _block_index(self, col_pos, row_pos) -> np.ndarray:
        key = np.asarray(col_pos, dtype=np.int64) * self.m + np.asarray(row_pos, dtype=np.int64)
        idx = np.minimum(np.searchsorted(self.block_keys, key), self.block_keys.size - 1)
        if not np.array_equal(self.block_keys[idx], key):
            raise ValueError("block outside the factor pattern")
        return idx

    def positions(self, rows, cols) -> np.ndarray:
        """Index of each (row, col) in the stored-value order."""
        key = np.asarray(rows, dtype=np.int64) * self.n + np.asarray(cols, dtype=np.int64)
        idx = np.minimum(np.searchsorted(self.keys, key), max(self.nnz - 1, 0))
        if key.size and not np.array_equal(self.keys[idx], key):
            raise ValueError("entry outside the sparsity pattern")
        return idx

    def values_of(self, M) -> np.ndarray:
        """Stored values of a sparse matrix whose pattern is contained in this one."""
        if not issparse(M):
            raise ValueError("expected a scipy sparse matrix")
        c = M.tocoo()
        out = np.zeros(self.nnz)
        np.add.at(out, self.positions(c.row, c.col), c.data)
        return out

    def matrix(self, values) -> csr_matrix:
        return csr_matrix((np.asarray(values, dtype=float), self.cols, self.indptr), shape=(self.n, self.n))

    def factor(self, values) -> Optional["BlockCholesky"]:
        """Cholesky factor of the matrix with these stored values; None if not positive definite."""
        values = np.asarray(values, dtype=float)
        if values.shape != (self.nnz,) or not np.all(np.isfinite(values)):
            return None

        b = self.b
        L = np.zeros((self.n_blocks, b, b))
        L.reshape(-1)[self._entry_flat] = values[self._entry_sel]

        logdet = 0.0
        for p in range(self.m):
            s0, s1 = self.start[p], self.start[p + 1]
            try:
                Lpp = np.linalg.cholesky(L[s0])
            except np.linalg.LinAlgError:
                return None
            L[s0] = Lpp
            logdet += 2.0 * float(np.sum(np.log(np.diag(Lpp))))

            R = self.struct[p]
            if R.size == 0:
                continue
            k = R.size
            C = solve_triangular(Lpp, L[s0 + 1:s1].reshape(-1, b).T, lower=True).T
            L[s0 + 1:s1] = C.reshape(k, b, b)

            # Schur update of the trailing blocks R x R (lower triangle)
            S = (C @ C.T).reshape(k, b, k, b).transpose(0, 2, 1, 3)
            kk, jj = np.tril_indices(k)
            L[self._block_index(R[jj], R[kk])] -= S[kk, jj]

        if not np.isfinite(logdet):
            return None
        return BlockCholesky(self, L, logdet)


# =============================================================================
# Numeric factor
# =============================================================================

class BlockCholesky:
    """
    A = L L^T on a BlockPattern. L holds one b x b block per stored block of
    the factor (diagonal blocks lower triangular).
    """

    def __init__(self, pattern: BlockPattern, L: np.ndarray, logdet: float):
        self.pattern = pattern
        self.L = L
        self.logdet = float(logdet)
        self._Z: Optional[np.ndarray] = None

    def _to_blocks(self, y: np.ndarray) -> np.ndarray:
        pat = self.pattern
        Y = np.empty((pat.m, pat.b))
        Y[pat.position] = y.reshape(pat.b, pat.m).T
        return Y

    def _from_blocks(self, Y: np.ndarray) -> np.ndarray:
        return Y[self.pattern.position].T.reshape(-1)

    def solve(self, y) -> np.ndarray:
        pat = self.pattern
        L, b = self.L, pat.b
        y = np.asarray(y, dtype=float)
        if y.shape != (pat.n,):
            raise ValueError(f"right-hand side must have shape ({pat.n},), got {y.shape}")
        Y = self._to_blocks(y)

        for p in range(pat.m):
            s0, s1 = pat.start[p], pat.start[p + 1]
            Y[p] = solve_triangular(L[s0], Y[p], lower=True)
            R = pat.struct[p]
            if R.size:
                Y[R] -= (L[s0 + 1:s1].reshape(-1, b) @ Y[p]).reshape(-1, b)

        for p in reversed(range(pat.m)):
            s0, s1 = pat.start[p], pat.start[p + 1]
            R = pat.struct[p]
            rhs = Y[p]
            if R.size:
                rhs = rhs - L[s0 + 1:s1].reshape(-1, b).T @ Y[R].reshape(-1)
            Y[p] = solve_triangular(L[s0], rhs, lower=True, trans="T")

        return self._from_blocks(Y)

    def selected_inverse(self) -> np.ndarray:
        """
        Blocks of Z = A^{-1} on the factor pattern (same layout as L).

        Takahashi recursion, last node first:
            Z_Rp = -Z_RR L_Rp L_pp^{-1}
            Z_pp = L_pp^{-T} L_pp^{-1} - L_pp^{-T} L_Rp^T Z_Rp
        """
        if self._Z is not None:
            return self._Z

        pat = self.pattern
        L, b = self.L, pat.b
        eye = np.eye(b)
        Z = np.zeros_like(L)
        for p in reversed(range(pat.m)):
            s0, s1 = pat.start[p], pat.start[p + 1]
            Linv = solve_triangular(L[s0], eye, lower=True)
            R = pat.struct[p]
            if R.size == 0:
                Z[s0] = Linv.T @ Linv
                continue

            k = R.size
            kk, jj = np.divmod(np.arange(k * k), k)
            lo = np.minimum(R[kk], R[jj])
            hi = np.maximum(R[kk], R[jj])
            G = Z[pat._block_index(lo, hi)]
            flip = R[kk] < R[jj]
            G[flip] = G[flip].transpose(0, 2, 1)
            ZRR = G.reshape(k, k, b, b).transpose(0, 2, 1, 3).reshape(k * b, k * b)

            C = L[s0 + 1:s1].reshape(-1, b)
            ZRp = -(ZRR @ C) @ Linv
            Zpp = Linv.T @ Linv - Linv.T @ (C.T @ ZRp)
            Z[s0] = 0.5 * (Zpp + Zpp.T)
            Z[s0 + 1:s1] = ZRp.reshape(k, b, b)

        self._Z = Z
        return Z

    def inverse_entries(self, rows, cols) -> np.ndarray:
        """(A^{-1})[rows, cols] for entries inside the factor pattern."""
        pat = self.pattern
        Z = self.selected_inverse()
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        m = pat.m
        P_r, P_c = pat.position[rows % m], pat.position[cols % m]
        slot_r, slot_c = rows // m, cols // m

        swap = P_r < P_c
        hi = np.where(swap, P_c, P_r)
        lo = np.where(swap, P_r, P_c)
        s_hi = np.where(swap, slot_c, slot_r)
        s_lo = np.where(swap, slot_r, slot_c)
        return Z[pat._block_index(lo, hi), s_hi, s_lo]

    def trace_product(self, M) -> float:
        """tr(A^{-1} M) for a sparse symmetric M inside the pattern."""
        c = M.tocoo()
        return float(np.sum(c.data * self.inverse_entries(c.row, c.col)))


# =============================================================================
# Differentiable log-determinant
# =============================================================================

def make_sparse_logdet(pattern: BlockPattern) -> Callable:
    """
    values -> log|A| for the symmetric matrix with these stored values.

    d log|A| / dA_ab = (A^{-1})_ab, read from the selected inverse; NaN value
    and gradient when A is not positive definite.
    """
    out_value = jax.ShapeDtypeStruct((), jnp.float64)
    out_pair = (out_value, jax.ShapeDtypeStruct((pattern.nnz,), jnp.float64))

    def _host_value(values):
        chol = pattern.factor(np.asarray(values))
        return np.asarray(np.nan if chol is None else chol.logdet, dtype=np.float64)

    def _host_pair(values):
        chol = pattern.factor(np.asarray(values))
        if chol is None:
            return np.asarray(np.nan, dtype=np.float64), np.full(pattern.nnz, np.nan)
        grad = chol.inverse_entries(pattern.rows, pattern.cols)
        return np.asarray(chol.logdet, dtype=np.float64), np.asarray(grad, dtype=np.float64)

    @jax.custom_vjp
    def logdet(values):
        return jax.pure_callback(_host_value, out_value, values)

    def _logdet_fwd(values):
        val, inv = jax.pure_callback(_host_pair, out_pair, values)
        return val, inv

    def _logdet_bwd(inv, ct):
        return (ct * inv,)

    logdet.defvjp(_logdet_fwd, _logdet_bwd)
    return logdet
