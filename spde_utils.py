#!/usr/bin/env python3
"""
spde_utils.py

SPDE structural matrices (scikit-fem) and the sparse precision builder for the
spatial Gompertz model.

Notes:
- Structural matrices follow the alpha=2 SPDE construction (Lindgren et al. 2011):
      G0 = C            (lumped P1 mass matrix, diagonal)
      G1 = G            (P1 stiffness matrix)
      G2 = G C^{-1} G
- Precision matrix:
      Q(kappa) = kappa^4 G0 + 2 kappa^2 G1 + G2,   kappa = exp(log_kappa)
- Derived quantities (Lindgren and Rue 2013):
      Range  = sqrt(8) / kappa
      Sigma  = 1 / sqrt(4 pi tau^2 kappa^2), with pi = 3.141592 (SPDE_PI)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
import logging

from scipy.sparse import csr_matrix, diags, issparse, load_npz, save_npz

import meshio
from skfem import Basis, MeshTri, ElementTriP1, asm, BilinearForm
from skfem.models.poisson import laplace
logging.getLogger("skfem").setLevel(logging.ERROR)


# =============================================================================
# FEM forms
# =============================================================================

@BilinearForm
def mass_form(u, v, w):
    return u * v


# =============================================================================
# Mesh IO
# =============================================================================

def load_mesh_km_from_msh(msh_path: Path) -> MeshTri:
    mi = meshio.read(msh_path)

    tri = None
    for c in mi.cells:
        if c.type == "triangle":
            tri = c.data
            break
    if tri is None:
        raise ValueError("No triangle cells found in .msh.")

    pts = mi.points[:, :2].T
    t = tri.T.astype(np.int64)
    return MeshTri(pts, t)


def mesh_vertices_km(mesh: MeshTri) -> np.ndarray:
    """(n_x, 2) vertex coordinates in mesh units."""
    return np.column_stack([mesh.p[0, :], mesh.p[1, :]]).astype(float)


# =============================================================================
# Structural matrices
# =============================================================================

def _as_csr(M, name: str) -> csr_matrix:
    if issparse(M):
        out = csr_matrix(M, dtype=float)
    else:
        arr = np.asarray(M, dtype=float)
        if arr.ndim != 2:
            raise ValueError(f"{name} must be a 2-D matrix, got ndim={arr.ndim}")
        out = csr_matrix(arr)
    out.sum_duplicates()
    out.sort_indices()
    return out


@dataclass(frozen=True)
class SPDEMatrices:
    """
    The three fixed sparse structural matrices of the SPDE precision.

    Validated on construction: square, identical shape, symmetric (to `sym_tol`
    relative to the largest entry). Shared read-only across evaluations.
    """
    G0: csr_matrix
    G1: csr_matrix
    G2: csr_matrix
    sym_tol: float = 1e-8

    def __post_init__(self):
        mats = {}
        for name in ("G0", "G1", "G2"):
            M = _as_csr(getattr(self, name), name)
            if M.shape[0] != M.shape[1]:
                raise ValueError(f"{name} must be square, got shape {M.shape}")
            mats[name] = M

        shapes = {name: M.shape for name, M in mats.items()}
        if len(set(shapes.values())) != 1:
            raise ValueError(f"G0, G1, G2 must share one shape, got {shapes}")
        if mats["G0"].shape[0] < 1:
            raise ValueError("Structural matrices must have at least one vertex.")

        for name, M in mats.items():
            if not np.all(np.isfinite(M.data)):
                raise ValueError(f"{name} has non-finite entries")
            scale = max(float(np.max(np.abs(M.data))) if M.nnz else 0.0, 1.0)
            asym = abs(M - M.T)
            if asym.nnz and float(asym.max()) > self.sym_tol * scale:
                raise ValueError(f"{name} is not symmetric (max |M - M^T| = {float(asym.max()):.3e})")
            object.__setattr__(self, name, M)

    @property
    def n_x(self) -> int:
        return int(self.G0.shape[0])

    def precision(self, log_kappa: float) -> csr_matrix:
        return precision_matrix(self, log_kappa)

    def save_npz(self, out_path: Path) -> None:
        """Writes <stem>_G0.npz, <stem>_G1.npz, <stem>_G2.npz next to out_path."""
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        for name in ("G0", "G1", "G2"):
            save_npz(out_path.with_name(f"{out_path.stem}_{name}.npz"), getattr(self, name))

    @classmethod
    def load_npz(cls, in_path: Path) -> "SPDEMatrices":
        in_path = Path(in_path)
        mats = [load_npz(in_path.with_name(f"{in_path.stem}_{name}.npz")) for name in ("G0", "G1", "G2")]
        return cls(*mats)


def build_spde_matrices(mesh: MeshTri) -> SPDEMatrices:
    """
    Assemble G0, G1, G2 on a P1 basis over an existing triangulation.

    The mass matrix is row-lumped so that C^{-1} is diagonal and G2 stays sparse.
    """
    basis = Basis(mesh, ElementTriP1())

    M: csr_matrix = asm(mass_form, basis).tocsr()
    K: csr_matrix = asm(laplace, basis).tocsr()

    c = np.asarray(M.sum(axis=1)).ravel()
    if np.any(c <= 0.0):
        raise ValueError("Lumped mass has non-positive entries (degenerate triangles?).")

    C = diags(c).tocsr()
    C_inv = diags(1.0 / c).tocsr()
    G2 = (K @ C_inv @ K).tocsr()
    # symmetrise round-off from the triple product
    G2 = (0.5 * (G2 + G2.T)).tocsr()

    return SPDEMatrices(G0=C, G1=K, G2=G2)


def spde_matrices_from_msh(msh_path: Path) -> Tuple[MeshTri, SPDEMatrices]:
    mesh = load_mesh_km_from_msh(msh_path)
    return mesh, build_spde_matrices(mesh)


# =============================================================================
# Precision builder (host side; the differentiable version lives in gmrf_utils)
# =============================================================================

def precision_matrix(spde: SPDEMatrices, log_kappa: float) -> csr_matrix:
    kappa2 = float(np.exp(2.0 * float(log_kappa)))
    kappa4 = kappa2 * kappa2
    return (kappa4 * spde.G0 + 2.0 * kappa2 * spde.G1 + spde.G2).tocsr()


def precision_dlogkappa(spde: SPDEMatrices, log_kappa: float) -> csr_matrix:
    """dQ / d log_kappa = 4 kappa^4 G0 + 4 kappa^2 G1."""
    kappa2 = float(np.exp(2.0 * float(log_kappa)))
    return (4.0 * kappa2 * kappa2 * spde.G0 + 4.0 * kappa2 * spde.G1).tocsr()


# =============================================================================
# Derived quantities
# =============================================================================

ArrayLike = Union[float, np.ndarray]

# pi to six decimals in the reported SigmaE / SigmaO
SPDE_PI = 3.141592


def spde_range(log_kappa: ArrayLike, xp=np) -> ArrayLike:
    return xp.sqrt(8.0) / xp.exp(log_kappa)


def spde_marginal_sd(log_tau: ArrayLike, log_kappa: ArrayLike, xp=np) -> ArrayLike:
    return 1.0 / xp.sqrt(4.0 * SPDE_PI * xp.exp(2.0 * log_tau) * xp.exp(2.0 * log_kappa))


def log_kappa_from_range(range_: float) -> float:
    return float(np.log(np.sqrt(8.0) / float(range_)))


def log_tau_from_sd(sd: float, log_kappa: float) -> float:
    # sd^2 = 1 / (4 pi tau^2 kappa^2)
    return float(-0.5 * np.log(4.0 * SPDE_PI) - np.log(float(sd)) - float(log_kappa))
