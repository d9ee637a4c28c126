import numpy as np
import pytest
from scipy.sparse import csr_matrix, diags

from skfem import MeshTri

from spde_utils import SPDEMatrices, build_spde_matrices
from gompertz_utils import GompertzData


@pytest.fixture
def unit_mesh():
    return MeshTri.init_symmetric().refined(1)


@pytest.fixture
def unit_spde(unit_mesh):
    return build_spde_matrices(unit_mesh)


@pytest.fixture
def grid_mesh():
    # 3 x 3 vertices over a 40 km square
    return MeshTri.init_tensor(np.linspace(0.0, 40.0, 3), np.linspace(0.0, 40.0, 3))


@pytest.fixture
def grid_spde(grid_mesh):
    return build_spde_matrices(grid_mesh)


def diagonal_spde(d):
    """Q(log_kappa) = kappa^4 diag(d)."""
    d = np.asarray(d, dtype=float)
    zero = csr_matrix((d.size, d.size))
    return SPDEMatrices(G0=diags(d).tocsr(), G1=zero, G2=zero)


@pytest.fixture
def one_vertex_data():
    """n_x = 1, n_t = 3, one site observed every year."""
    return GompertzData(
        x_s=np.array([0, 0, 0]),
        c_i=np.array([1.0, 2.0, 3.0]),
        t_i=np.array([0, 1, 2]),
        X_xp=np.ones((1, 1)),
        spde=diagonal_spde([1.0]),
        n_t=3,
    )


@pytest.fixture
def two_vertex_data():
    """n_x = 2, n_t = 3, one site per vertex with one missing count."""
    return GompertzData(
        x_s=np.array([0, 0, 0, 1, 1, 1]),
        c_i=np.array([3.0, 5.0, np.nan, 0.0, 1.0, 2.0]),
        t_i=np.array([0, 1, 2, 0, 1, 2]),
        X_xp=np.ones((2, 1)),
        spde=diagonal_spde([1.0, 2.0]),
        n_t=3,
    )
