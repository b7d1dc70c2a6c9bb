from __future__ import annotations

import logging
import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def face_areas(V: np.ndarray, F: np.ndarray) -> np.ndarray:
    v0 = V[F[:, 0]]
    v1 = V[F[:, 1]]
    v2 = V[F[:, 2]]
    return 0.5 * np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1)


def _edge_lengths(V: np.ndarray, F: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    # edge lengths opposite to vertices 0,1,2
    a = np.linalg.norm(V[F[:, 1]] - V[F[:, 2]], axis=1)
    b = np.linalg.norm(V[F[:, 2]] - V[F[:, 0]], axis=1)
    c = np.linalg.norm(V[F[:, 0]] - V[F[:, 1]], axis=1)
    return a, b, c


def _cot_angles_from_edges(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    # Heron's formula for area
    s = 0.5 * (a + b + c)
    area = np.sqrt(np.maximum(s * (s - a) * (s - b) * (s - c), 1e-32))
    # cot(alpha) opposite edge a, etc. Using 4A in denominator (since |u x v| = 2A)
    cot_alpha = (b * b + c * c - a * a) / (4.0 * area)
    cot_beta = (c * c + a * a - b * b) / (4.0 * area)
    cot_gamma = (a * a + b * b - c * c) / (4.0 * area)
    return cot_alpha, cot_beta, cot_gamma


def corner_angles(V: np.ndarray, F: np.ndarray) -> np.ndarray:
    """Return the interior angle at every triangle corner, shape (m,3).

    Column k holds the angle at vertex ``F[:, k]``. Angles come from the law of
    cosines on the opposite edge lengths, clipped to avoid NaN on slivers.
    """
    a, b, c = _edge_lengths(V, F)

    def acos_clipped(x: np.ndarray) -> np.ndarray:
        return np.arccos(np.clip(x, -1.0, 1.0))

    eps = 1e-32
    alpha = acos_clipped((b * b + c * c - a * a) / np.maximum(2.0 * b * c, eps))
    beta = acos_clipped((c * c + a * a - b * b) / np.maximum(2.0 * c * a, eps))
    gamma = acos_clipped((a * a + b * b - c * c) / np.maximum(2.0 * a * b, eps))
    return np.stack([alpha, beta, gamma], axis=1)


def cotangent_laplacian(V: np.ndarray, F: np.ndarray, *, verbose: bool = False) -> sp.csr_matrix:
    """Build symmetric cotangent Laplacian L for a triangle mesh.

    L(i,i) = -sum_{j!=i} L(i,j)
    L(i,j) = -(cot alpha + cot beta)/2 for edge (i,j).

    With this sign convention ``(L V)_i / A_i`` is the mean-curvature normal
    ``2 H n_i`` (A_i the mixed Voronoi vertex area), which is what the
    curvature routines rely on.

    Parameters
    ----------
    V : (n,3) float array
    F : (m,3) int array (triangles)

    Returns
    -------
    L : (n,n) csr_matrix
    """
    n = V.shape[0]
    if verbose:
        logger.info("Building cotangent Laplacian for %d vertices, %d faces", n, F.shape[0])
    a, b, c = _edge_lengths(V, F)
    cot_a, cot_b, cot_c = _cot_angles_from_edges(a, b, c)

    i0, i1, i2 = F[:, 0], F[:, 1], F[:, 2]

    I = np.concatenate([i1, i2, i2, i0, i0, i1])
    J = np.concatenate([i2, i1, i0, i2, i1, i0])
    W = np.concatenate([cot_a, cot_a, cot_b, cot_b, cot_c, cot_c])

    C = sp.coo_matrix((W, (I, J)), shape=(n, n)).tocsr()

    L = -0.5 * C
    diag = -np.array(L.sum(axis=1)).ravel()
    L = (L + sp.diags(diag, format="csr")).tocsr()
    if verbose:
        logger.info("Laplacian built: nnz=%d", L.nnz)
    return L


def mixed_voronoi_areas(V: np.ndarray, F: np.ndarray) -> np.ndarray:
    """Mixed Voronoi area of every vertex, shape (n,).

    Non-obtuse triangles hand each corner its Voronoi share
    ``(|e1|^2 cot + |e2|^2 cot) / 8`` over the two edges meeting there. An
    obtuse triangle gives half its area to the obtuse corner and a quarter to
    each of the others. The areas sum to the surface area.
    """
    n = V.shape[0]
    a, b, c = _edge_lengths(V, F)
    cot_a, cot_b, cot_c = _cot_angles_from_edges(a, b, c)
    areas = face_areas(V, F)

    voronoi = np.stack(
        [
            (c * c * cot_c + b * b * cot_b) / 8.0,
            (c * c * cot_c + a * a * cot_a) / 8.0,
            (b * b * cot_b + a * a * cot_a) / 8.0,
        ],
        axis=1,
    )
    obtuse_corner = np.stack([cot_a, cot_b, cot_c], axis=1) < 0.0
    obtuse = obtuse_corner.any(axis=1)
    share = np.where(obtuse_corner, 0.5, 0.25) * areas[:, None]
    share = np.where(obtuse[:, None], share, voronoi)

    A = np.zeros(n, dtype=float)
    for k in range(3):
        np.add.at(A, F[:, k], share[:, k])
    return A


def lumped_mass_matrix(V: np.ndarray, F: np.ndarray, *, verbose: bool = False) -> sp.csr_matrix:
    """Lumped mass matrix with the mixed Voronoi vertex areas on the diagonal.

    Barycentric thirds overweight the valence-5 vertices of subdivided
    icospheres, which biases ``(L V)_i / A_i`` by several percent there.
    """
    Mdiag = mixed_voronoi_areas(V, F)
    M = sp.diags(Mdiag, format="csr")
    if verbose:
        logger.info("Mass matrix built: positive entries=%d", int(np.count_nonzero(Mdiag > 0)))
    return M
