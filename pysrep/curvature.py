"""Per-vertex differential quantities of a triangle mesh.

Nothing here is cached on the mesh: every call recomputes from the current
vertex positions, so the flow loop can call these after each update.
"""
from __future__ import annotations

import logging

import numpy as np
import trimesh as tm

from .laplacian import corner_angles, cotangent_laplacian, lumped_mass_matrix

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def vertex_normals(mesh: tm.Trimesh) -> np.ndarray:
    """Unit outward vertex normals, shape (n,3).

    Raises
    ------
    RuntimeError
        If any normal is non-finite or zero (isolated or degenerate vertices).
    """
    V = np.asarray(mesh.vertices, dtype=float)
    F = np.asarray(mesh.faces, dtype=np.int64)
    # Rebuild so trimesh does not hand back normals cached for stale positions
    fresh = tm.Trimesh(vertices=V, faces=F, process=False)
    N = np.asarray(fresh.vertex_normals, dtype=float)
    norms = np.linalg.norm(N, axis=1)
    if N.shape != V.shape or not np.all(np.isfinite(N)) or np.any(norms == 0):
        raise RuntimeError("Could not compute vertex normals")
    return N / norms[:, None]


def mean_curvature(mesh: tm.Trimesh, normals: np.ndarray | None = None) -> np.ndarray:
    """Signed mean curvature H per vertex (positive on convex regions).

    Uses the cotangent mean-curvature normal ``K_i = (L V)_i / A_i = 2 H n_i``.
    A sphere of radius r gives H close to 1/r.
    """
    V = np.asarray(mesh.vertices, dtype=float)
    F = np.asarray(mesh.faces, dtype=np.int64)
    if normals is None:
        normals = vertex_normals(mesh)
    L = cotangent_laplacian(V, F)
    areas = lumped_mass_matrix(V, F).diagonal()
    if np.any(areas <= 0):
        raise RuntimeError("Could not compute mean curvature: vertex with zero area")
    K = (L @ V) / areas[:, None]
    H = 0.5 * np.einsum("ij,ij->i", K, normals)
    if not np.all(np.isfinite(H)):
        raise RuntimeError("Could not compute mean curvature")
    return H


def gaussian_curvature(mesh: tm.Trimesh) -> np.ndarray:
    """Angle-deficit Gaussian curvature per vertex: (2*pi - sum of angles) / A_i."""
    V = np.asarray(mesh.vertices, dtype=float)
    F = np.asarray(mesh.faces, dtype=np.int64)
    angles = corner_angles(V, F)
    angle_sum = np.zeros(V.shape[0], dtype=float)
    for k in range(3):
        np.add.at(angle_sum, F[:, k], angles[:, k])
    areas = lumped_mass_matrix(V, F).diagonal()
    if np.any(areas <= 0):
        raise RuntimeError("Could not compute Gaussian curvature: vertex with zero area")
    return (2.0 * np.pi - angle_sum) / areas


def principal_curvatures(mesh: tm.Trimesh) -> tuple[np.ndarray, np.ndarray]:
    """Return (max_curvature, min_curvature) per vertex.

    kmax/kmin = H +/- sqrt(max(H^2 - K, 0)).
    """
    H = mean_curvature(mesh)
    K = gaussian_curvature(mesh)
    root = np.sqrt(np.maximum(H * H - K, 0.0))
    kmax = H + root
    kmin = H - root
    if not (np.all(np.isfinite(kmax)) and np.all(np.isfinite(kmin))):
        raise RuntimeError("Could not compute principal curvatures")
    return kmax, kmin
