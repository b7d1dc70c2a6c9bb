from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import trimesh as tm

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def ellipsoid_volume(r1: float, r2: float, r3: float) -> float:
    return 4.0 / 3.0 * np.pi * r1 * r2 * r3


@dataclass
class EllipsoidParameters:
    """Best-fit ellipsoid.

    ``radii`` are ascending (eigenvalue order) and ``rotation[:, i]`` is the
    world direction of the local axis carrying ``radii[i]``, so a local point
    p maps to ``rotation @ p + center``.
    """

    center: np.ndarray  # (3,)
    radii: np.ndarray  # (3,)
    rotation: np.ndarray  # (3,3) orthonormal

    def __post_init__(self):
        self.center = np.asarray(self.center, dtype=float).reshape(3)
        self.radii = np.asarray(self.radii, dtype=float).reshape(3)
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        if np.any(self.radii < 0) or not np.all(np.isfinite(self.radii)):
            raise ValueError(f"Ellipsoid radii must be finite and non-negative, got {self.radii}")

    @property
    def rx(self) -> float:
        return float(self.radii[2])

    @property
    def ry(self) -> float:
        return float(self.radii[1])

    @property
    def rz(self) -> float:
        return float(self.radii[0])

    @property
    def mrx_o(self) -> float:
        """Semi-axis along x of the ellipsoid's medial ellipse."""
        rx, rz = self.rx, self.rz
        return (rx * rx - rz * rz) / rx if rx > 0 else 0.0

    @property
    def mry_o(self) -> float:
        """Semi-axis along y of the ellipsoid's medial ellipse."""
        ry, rz = self.ry, self.rz
        return (ry * ry - rz * rz) / ry if ry > 0 else 0.0

    @property
    def volume(self) -> float:
        return ellipsoid_volume(*self.radii)

    def to_mesh(self, subdivisions: int = 3) -> tm.Trimesh:
        """Triangulated surface of this ellipsoid in world coordinates."""
        sphere = tm.creation.icosphere(subdivisions=int(subdivisions), radius=1.0)
        local = np.asarray(sphere.vertices) * self.radii
        world = local @ self.rotation.T + self.center
        return tm.Trimesh(vertices=world, faces=sphere.faces, process=False)


def calculate_best_fit_ellipsoid(
    flowed_mesh: tm.Trimesh,
    volume_mesh: Optional[tm.Trimesh] = None,
) -> EllipsoidParameters:
    """Fit an ellipsoid to the vertices of a (flowed) mesh.

    The vertex cloud's centroid gives the center and the eigen-decomposition of
    its second-moment matrix gives the axes. The raw radii sqrt(eigenvalues)
    only carry the aspect ratios, so they are scaled uniformly until the
    ellipsoid volume equals the enclosed volume of ``volume_mesh`` (the flowed
    mesh itself when omitted).

    Parameters
    ----------
    flowed_mesh : trimesh.Trimesh
        Mesh whose vertices are fitted.
    volume_mesh : trimesh.Trimesh, optional
        Mesh whose enclosed volume the fit must reproduce.

    Returns
    -------
    EllipsoidParameters
    """
    if flowed_mesh is None:
        raise ValueError("Cannot fit an ellipsoid to a missing mesh")
    P = np.asarray(flowed_mesh.vertices, dtype=float)
    if P.ndim != 2 or P.shape[1] != 3 or P.shape[0] < 4:
        raise ValueError("Ellipsoid fitting needs at least 4 vertices of shape (n,3)")

    center = P.mean(axis=0)
    centered = P - center
    second_moment = centered.T @ centered
    eigenvalues, eigenvectors = np.linalg.eigh(second_moment)
    radii = np.sqrt(np.maximum(eigenvalues, 0.0))

    raw_volume = ellipsoid_volume(*radii)
    if raw_volume <= 0:
        raise ValueError("Vertices are degenerate (coplanar or collinear); cannot fit an ellipsoid")

    target = volume_mesh if volume_mesh is not None else flowed_mesh
    mesh_volume = abs(float(target.volume))
    volume_factor = (mesh_volume / raw_volume) ** (1.0 / 3.0)
    radii = radii * volume_factor

    logger.debug("Best-fit ellipsoid: center=%s radii=%s", center, radii)
    return EllipsoidParameters(center=center, radii=radii, rotation=eigenvectors)
