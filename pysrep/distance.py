"""Signed distance volume of a mesh on a normalized unit cube.

Both the mesh and, later, arbitrary query points are mapped by the same
bounds-preserving-aspect transform: the longest axis of the master bounds
goes to [0, 1] less a border of SDF_BORDER_VOXELS voxels on each side, and the
shorter axes are centred in the cube. The border keeps outside voxels next to
the extremes of the mesh, so the zero level is not biased inward there. The
volume has ``round(1 / voxel_spacing)`` voxels per axis and voxel ``i`` sits
at unit-cube coordinate ``i * voxel_spacing``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import trimesh as tm
from scipy import ndimage

from .config import DEFAULT_VOXEL_SPACING, MAX_VOXEL_SPACING, SDF_BORDER_VOXELS
from .srep import EllipticalSRep

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def compute_master_bounds(mesh: tm.Trimesh, srep: EllipticalSRep) -> np.ndarray:
    """Smallest (2,3) box containing both the mesh and every SRep point."""
    if mesh is None:
        raise ValueError("Expected existing mesh for computing bounds")
    mesh_bounds = np.asarray(mesh.bounds, dtype=float)
    if srep is None or srep.is_empty:
        return mesh_bounds.copy()
    srep_bounds = srep.bounds()
    return np.vstack([
        np.minimum(mesh_bounds[0], srep_bounds[0]),
        np.maximum(mesh_bounds[1], srep_bounds[1]),
    ])


def bounds_to_unit_cube_transform(bounds: np.ndarray, margin: float = 0.0) -> np.ndarray:
    """4x4 affine map from model space into the normalized unit cube.

    The longest axis of ``bounds`` maps to ``[margin, 1 - margin]``.
    """
    bounds = np.asarray(bounds, dtype=float).reshape(2, 3)
    ranges = bounds[1] - bounds[0]
    if np.any(ranges <= 0) or not np.all(np.isfinite(ranges)):
        raise ValueError(f"Bounds must have positive extent on every axis, got ranges {ranges}")
    if not 0.0 <= margin < 0.5:
        raise ValueError(f"margin must lie in [0, 0.5), got {margin}")
    scale = (1.0 - 2.0 * margin) / ranges.max()
    transformed_ranges = ranges * scale
    origins = 0.5 - transformed_ranges / 2.0

    mat = np.eye(4)
    mat[:3, :3] = np.diag([scale, scale, scale])
    mat[:3, 3] = origins - scale * bounds[0]
    return mat


def _apply(mat: np.ndarray, points: np.ndarray) -> np.ndarray:
    return np.asarray(points, dtype=float) @ mat[:3, :3].T + mat[:3, 3]


def grid_size(voxel_spacing: float) -> int:
    return int(round(1.0 / voxel_spacing))


def voxelize_mesh(unit_mesh: tm.Trimesh, voxel_spacing: float) -> np.ndarray:
    """Boolean occupancy volume of a mesh already mapped into the unit cube.

    Surface voxels come from trimesh's subdivision voxelizer, the interior is
    filled by hole filling. Voxels of the trimesh grid sit at integer
    multiples of the pitch, so they index straight into the unit-cube grid.
    """
    n = grid_size(voxel_spacing)
    occupancy = np.zeros((n, n, n), dtype=bool)
    voxels = unit_mesh.voxelized(pitch=voxel_spacing).fill()
    points = np.asarray(voxels.points, dtype=float)
    if points.size == 0:
        return occupancy
    idx = np.round(points / voxel_spacing).astype(np.int64)
    keep = np.all((idx >= 0) & (idx < n), axis=1)
    if not np.all(keep):
        logger.debug("%d occupied voxels fall outside the unit cube and were dropped", int((~keep).sum()))
    idx = idx[keep]
    occupancy[idx[:, 0], idx[:, 1], idx[:, 2]] = True
    return occupancy


def approximate_signed_distance(occupancy: np.ndarray, voxel_spacing: float) -> np.ndarray:
    """Signed distance (negative inside) in unit-cube units.

    The zero level sits half a voxel between the last inside and the first
    outside voxel.
    """
    if not occupancy.any():
        raise ValueError("Mesh produced an empty occupancy volume")
    if occupancy.all():
        raise ValueError("Occupancy volume has no outside voxels; bounds do not contain the mesh")
    inside = ndimage.distance_transform_edt(occupancy)
    outside = ndimage.distance_transform_edt(~occupancy)
    sdf = np.where(occupancy, -(inside - 0.5), outside - 0.5) * voxel_spacing
    return sdf.astype(np.float32)


@dataclass
class SignedDistanceField:
    distance: np.ndarray  # (n,n,n) float32
    gradient: np.ndarray  # (n,n,n,3) float32
    voxel_spacing: float
    model_to_unit: np.ndarray  # (4,4)

    @classmethod
    def from_mesh(
        cls,
        mesh: tm.Trimesh,
        bounds: np.ndarray,
        voxel_spacing: float = DEFAULT_VOXEL_SPACING,
    ) -> "SignedDistanceField":
        """Voxelize ``mesh`` inside ``bounds`` and build distance and gradient volumes.

        ``bounds`` must contain the mesh (and anything that will be sampled).
        """
        if mesh is None:
            raise ValueError("expected non null mesh when building a signed distance field")
        if not 0 < voxel_spacing < MAX_VOXEL_SPACING:
            raise ValueError(f"voxel_spacing must lie in (0, {MAX_VOXEL_SPACING})")
        mat = bounds_to_unit_cube_transform(bounds, margin=SDF_BORDER_VOXELS * voxel_spacing)
        unit_mesh = tm.Trimesh(
            vertices=_apply(mat, mesh.vertices),
            faces=np.asarray(mesh.faces, dtype=np.int64),
            process=False,
        )
        occupancy = voxelize_mesh(unit_mesh, voxel_spacing)
        distance = approximate_signed_distance(occupancy, voxel_spacing)
        gradient = np.stack(np.gradient(distance, voxel_spacing), axis=-1).astype(np.float32)
        logger.info(
            "Signed distance field: %d^3 voxels, %d inside", distance.shape[0], int(occupancy.sum())
        )
        return cls(distance=distance, gradient=gradient, voxel_spacing=float(voxel_spacing), model_to_unit=mat)

    @property
    def model_to_index(self) -> np.ndarray:
        """4x4 map from model space to continuous voxel index space."""
        scale = np.eye(4)
        scale[:3, :3] /= self.voxel_spacing
        return scale @ self.model_to_unit

    def index_of(self, points: np.ndarray) -> np.ndarray:
        """Nearest voxel index (k,3) for model-space points, clamped to the volume."""
        continuous = _apply(self.model_to_index, np.atleast_2d(points))
        max_index = self.distance.shape[0] - 1
        return np.clip(np.rint(continuous), 0, max_index).astype(np.int64)

    def sample(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Distance (k,) and gradient (k,3) at model-space points."""
        idx = self.index_of(points)
        i, j, k = idx[:, 0], idx[:, 1], idx[:, 2]
        return (
            self.distance[i, j, k].astype(float),
            self.gradient[i, j, k].astype(float),
        )
