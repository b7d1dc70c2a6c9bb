"""Initial SRep construction: flow a mesh, fit an ellipsoid, build the SRep.

The SRep of an ellipsoid is known in closed form. Its medial sheet is the
ellipse with semi-axes ``(mrx_o, mry_o)`` in the plane of the two longest
axes; every medial point has an up and a down spoke reaching the ellipsoid
surface, and the fold carries crest spokes reaching the equator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import trimesh as tm

from .config import CREST_SHIFT, ELLIPSE_SCALE, EPS, FlowParameters
from .ellipsoid import EllipsoidParameters, calculate_best_fit_ellipsoid
from .mcf import flow_surface_mesh
from .srep import EllipticalSRep

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class ArraySRep:
    """SRep as flat point arrays, row ``line * (num_steps_to_crest + 1) + step``."""

    num_fold_points: int
    num_steps_to_crest: int
    skeletal_points: np.ndarray  # (L*(S+1), 3)
    up_boundary_points: np.ndarray  # (L*(S+1), 3)
    down_boundary_points: np.ndarray  # (L*(S+1), 3)
    crest_skeletal_points: np.ndarray  # (L, 3)
    crest_boundary_points: np.ndarray  # (L, 3)

    def transformed(self, rotation: np.ndarray, translation: np.ndarray) -> "ArraySRep":
        def apply(P: np.ndarray) -> np.ndarray:
            return P @ rotation.T + translation

        return ArraySRep(
            num_fold_points=self.num_fold_points,
            num_steps_to_crest=self.num_steps_to_crest,
            skeletal_points=apply(self.skeletal_points),
            up_boundary_points=apply(self.up_boundary_points),
            down_boundary_points=apply(self.down_boundary_points),
            crest_skeletal_points=apply(self.crest_skeletal_points),
            crest_boundary_points=apply(self.crest_boundary_points),
        )

    def to_elliptical_srep(self) -> EllipticalSRep:
        L, S = self.num_fold_points, self.num_steps_to_crest + 1
        skeletal = self.skeletal_points.reshape(L, S, 3)
        return EllipticalSRep.from_arrays(
            skeletal,
            self.up_boundary_points.reshape(L, S, 3) - skeletal,
            self.down_boundary_points.reshape(L, S, 3) - skeletal,
            self.crest_skeletal_points,
            self.crest_boundary_points - self.crest_skeletal_points,
        )


def _check_counts(num_fold_points: int, num_steps_to_crest: int) -> None:
    if int(num_fold_points) < 1:
        raise ValueError("num_fold_points must be at least 1")
    if int(num_steps_to_crest) < 1:
        raise ValueError("num_steps_to_crest must be at least 1")


def generate_medial_skeletal_sheet(
    ellipsoid: EllipsoidParameters,
    num_fold_points: int,
    num_steps_to_crest: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Sample the medial sheet in the ellipsoid's local (x, y) plane.

    Lines go around the shrunk medial ellipse starting at angle pi and
    stepping clockwise by 2*pi/num_fold_points. Each line runs straight from
    its spine point (step 0) to its fold point (last step).

    Returns
    -------
    (x, y) : two arrays of shape (num_fold_points, num_steps_to_crest + 1)
    """
    _check_counts(num_fold_points, num_steps_to_crest)
    mra = ellipsoid.mrx_o * ELLIPSE_SCALE
    mrb = ellipsoid.mry_o * ELLIPSE_SCALE

    delta_theta = 2.0 * np.pi / num_fold_points
    step_size = 1.0 / num_steps_to_crest

    theta = np.pi - delta_theta * np.arange(num_fold_points)
    x = mra * np.cos(theta)
    y = mrb * np.sin(theta)
    # Spine: zero length for a circle, the full semi-axis when mrb collapses to 0
    if mra > 0:
        mx_ = (mra * mra - mrb * mrb) * np.cos(theta) / mra
    else:
        mx_ = np.zeros_like(theta)
    my_ = np.zeros_like(theta)

    t = step_size * np.arange(num_steps_to_crest + 1)
    points_x = mx_[:, None] + t[None, :] * (x - mx_)[:, None]
    points_y = my_[:, None] + t[None, :] * (y - my_)[:, None]
    return points_x, points_y


def _local_srep(ellipsoid: EllipsoidParameters, num_fold_points: int, num_steps_to_crest: int) -> ArraySRep:
    points_x, points_y = generate_medial_skeletal_sheet(ellipsoid, num_fold_points, num_steps_to_crest)

    mrx_o = ellipsoid.mrx_o
    mry_o = ellipsoid.mry_o
    rx, ry, rz = ellipsoid.rx, ellipsoid.ry, ellipsoid.rz

    mx = points_x.ravel()
    my = points_y.ravel()

    sB = my * mrx_o
    cB = mx * mry_o
    l = np.sqrt(sB * sB + cB * cB)
    denom = mrx_o * mry_o
    # l lives on the scale of mrx_o * mry_o, so the degenerate-center cutoff does too
    degenerate = l < EPS * denom if denom > 0 else np.ones_like(l, dtype=bool)
    safe_l = np.where(degenerate, 1.0, l)
    sB_n = np.where(degenerate, sB, sB / safe_l)  # sin(theta)
    cB_n = np.where(degenerate, cB, cB / safe_l)  # cos(theta)

    cA = np.clip(l / denom, 0.0, 1.0) if denom > 0 else np.zeros_like(l)  # cos(phi)
    sA = np.sqrt(1.0 - cA * cA)  # sin(phi)
    sx = rx * cA * cB_n - mx
    sy = ry * cA * sB_n - my
    sz = rz * sA

    skeletal = np.column_stack([mx, my, np.zeros_like(mx)])
    up = np.column_stack([sx + mx, sy + my, sz])
    down = np.column_stack([sx + mx, sy + my, -sz])

    # Crest rows are the last step of every line
    crest_rows = np.arange(num_fold_points) * (num_steps_to_crest + 1) + num_steps_to_crest
    cmx, cmy = mx[crest_rows], my[crest_rows]
    cx = rx * cB_n[crest_rows] - cmx
    cy = ry * sB_n[crest_rows] - cmy
    v_n = np.hypot(cx, cy)
    out = np.column_stack([sx[crest_rows], sy[crest_rows]])
    out_n = np.linalg.norm(out, axis=1)
    # Fall back to the boundary offset itself where the interior offset vanishes
    fallback = np.column_stack([cx, cy])
    out = np.where(out_n[:, None] > 0, out, fallback)
    out_n = np.linalg.norm(out, axis=1)
    unit_out = out / np.where(out_n > 0, out_n, 1.0)[:, None]

    bx = unit_out[:, 0] * v_n + cmx
    by = unit_out[:, 1] * v_n + cmy
    crest_boundary = np.column_stack([bx, by, np.zeros_like(bx)])
    crest_skeletal = np.column_stack([
        cmx + (bx - cmx) * CREST_SHIFT,
        cmy + (by - cmy) * CREST_SHIFT,
        np.zeros_like(bx),
    ])

    return ArraySRep(
        num_fold_points=int(num_fold_points),
        num_steps_to_crest=int(num_steps_to_crest),
        skeletal_points=skeletal,
        up_boundary_points=up,
        down_boundary_points=down,
        crest_skeletal_points=crest_skeletal,
        crest_boundary_points=crest_boundary,
    )


def generate_array_srep(
    ellipsoid: EllipsoidParameters,
    num_fold_points: int,
    num_steps_to_crest: int,
) -> ArraySRep:
    """Closed-form SRep of ``ellipsoid`` in world coordinates, as point arrays."""
    local = _local_srep(ellipsoid, num_fold_points, num_steps_to_crest)

    # Align the sheet's own principal axes before applying the ellipsoid frame
    second_moment = local.skeletal_points.T @ local.skeletal_points
    _, eigenvectors = np.linalg.eigh(second_moment)
    rotation = ellipsoid.rotation @ eigenvectors.T

    return local.transformed(rotation, ellipsoid.center)


def generate_srep(
    ellipsoid: EllipsoidParameters,
    num_fold_points: int,
    num_steps_to_crest: int,
) -> EllipticalSRep:
    """Build the elliptical SRep of an ellipsoid.

    Parameters
    ----------
    ellipsoid : EllipsoidParameters
        Fitted ellipsoid.
    num_fold_points : int
        Number of lines (angular samples around the fold).
    num_steps_to_crest : int
        Steps from spine to fold; each line gets ``num_steps_to_crest + 1`` points.

    Returns
    -------
    EllipticalSRep
        Grid of shape ``(num_fold_points, num_steps_to_crest + 1)`` with crest
        spokes on the last step.
    """
    srep = generate_array_srep(ellipsoid, num_fold_points, num_steps_to_crest).to_elliptical_srep()
    logger.info("Generated %dx%d elliptical SRep", srep.num_lines, srep.num_steps)
    return srep


def fit_ellipsoid_to_mesh(
    mesh: tm.Trimesh,
    flow_params: Optional[FlowParameters] = None,
    *,
    verbose: bool = False,
) -> EllipsoidParameters:
    """Flow ``mesh`` toward an ellipsoid and fit one to the result.

    The fitted radii are volume-corrected against the unflowed input mesh.
    """
    if mesh is None:
        raise ValueError("Cannot fit an ellipsoid to a missing mesh")
    params = flow_params or FlowParameters()
    params.validate()
    flowed = flow_surface_mesh(
        mesh,
        dt=params.dt,
        smooth_amount=params.smooth_amount,
        iterations=params.max_iterations,
        scratch_dir=params.scratch_dir,
        verbose=verbose,
    )
    return calculate_best_fit_ellipsoid(flowed.mesh, volume_mesh=mesh)
