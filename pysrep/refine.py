"""Spoke refinement of an elliptical SRep against a target mesh.

Up and down spokes are optimized orientation by orientation with a
derivative-free trust-region method over 4 coefficients per skeletal point
(3 direction components and a log radius multiplier). The objective is

    L0 * sum(d^2) + L1 * sum(d^2 * (1 - <u, n>)) + L2 * sum(max(0, lambda_max - 1))

over the spokes of an upsampled copy of the candidate SRep, where d is the
signed distance at the spoke tip, n the normalized distance gradient there,
u the spoke direction, and lambda_max the larger eigenvalue of the local
radial shape operator (values above 1 mean neighbouring spokes cross).
Crest spokes are then fitted by a bracketing line search on their radius and
bounded by the local surface curvature.

See Liu, Z., Hong, J., Vicory, J., Damon, J. N., & Pizer, S. M. (2021).
Fitting unbranching skeletal structures to objects. Medical Image Analysis,
70, 102020.
"""
from __future__ import annotations

import enum
import logging
from typing import Callable, Optional, Tuple, Union

import numpy as np
import trimesh as tm

from .config import (
    CREST_DISTANCE_EPSILON,
    DEFAULT_VOXEL_SPACING,
    OBJECTIVE_FAILURE_PENALTY,
    SPOKE_CHANGE_TOLERANCE,
)
from .distance import SignedDistanceField, compute_master_bounds
from .interpolation import interpolate_srep
from .mesh import MeshManager
from .optimize import minimize_in_region
from .srep import EllipticalSRep, SpokeOrientation

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ProgressCallback = Callable[[float], None]
MeshLike = Union[tm.Trimesh, MeshManager]


def _as_manager(mesh: Optional[MeshLike]) -> MeshManager:
    if mesh is None:
        raise ValueError("Cannot refine an SRep with a null mesh")
    if isinstance(mesh, MeshManager):
        if mesh.mesh is None:
            raise ValueError("Cannot refine an SRep with a null mesh")
        return mesh
    return MeshManager(mesh, verbose=False)


def _check_up_down(orientation: SpokeOrientation) -> None:
    if orientation not in (SpokeOrientation.UP, SpokeOrientation.DOWN):
        raise ValueError(f"Don't know how to refine spoke of type {orientation!r}")


# ---------------------------------------------------------------------------
# coefficients
# ---------------------------------------------------------------------------

def initial_coefficients(srep: EllipticalSRep, orientation: SpokeOrientation) -> np.ndarray:
    """Flat coefficient vector: unit direction and a zero log radius multiplier per point."""
    _check_up_down(orientation)
    coeff = np.zeros((srep.num_lines * srep.num_steps, 4))
    for i, (_, _, point) in enumerate(srep):
        coeff[i, :3] = point.get_spoke(orientation).unit_direction
    return coeff.ravel()


def apply_coefficients(
    srep: EllipticalSRep, coeff: np.ndarray, orientation: SpokeOrientation
) -> EllipticalSRep:
    """Return a clone of ``srep`` whose ``orientation`` spokes follow ``coeff``.

    The three direction coefficients are used as given (they are not
    re-normalized) and scaled by ``exp(coeff[3]) * old_radius``. Spokes whose
    direction and radius are unchanged within tolerance are left alone.
    """
    _check_up_down(orientation)
    coeff = np.asarray(coeff, dtype=float)
    expected = srep.num_lines * srep.num_steps * 4
    if coeff.size != expected:
        raise ValueError(f"Expected {expected} coefficients, got {coeff.size}")
    rows = coeff.reshape(-1, 4)

    clone = srep.clone()
    for i, (_, _, point) in enumerate(clone):
        spoke = point.get_spoke(orientation)
        old_radius = spoke.radius
        old_unit = spoke.unit_direction
        new_unit = rows[i, :3]
        new_radius = np.exp(rows[i, 3]) * old_radius
        if (
            abs(old_radius - new_radius) >= SPOKE_CHANGE_TOLERANCE
            or np.any(np.abs(old_unit - new_unit) >= SPOKE_CHANGE_TOLERANCE)
        ):
            spoke.set_direction_and_magnitude(new_unit * new_radius)
    return clone


# ---------------------------------------------------------------------------
# objective terms
# ---------------------------------------------------------------------------

def distance_and_normal_penalty(
    srep: EllipticalSRep, sdf: SignedDistanceField, orientation: SpokeOrientation
) -> Tuple[float, float]:
    """Return (sum of squared tip distances, distance-weighted normal mismatch)."""
    skeletal, directions = srep.spoke_arrays(orientation)
    skeletal = skeletal.reshape(-1, 3)
    directions = directions.reshape(-1, 3)
    radii = np.linalg.norm(directions, axis=1)
    if np.any(radii == 0):
        raise ValueError("Spoke of zero length has no direction")
    units = directions / radii[:, None]

    dist, grad = sdf.sample(skeletal + directions)
    grad_norm = np.linalg.norm(grad, axis=1)
    normals = grad / np.where(grad_norm > 0, grad_norm, 1.0)[:, None]
    dot = np.einsum("ij,ij->i", normals, units)

    dist_squared = dist * dist
    # 1 - dot lies in [0, 2]
    return float(dist_squared.sum()), float((dist_squared * (1.0 - dot)).sum())


def _grid_derivatives(values: np.ndarray, step_size: float) -> Tuple[np.ndarray, np.ndarray]:
    """Finite differences along lines (periodic, centered) and steps (one-sided at the ends)."""
    d_u = (np.roll(values, -1, axis=0) - np.roll(values, 1, axis=0)) / step_size / 2.0

    num_steps = values.shape[1]
    idx = np.arange(num_steps)
    prev_step = np.maximum(idx - 1, 0)
    next_step = np.minimum(idx + 1, num_steps - 1)
    divisor = np.where((prev_step == idx) | (next_step == idx), 1.0, 2.0)
    divisor = divisor.reshape((1, num_steps) + (1,) * (values.ndim - 2))
    d_v = (values[:, next_step] - values[:, prev_step]) / step_size / divisor
    return d_u, d_v


def rsrad_penalty(
    interpolated: EllipticalSRep, orientation: SpokeOrientation, interpolation_level: int
) -> float:
    """Self-overlap penalty summed over the primary points of an interpolated SRep.

    For each primary point the radial shape operator M (2x2) solves
    ``dS - dr * U = M @ Q`` in the least-squares sense, with
    ``Q = dx (U U^T - I)``; x, S, r and U are skeletal position, spoke vector,
    radius and unit direction, differentiated along lines (u) and steps (v).
    """
    if interpolated.is_empty:
        return 0.0
    density = 2 ** int(interpolation_level)
    step_size = 1.0 / density

    X, S = interpolated.spoke_arrays(orientation)
    r = np.linalg.norm(S, axis=-1)
    if np.any(r == 0):
        raise ValueError("Spoke of zero length has no direction")
    U = S / r[..., None]

    dxdu, dxdv = _grid_derivatives(X, step_size)
    dSdu, dSdv = _grid_derivatives(S, step_size)
    drdu, drdv = _grid_derivatives(r, step_size)

    lines = np.arange(0, interpolated.num_lines, density)
    steps = np.arange(0, interpolated.num_steps, density)
    sel = np.ix_(lines, steps)

    def primary(a: np.ndarray) -> np.ndarray:
        return a[sel].reshape((-1,) + a.shape[2:])

    u = primary(U)
    projector = u[:, :, None] * u[:, None, :] - np.eye(3)
    Q = np.stack([
        np.einsum("ni,nij->nj", primary(dxdu), projector),
        np.einsum("ni,nij->nj", primary(dxdv), projector),
    ], axis=1)
    left = np.stack([
        primary(dSdu) - primary(drdu)[:, None] * u,
        primary(dSdv) - primary(drdv)[:, None] * u,
    ], axis=1)

    QQT = Q @ np.swapaxes(Q, 1, 2)
    M = left @ np.swapaxes(Q, 1, 2) @ np.linalg.pinv(QQT)
    # M is generally not symmetric; eigenvalues are taken of its symmetric part.
    # A solver that reads only one triangle of M would give different penalties.
    sym = 0.5 * (M + np.swapaxes(M, 1, 2))
    max_eigen = np.linalg.eigvalsh(sym)[:, -1]
    return float(np.maximum(0.0, max_eigen - 1.0).sum())


# ---------------------------------------------------------------------------
# crest spokes
# ---------------------------------------------------------------------------

def match_crest_radii(
    srep: EllipticalSRep,
    mesh: MeshLike,
    step_size: float,
    max_iterations: int,
    *,
    epsilon: float = CREST_DISTANCE_EPSILON,
    on_spoke: Optional[Callable[[], None]] = None,
) -> None:
    """Grow or shrink every crest spoke until its tip lies on the surface.

    The radius moves by ``step_size`` toward the surface; whenever the tip
    crosses the surface the step is divided by 10. Stops at
    ``|distance| <= epsilon`` or after ``max_iterations`` moves. Mutates ``srep``.
    """
    manager = _as_manager(mesh)
    for _, spoke in srep.crest_spokes():
        if on_spoke is not None:
            on_spoke()
        dist = float(manager.implicit_distance(spoke.boundary_point)[0])
        old_dist = dist
        step = float(step_size)
        for _ in range(int(max_iterations)):
            if abs(dist) <= epsilon:
                break
            if dist > 0:
                spoke.radius = spoke.radius - step
            else:
                spoke.radius = spoke.radius + step
            dist = float(manager.implicit_distance(spoke.boundary_point)[0])
            if old_dist * dist < 0:
                step /= 10.0
            old_dist = dist


def bound_crest_radii_by_curvature(
    srep: EllipticalSRep,
    mesh: MeshLike,
    *,
    on_spoke: Optional[Callable[[], None]] = None,
) -> None:
    """Cap every crest radius at the radius of curvature of the nearest vertex.

    An overlong crest spoke keeps its tip: its skeletal end slides outward
    along the spoke by the excess and the radius is clamped. Mutates ``srep``.
    """
    manager = _as_manager(mesh)
    max_curvature, min_curvature = manager.principal_curvatures()
    for _, spoke in srep.crest_spokes():
        if on_spoke is not None:
            on_spoke()
        nearest = int(manager.nearest_vertex(spoke.boundary_point)[0])
        curvature = max(abs(max_curvature[nearest]), abs(min_curvature[nearest]))
        if curvature == 0:
            continue
        r_crest = 1.0 / curvature
        r_diff = spoke.radius - r_crest
        if r_diff <= 0:
            continue
        unit = spoke.unit_direction
        spoke.skeletal_point = spoke.skeletal_point + unit * r_diff
        spoke.radius = r_crest


# ---------------------------------------------------------------------------
# refiner
# ---------------------------------------------------------------------------

class RefinerState(enum.Enum):
    CONSTRUCTED = "constructed"
    RUNNING = "running"
    DONE = "done"


class Refiner:
    """One-shot refinement of a private clone of an SRep.

    Construction clones the SRep, builds the signed distance field of the
    mesh once and derives the initial coefficients. :meth:`run` then refines
    up spokes, down spokes and crest spokes in that order and returns the
    refined clone. A refiner cannot be run twice.
    """

    def __init__(
        self,
        srep: EllipticalSRep,
        mesh: MeshLike,
        *,
        initial_region_size: float,
        final_region_size: float,
        max_iterations: int,
        interpolation_level: int,
        l0_weight: float,
        l1_weight: float,
        l2_weight: float,
        voxel_spacing: float = DEFAULT_VOXEL_SPACING,
        refine_crest: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        if srep is None:
            raise ValueError("Cannot refine a null SRep")
        self._mesh = _as_manager(mesh)
        self._srep = srep.clone()
        self.initial_region_size = float(initial_region_size)
        self.final_region_size = float(final_region_size)
        self.max_iterations = int(max_iterations)
        self.interpolation_level = int(interpolation_level)
        self.l0_weight = float(l0_weight)
        self.l1_weight = float(l1_weight)
        self.l2_weight = float(l2_weight)
        self.refine_crest = bool(refine_crest)
        self.progress_callback = progress_callback

        self._sdf: Optional[SignedDistanceField] = None
        self._coefficients = {}
        if not self._srep.is_empty:
            bounds = compute_master_bounds(self._mesh.mesh, self._srep)
            self._sdf = SignedDistanceField.from_mesh(self._mesh.mesh, bounds, voxel_spacing)
            for orientation in (SpokeOrientation.UP, SpokeOrientation.DOWN):
                self._coefficients[orientation] = initial_coefficients(self._srep, orientation)

        self._iteration = 0
        # up and down evaluations plus two passes over the crest spokes
        self._total_progress_iterations = 2 * self.max_iterations + 2 * self._srep.num_lines
        self._phase_end = self._total_progress_iterations
        self.state = RefinerState.CONSTRUCTED

    @property
    def signed_distance_field(self) -> Optional[SignedDistanceField]:
        return self._sdf

    # -- progress ---------------------------------------------------------

    def _report_progress(self) -> None:
        if self.progress_callback is not None and self._total_progress_iterations > 0:
            progress = self._iteration / self._total_progress_iterations
            self.progress_callback(min(1.0, max(0.0, progress)))

    def _increment_iteration(self) -> None:
        # ticks past the current phase budget are dropped
        if self._iteration < self._phase_end:
            self._iteration += 1
        self._report_progress()

    def _advance_to(self, iteration: int) -> None:
        self._iteration = max(self._iteration, iteration)
        self._report_progress()

    # -- phases -----------------------------------------------------------

    def run(self) -> EllipticalSRep:
        if self.state is not RefinerState.CONSTRUCTED:
            raise RuntimeError("A Refiner can only be run once")
        self.state = RefinerState.RUNNING
        if not self._srep.is_empty:
            self._iteration = 0
            self._report_progress()
            self._phase_end = self.max_iterations
            self._refine_up_down(SpokeOrientation.UP)
            self._advance_to(self.max_iterations)
            self._phase_end = 2 * self.max_iterations
            self._refine_up_down(SpokeOrientation.DOWN)
            self._advance_to(2 * self.max_iterations)
            self._phase_end = self._total_progress_iterations
            if self.refine_crest:
                self._refine_crest()
            self._advance_to(self._total_progress_iterations)
        self.state = RefinerState.DONE
        return self._srep

    def _refine_up_down(self, orientation: SpokeOrientation) -> None:
        logger.info("Refining %s spokes", orientation.value)
        coeff = self._coefficients[orientation]
        minimize_in_region(
            lambda c: self.evaluate_objective(c, orientation),
            coeff,
            self.initial_region_size,
            self.final_region_size,
            self.max_iterations,
        )

        # only the spokes of this orientation change
        refined = apply_coefficients(self._srep, coeff, orientation)
        if refined.num_lines != self._srep.num_lines:
            raise ValueError(
                f"Error: expected equal number of lines {self._srep.num_lines}!={refined.num_lines}"
            )
        if refined.num_steps != self._srep.num_steps:
            raise ValueError(
                f"Error: expected equal number of steps {self._srep.num_steps}!={refined.num_steps}"
            )
        for l, s, point in self._srep:
            point.set_spoke(orientation, refined.skeletal_point(l, s).get_spoke(orientation).copy())

    def _refine_crest(self) -> None:
        logger.info("Refining crest spokes")
        # the optimizer's initial region size doubles as the line-search step
        match_crest_radii(
            self._srep,
            self._mesh,
            self.initial_region_size,
            self.max_iterations,
            on_spoke=self._increment_iteration,
        )
        bound_crest_radii_by_curvature(self._srep, self._mesh, on_spoke=self._increment_iteration)

    # -- objective --------------------------------------------------------

    def evaluate_objective(self, coeff: np.ndarray, orientation: SpokeOrientation) -> float:
        """Weighted L0 + L1 + L2 objective; never raises.

        Any failure is logged and mapped to a large penalty so the optimizer
        simply sees a bad point.
        """
        try:
            candidate = apply_coefficients(self._srep, coeff, orientation)
            interpolated = interpolate_srep(candidate, self.interpolation_level)

            distance_squared, normal_penalty = distance_and_normal_penalty(interpolated, self._sdf, orientation)
            srad = rsrad_penalty(interpolated, orientation, self.interpolation_level)

            l0 = distance_squared * self.l0_weight
            l1 = normal_penalty * self.l1_weight
            l2 = srad * self.l2_weight
            value = l0 + l1 + l2
            if not np.isfinite(value):
                raise ValueError(f"objective is not finite ({value})")
            self._increment_iteration()
            logger.debug("Eval func %d: %g = %g + %g + %g", self._iteration, value, l0, l1, l2)
            return value
        except Exception:
            logger.exception("Error in SRep refinement evaluating objective function")
            return OBJECTIVE_FAILURE_PENALTY


def refine_srep(
    srep: EllipticalSRep,
    mesh: MeshLike,
    initial_region_size: float,
    final_region_size: float,
    max_iterations: int,
    interpolation_level: int,
    l0_weight: float,
    l1_weight: float,
    l2_weight: float,
    progress_callback: Optional[ProgressCallback] = None,
    *,
    voxel_spacing: float = DEFAULT_VOXEL_SPACING,
    refine_crest: bool = True,
) -> EllipticalSRep:
    """Refine the spokes of ``srep`` so their tips fit ``mesh``.

    Parameters
    ----------
    srep : EllipticalSRep
        SRep to refine. Not modified; a refined copy is returned.
    mesh : trimesh.Trimesh or MeshManager
        Target (unflowed) surface.
    initial_region_size, final_region_size : float
        Trust-region radius at the start and end of each optimization.
        The initial size is also the crest line-search step.
    max_iterations : int
        Objective evaluations per orientation, and crest line-search steps.
    interpolation_level : int
        The objective is measured on a grid upsampled by 2**level.
    l0_weight, l1_weight, l2_weight : float
        Weights of the fit, normal-alignment and self-overlap terms.
    progress_callback : callable, optional
        Called with a progress value in [0, 1]; it runs inside the optimizer
        loop and should return quickly.
    voxel_spacing : float, default 0.005
        Spacing of the signed distance volume on the unit cube.
    refine_crest : bool, default True
        Run the crest radius matching and curvature bound.

    Raises
    ------
    ValueError
        For a missing mesh, a missing or empty SRep, ``max_iterations < 1``
        or ``interpolation_level < 0``.
    """
    if mesh is None:
        raise ValueError("Cannot refine an SRep with a null mesh")
    if srep is None or srep.is_empty:
        raise ValueError("Cannot refine an SRep with a null srep")
    if max_iterations < 1:
        raise ValueError("must have at least one iteration")
    if interpolation_level < 0:
        raise ValueError("interpolation level must be non-negative")

    refiner = Refiner(
        srep,
        mesh,
        initial_region_size=initial_region_size,
        final_region_size=final_region_size,
        max_iterations=max_iterations,
        interpolation_level=interpolation_level,
        l0_weight=l0_weight,
        l1_weight=l1_weight,
        l2_weight=l2_weight,
        voxel_spacing=voxel_spacing,
        refine_crest=refine_crest,
        progress_callback=progress_callback,
    )
    return refiner.run()
