from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import logging
import numpy as np
import trimesh as tm

from .config import SMOOTHING_ITERATIONS
from .curvature import mean_curvature, vertex_normals
from .mesh import MeshManager

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class FlowResult:
    mesh: tm.Trimesh  # final flowed mesh (same connectivity as the input)
    history: Optional[Sequence[np.ndarray]] = None  # optional list of intermediate vertices
    snapshot_paths: List[Path] = field(default_factory=list)  # per-iteration files written to scratch_dir


def flow_surface_mesh(
    mesh: tm.Trimesh,
    *,
    dt: float = 1e-3,
    smooth_amount: float = 0.0,
    iterations: int = 10,
    scratch_dir: Optional[Union[str, os.PathLike]] = None,
    record_history: bool = False,
    verbose: bool = False,
    log: Optional[logging.Logger] = None,
) -> FlowResult:
    """Explicit mean curvature flow of a closed triangle mesh.

    Every vertex moves against its normal, scaled by the local mean curvature:

        p <- p - dt * H(p) * n(p)

    Convex regions (H > 0) move inward, so repeated steps round the surface
    off toward an ellipsoid-like blob. There is no convergence test; the
    iteration count is the only stopping rule.

    Parameters
    ----------
    mesh : trimesh.Trimesh
        Input closed triangle mesh. Not modified.
    dt : float, default 1e-3
        Time step. Large steps relative to the edge length make the explicit
        update unstable.
    smooth_amount : float, default 0.0
        Pass band of the low-pass filter applied before each step
        (20 filter sub-iterations). 0 disables smoothing.
    iterations : int, default 10
        Number of flow steps.
    scratch_dir : path-like, optional
        When given, a snapshot ``<k>.ply`` of the mesh after step k is written
        here. The directory is created if needed and is owned by the caller.
    record_history : bool, default False
        If True, return a list of vertices after each step in ``FlowResult.history``.
    verbose : bool, default False
        If True, log basic progress information.
    log : logging.Logger, optional
        Custom logger. If None, use module logger.

    Returns
    -------
    FlowResult

    Raises
    ------
    ValueError
        If the mesh is missing or not a triangle mesh.
    RuntimeError
        If normals or mean curvature cannot be computed.
    OSError
        If the scratch directory cannot be created.
    """
    if mesh is None:
        raise ValueError("Cannot flow a missing mesh")
    if mesh.vertices.ndim != 2 or mesh.vertices.shape[1] != 3:
        raise ValueError("mesh.vertices must have shape (n,3)")
    if mesh.faces.ndim != 2 or mesh.faces.shape[1] != 3:
        raise ValueError("mesh.faces must have shape (m,3)")

    _log = log or logger
    F = mesh.faces.view(np.ndarray).astype(np.int64, copy=True)
    working = tm.Trimesh(
        vertices=mesh.vertices.view(np.ndarray).astype(np.float64, copy=True),
        faces=F,
        process=False,
    )

    folder: Optional[Path] = None
    if scratch_dir is not None:
        folder = Path(scratch_dir)
        folder.mkdir(parents=True, exist_ok=True)

    smoothing = smooth_amount > 0
    if verbose:
        _log.info(
            "Flow: %d vertices, %d faces; dt=%.3g, iters=%d, smoothing=%s",
            working.vertices.shape[0], F.shape[0], dt, iterations, smoothing,
        )

    hist: list[np.ndarray] | None = [] if record_history else None
    snapshots: list[Path] = []

    for k in range(iterations):
        if smoothing:
            working = MeshManager(working, verbose=False).smoothed(smooth_amount, SMOOTHING_ITERATIONS)

        normals = vertex_normals(working)
        H = mean_curvature(working, normals)

        V = np.asarray(working.vertices, dtype=np.float64) - dt * H[:, None] * normals
        working = tm.Trimesh(vertices=V, faces=F, process=False)

        if hist is not None:
            hist.append(V.copy())
        if folder is not None:
            path = folder / f"{k + 1}.ply"
            MeshManager(working, verbose=False).save(str(path))
            snapshots.append(path)
        if verbose and ((k + 1) % max(1, iterations // 5) == 0 or k == iterations - 1):
            _log.info("Flow: completed step %d/%d", k + 1, iterations)

    return FlowResult(mesh=working, history=hist, snapshot_paths=snapshots)
