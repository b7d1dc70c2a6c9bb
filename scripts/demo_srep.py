#!/usr/bin/env python3
"""
Demo script for pysrep: load a mesh (or build an example one), flow it and fit
an ellipsoid, generate the initial s-rep, optionally refine it, save it as an
.npz archive and write a visualization of the spokes over the mesh.

Usage:
  python scripts/demo_srep.py [--mesh PATH] [--outdir PATH] [--backend auto|plotly|matplotlib] [--refine]

If --mesh is not provided, an example ellipsoid mesh is used.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

from pysrep import (
    FlowParameters,
    MeshManager,
    RefinementParameters,
    SpokeOrientation,
    example_mesh,
    fit_ellipsoid_to_mesh,
    generate_srep,
    refine_srep,
)

logger = logging.getLogger("demo_srep")


def ensure_outdir(path: str) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def spoke_segments(srep):
    """Stack (skeletal, boundary) point pairs of every spoke, shape (k,2,3)."""
    segments = []
    for orientation in (SpokeOrientation.UP, SpokeOrientation.DOWN, SpokeOrientation.CREST):
        skeletal, directions = srep.spoke_arrays(orientation)
        skeletal = skeletal.reshape(-1, 3)
        directions = directions.reshape(-1, 3)
        segments.append(np.stack([skeletal, skeletal + directions], axis=1))
    return np.concatenate(segments, axis=0)


def overlay_spokes_plotly(fig, segments: np.ndarray, name: str = "Spokes") -> None:
    import plotly.graph_objects as go

    xs, ys, zs = [], [], []
    for p, q in segments:
        xs += [p[0], q[0], None]
        ys += [p[1], q[1], None]
        zs += [p[2], q[2], None]
    fig.add_trace(
        go.Scatter3d(x=xs, y=ys, z=zs, mode="lines", line=dict(color="crimson", width=3), name=name)
    )
    fig.add_trace(
        go.Scatter3d(
            x=segments[:, 0, 0], y=segments[:, 0, 1], z=segments[:, 0, 2],
            mode="markers", marker=dict(size=2, color="black"), name="Skeletal points",
        )
    )


def overlay_spokes_matplotlib(fig, segments: np.ndarray) -> None:
    if not fig.axes:
        return
    ax = fig.axes[0]
    for p, q in segments:
        ax.plot([p[0], q[0]], [p[1], q[1]], [p[2], q[2]], color="crimson", linewidth=1)


def main():
    ap = argparse.ArgumentParser(description="pysrep demo: ellipsoid fit + s-rep generation + refinement")
    ap.add_argument("--mesh", type=str, default=None, help="Path to input mesh. If omitted, an example ellipsoid is used")
    ap.add_argument("--outdir", type=str, default="outputs/demo", help="Directory to write outputs")
    ap.add_argument(
        "--backend",
        type=str,
        default="auto",
        choices=["auto", "plotly", "matplotlib", "none"],
        help="Visualization backend for MeshManager",
    )
    ap.add_argument("--dt", type=float, default=1e-3, help="Mean curvature flow time step")
    ap.add_argument("--smooth", type=float, default=0.0, help="Smoothing pass band (0 disables)")
    ap.add_argument("--flow-iters", type=int, default=10, help="Mean curvature flow iterations")
    ap.add_argument("--fold-points", type=int, default=24, help="Number of lines around the fold")
    ap.add_argument("--steps", type=int, default=3, help="Steps from spine to crest")
    ap.add_argument("--refine", action="store_true", help="Refine the generated s-rep against the mesh")
    ap.add_argument("--iterations", type=int, default=500, help="Refinement objective evaluations per orientation")
    ap.add_argument("--level", type=int, default=2, help="Interpolation level used by refinement")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    outdir = ensure_outdir(args.outdir)

    mm = MeshManager(verbose=True)
    if args.mesh:
        try:
            mm.load_mesh(args.mesh)
        except ValueError as e:
            logger.error("%s", e)
            sys.exit(1)
    else:
        mm.mesh = example_mesh("ellipsoid", radii=(2.0, 1.2, 0.6), subdivisions=4)
        logger.info("Using example ellipsoid mesh")
    mesh = mm.mesh

    flow = FlowParameters(dt=args.dt, smooth_amount=args.smooth, max_iterations=args.flow_iters)
    ellipsoid = fit_ellipsoid_to_mesh(mesh, flow, verbose=True)
    logger.info("Fitted ellipsoid: center=%s radii=%s", ellipsoid.center, ellipsoid.radii)

    srep = generate_srep(ellipsoid, args.fold_points, args.steps)
    srep.save(outdir / "initial_srep.npz")

    if args.refine:
        params = RefinementParameters(max_iterations=args.iterations, interpolation_level=args.level)
        params.validate()

        last = [-1]

        def report(progress: float) -> None:
            percent = int(progress * 100)
            if percent >= last[0] + 10:
                last[0] = percent
                logger.info("Refinement progress: %d%%", percent)

        srep = refine_srep(
            srep,
            mm,
            params.initial_region_size,
            params.final_region_size,
            params.max_iterations,
            params.interpolation_level,
            params.l0_weight,
            params.l1_weight,
            params.l2_weight,
            report,
            voxel_spacing=params.voxel_spacing,
        )
        srep.save(outdir / "refined_srep.npz")
    logger.info("Wrote s-rep archives to %s", outdir)

    if args.backend == "none":
        return
    fig = mm.visualize_mesh_3d(title="S-rep", backend=args.backend)
    if fig is None:
        return
    segments = spoke_segments(srep)
    if fig.__class__.__module__.startswith("plotly"):
        overlay_spokes_plotly(fig, segments)
        out_html = outdir / "srep_plotly.html"
        fig.write_html(str(out_html))
        logger.info("Wrote visualization: %s", out_html)
    else:
        overlay_spokes_matplotlib(fig, segments)
        out_png = outdir / "srep_matplotlib.png"
        fig.savefig(str(out_png), dpi=150)
        logger.info("Wrote visualization: %s", out_png)


if __name__ == "__main__":
    main()
