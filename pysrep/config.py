"""Constants and parameter bundles shared across the pipeline."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Union

# SRep generation
ELLIPSE_SCALE = 0.9  # medial ellipse is shrunk slightly so the fold stays inside the ellipsoid
CREST_SHIFT = 0.1  # fraction of the crest spoke by which its base is pulled off the medial sheet
EPS = 1e-4

# Mesh flow
SMOOTHING_ITERATIONS = 20

# Refinement
DEFAULT_VOXEL_SPACING = 0.005
SDF_BORDER_VOXELS = 2  # empty voxels kept between the master bounds and each side of the volume
MAX_VOXEL_SPACING = 0.5 / SDF_BORDER_VOXELS
OBJECTIVE_FAILURE_PENALTY = 1e10
CREST_DISTANCE_EPSILON = 1e-5
SPOKE_CHANGE_TOLERANCE = 1e-13


@dataclass
class FlowParameters:
    """Mean curvature flow settings used by :func:`pysrep.fit_ellipsoid_to_mesh`.

    ``smooth_amount`` is the smoothing pass band; 0 disables smoothing.
    ``scratch_dir`` receives one mesh snapshot per iteration when given.
    """

    dt: float = 1e-3
    smooth_amount: float = 0.0
    max_iterations: int = 10
    scratch_dir: Optional[Union[str, os.PathLike]] = None

    def validate(self) -> None:
        if self.dt <= 0:
            raise ValueError("dt must be positive")
        if self.smooth_amount < 0:
            raise ValueError("smooth_amount must be non-negative")
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")


@dataclass
class RefinementParameters:
    initial_region_size: float = 0.01
    final_region_size: float = 0.001
    max_iterations: int = 2000
    interpolation_level: int = 3
    l0_weight: float = 1.0
    l1_weight: float = 1.0
    l2_weight: float = 1.0
    voxel_spacing: float = DEFAULT_VOXEL_SPACING

    def validate(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("must have at least one iteration")
        if self.interpolation_level < 0:
            raise ValueError("interpolation level must be non-negative")
        if self.initial_region_size <= 0 or self.final_region_size <= 0:
            raise ValueError("region sizes must be positive")
        if not 0 < self.voxel_spacing < MAX_VOXEL_SPACING:
            raise ValueError(f"voxel_spacing must lie in (0, {MAX_VOXEL_SPACING})")
