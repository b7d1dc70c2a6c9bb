"""pysrep: fitting and refining skeletal representations (s-reps) of closed meshes.

Public API:
- fit_ellipsoid_to_mesh(mesh, flow_params=None)
- generate_srep(ellipsoid, num_fold_points, num_steps_to_crest)
- refine_srep(srep, mesh, initial_region_size, final_region_size, max_iterations,
              interpolation_level, l0_weight, l1_weight, l2_weight, progress_callback=None)
- flow_surface_mesh(mesh, dt=1e-3, smooth_amount=0.0, iterations=10, scratch_dir=None)
- calculate_best_fit_ellipsoid(flowed_mesh, volume_mesh=None)
- interpolate_srep(srep, interpolation_level)

"""
from .config import FlowParameters, RefinementParameters
from .creator import fit_ellipsoid_to_mesh, generate_srep
from .distance import SignedDistanceField
from .ellipsoid import EllipsoidParameters, calculate_best_fit_ellipsoid
from .interpolation import interpolate_srep
from .laplacian import cotangent_laplacian, lumped_mass_matrix
from .mcf import flow_surface_mesh
from .mesh import MeshManager, example_mesh
from .refine import Refiner, refine_srep
from .srep import EllipticalSRep, SkeletalPoint, Spoke, SpokeOrientation

__all__ = [
    "fit_ellipsoid_to_mesh",
    "generate_srep",
    "refine_srep",
    "Refiner",
    "flow_surface_mesh",
    "calculate_best_fit_ellipsoid",
    "EllipsoidParameters",
    "EllipticalSRep",
    "SkeletalPoint",
    "Spoke",
    "SpokeOrientation",
    "interpolate_srep",
    "SignedDistanceField",
    "MeshManager",
    "example_mesh",
    "FlowParameters",
    "RefinementParameters",
    "cotangent_laplacian",
    "lumped_mass_matrix",
]
