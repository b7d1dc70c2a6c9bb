"""
Mesh wrapper providing the surface queries used by flow, fitting and refinement
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np
import trimesh
import trimesh.proximity
import trimesh.smoothing
from scipy.spatial import cKDTree

from .curvature import principal_curvatures

# Module-level logger
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def example_mesh(
    kind: str = "sphere",
    *,
    radius: float = 1.0,
    radii: Tuple[float, float, float] = (1.0, 0.75, 0.5),
    subdivisions: int = 3,
    transform: np.ndarray | None = None,
) -> trimesh.Trimesh:
    """Create a simple closed demo mesh using trimesh primitives.

    Parameters
    ----------
    kind : {"sphere", "ellipsoid"}
        Type of primitive to generate. Default "sphere".
    radius : float
        Sphere radius. Default 1.0.
    radii : (3,) floats
        Ellipsoid semi-axes along x, y, z (when kind="ellipsoid").
    subdivisions : int
        Icosphere subdivision level for sphere and ellipsoid. Default 3.
    transform : (4,4) float array, optional
        Transform applied after creation.

    Examples
    --------
    >>> m = example_mesh("sphere", radius=2.0)
    >>> e = example_mesh("ellipsoid", radii=(3.0, 2.0, 1.0))
    """
    k = (kind or "sphere").lower()
    if k == "sphere":
        mesh = trimesh.creation.icosphere(subdivisions=int(subdivisions), radius=float(radius))
    elif k == "ellipsoid":
        mesh = trimesh.creation.icosphere(subdivisions=int(subdivisions), radius=1.0)
        mesh = trimesh.Trimesh(
            vertices=np.asarray(mesh.vertices) * np.asarray(radii, dtype=float),
            faces=mesh.faces,
            process=False,
        )
    else:
        raise ValueError("example_mesh kind must be 'sphere' or 'ellipsoid'")
    if transform is not None:
        mesh.apply_transform(np.asarray(transform, dtype=float))
    return mesh


class MeshManager:
    """
    Surface mesh with the on-demand queries the SRep pipeline needs.

    Normals and curvatures are recomputed per call and never stored, so the
    wrapped mesh can be replaced or edited freely. Spatial indices (vertex
    KD-tree) are built lazily and dropped whenever ``mesh`` is reassigned.
    """

    def __init__(self, mesh: Optional[trimesh.Trimesh] = None, verbose: bool = True):
        self._mesh = None
        self._kdtree: Optional[cKDTree] = None
        self.verbose = verbose
        self.mesh = mesh

    @property
    def mesh(self) -> Optional[trimesh.Trimesh]:
        return self._mesh

    @mesh.setter
    def mesh(self, value: Optional[trimesh.Trimesh]) -> None:
        if value is not None and not isinstance(value, trimesh.Trimesh):
            raise TypeError(f"Expected a trimesh.Trimesh, got {type(value)}")
        self._mesh = value
        self._kdtree = None
        self.bounds = self._compute_bounds()

    def log(self, message: str, level: str = "INFO"):
        """Delegate to module logger respecting self.verbose."""
        if not self.verbose:
            return
        lvl = level.upper()
        if lvl == "WARNING":
            logger.warning(message)
        elif lvl == "ERROR":
            logger.error(message)
        else:
            logger.info(message)

    # =================================================================
    # MESH LOADING AND BASIC OPERATIONS
    # =================================================================

    def load_mesh(
        self, filepath: str, file_format: Optional[str] = None
    ) -> trimesh.Trimesh:
        """
        Load a mesh from file.

        Args:
            filepath: Path to mesh file
            file_format: Optional format specification (auto-detected if None)

        Returns:
            Loaded trimesh object
        """
        try:
            if file_format:
                mesh = trimesh.load(filepath, file_type=file_format)
            else:
                mesh = trimesh.load(filepath)

            # Ensure we have a single mesh
            if isinstance(mesh, trimesh.Scene):
                geometries = list(mesh.geometry.values())
                if geometries:
                    mesh = geometries[0]
                else:
                    raise ValueError("No geometry found in mesh scene")

            if not isinstance(mesh, trimesh.Trimesh):
                raise ValueError(f"Loaded object is not a mesh: {type(mesh)}")
        except Exception as e:
            raise ValueError(f"Failed to load mesh from {filepath}: {str(e)}") from e

        self.mesh = mesh
        self.log(f"Loaded mesh: {len(mesh.vertices)} vertices, {len(mesh.faces)} faces")
        logger.debug("Bounds: %s", self.bounds)
        return mesh

    def save(self, filepath, file_format="ply"):
        self._require_mesh().export(filepath, file_type=file_format)

    def _require_mesh(self) -> trimesh.Trimesh:
        if self.mesh is None:
            raise ValueError("No mesh loaded")
        return self.mesh

    def _compute_bounds(self) -> Optional[Dict[str, Tuple[float, float]]]:
        """Compute mesh bounding box."""
        if self.mesh is None or len(self.mesh.vertices) == 0:
            return None

        min_coords = self.mesh.vertices.min(axis=0)
        max_coords = self.mesh.vertices.max(axis=0)

        return {
            "x": (min_coords[0], max_coords[0]),
            "y": (min_coords[1], max_coords[1]),
            "z": (min_coords[2], max_coords[2]),
        }

    # =================================================================
    # SURFACE QUERIES
    # =================================================================

    @property
    def volume(self) -> float:
        """Enclosed volume (divergence theorem), reported as a positive value."""
        return abs(float(self._require_mesh().volume))

    def principal_curvatures(self) -> Tuple[np.ndarray, np.ndarray]:
        """Per-vertex (maximum, minimum) principal curvature."""
        return principal_curvatures(self._require_mesh())

    def nearest_vertex(self, points: np.ndarray) -> np.ndarray:
        """Index of the closest mesh vertex for each query point."""
        if self._kdtree is None:
            self._kdtree = cKDTree(np.asarray(self._require_mesh().vertices, dtype=float))
        _, idx = self._kdtree.query(np.atleast_2d(np.asarray(points, dtype=float)))
        return np.asarray(idx, dtype=np.int64)

    def implicit_distance(self, points: np.ndarray) -> np.ndarray:
        """Signed distance to the surface, positive outside and negative inside."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        # trimesh reports points inside the mesh as positive
        return -np.asarray(trimesh.proximity.signed_distance(self._require_mesh(), pts), dtype=float)

    def smoothed(self, pass_band: float, iterations: int = 20) -> trimesh.Trimesh:
        """Return a low-pass filtered copy of the mesh.

        Uses Taubin lambda|mu smoothing; ``pass_band`` plays the role of the
        filter pass band k_PB with ``1/mu = 1/lambda - k_PB`` and lambda=0.5, so
        small pass bands smooth more. Topology and the input mesh are untouched.
        """
        mesh = self._require_mesh()
        lamb = 0.5
        pass_band = float(np.clip(pass_band, 1e-6, 1.0 / lamb - 1e-6))
        nu = 1.0 / (1.0 / lamb - pass_band)
        work = trimesh.Trimesh(
            vertices=np.array(mesh.vertices, dtype=float),
            faces=np.array(mesh.faces, dtype=np.int64),
            process=False,
        )
        trimesh.smoothing.filter_taubin(work, lamb=lamb, nu=nu, iterations=int(iterations))
        return work

    # =================================================================
    # VISUALIZATION
    # =================================================================

    def visualize_mesh_3d(
        self,
        title: str = "3D Mesh Visualization",
        color: str = "lightblue",
        backend: str = "auto",
        show_axes: bool = True,
        width: int = 800,
        height: int = 600,
    ) -> Optional[object]:
        """
        Create a 3D visualization of the mesh.

        Args:
            title: Plot title
            color: Mesh color (named color or RGB tuple)
            backend: Visualization backend ('plotly' or 'matplotlib')
            show_axes: Whether to show coordinate axes

        Returns:
            Figure object (backend-dependent) or None if no backend is installed
        """
        if backend == "auto":
            try:
                import plotly.graph_objects as go  # noqa: F401

                backend = "plotly"
            except ImportError:
                backend = "matplotlib"

        if backend == "plotly":
            return self._visualize_mesh_plotly(title, color, show_axes, width, height)
        elif backend == "matplotlib":
            return self._visualize_mesh_matplotlib(title, color, show_axes)
        else:
            raise ValueError(f"Unknown backend: {backend}")

    def _visualize_mesh_plotly(self, title, color, show_axes, width=800, height=600):
        """Plotly-based mesh visualization."""
        try:
            import plotly.graph_objects as go
        except ImportError:
            logger.warning("Plotly not available")
            return None

        vertices = self._require_mesh().vertices
        faces = self.mesh.faces
        mesh_trace = go.Mesh3d(
            x=vertices[:, 0],
            y=vertices[:, 1],
            z=vertices[:, 2],
            i=faces[:, 0],
            j=faces[:, 1],
            k=faces[:, 2],
            opacity=0.4,
            color=color,
            name="Mesh",
        )
        fig = go.Figure(data=[mesh_trace])
        fig.update_layout(
            title=title,
            autosize=False,
            width=width,
            height=height,
            scene=dict(
                aspectmode="data",
                xaxis=dict(visible=show_axes),
                yaxis=dict(visible=show_axes),
                zaxis=dict(visible=show_axes),
            ),
        )
        return fig

    def _visualize_mesh_matplotlib(self, title, color, show_axes):
        """Matplotlib-based mesh visualization."""
        try:
            import matplotlib.pyplot as plt
            from mpl_toolkits.mplot3d.art3d import Poly3DCollection
        except ImportError:
            logger.warning("Matplotlib not available")
            return None

        fig = plt.figure(figsize=(10, 8))
        ax = fig.add_subplot(111, projection="3d")

        vertices = self._require_mesh().vertices
        faces = self.mesh.faces
        poly3d = Poly3DCollection(vertices[faces], alpha=0.4, facecolor=color)
        ax.add_collection3d(poly3d)

        ax.set_xlim(vertices[:, 0].min(), vertices[:, 0].max())
        ax.set_ylim(vertices[:, 1].min(), vertices[:, 1].max())
        ax.set_zlim(vertices[:, 2].min(), vertices[:, 2].max())
        ax.set_title(title)
        if not show_axes:
            ax.set_axis_off()

        plt.tight_layout()
        return fig
