import numpy as np
import scipy.sparse as sp
import trimesh as tm

from pysrep.laplacian import corner_angles, cotangent_laplacian, lumped_mass_matrix, mixed_voronoi_areas


def test_laplacian_basic_properties():
    # Create a simple sphere mesh
    mesh = tm.primitives.Sphere(radius=1.0, subdivisions=2)
    V = np.asarray(mesh.vertices)
    F = np.asarray(mesh.faces)

    L = cotangent_laplacian(V, F)
    assert sp.issparse(L) and L.format == "csr"

    # Row-sum should be ~0
    rowsum = np.array(L.sum(axis=1)).ravel()
    assert np.allclose(rowsum, 0.0, atol=1e-8)

    # Symmetry
    assert abs(L - L.T).max() < 1e-12

    # Mass matrix diagonal positive and sums to the surface area
    M = lumped_mass_matrix(V, F)
    mdiag = M.diagonal()
    assert np.all(mdiag > 0)
    assert np.isclose(mdiag.sum(), tm.Trimesh(vertices=V, faces=F, process=False).area)


def test_mixed_voronoi_areas_partition_surface_with_obtuse_triangles():
    # stretched sphere has plenty of obtuse triangles
    mesh = tm.creation.icosphere(subdivisions=3, radius=1.0)
    V = np.asarray(mesh.vertices) * np.array([3.0, 1.0, 0.3])
    F = np.asarray(mesh.faces)

    A = mixed_voronoi_areas(V, F)
    assert np.all(A > 0)
    assert np.isclose(A.sum(), tm.Trimesh(vertices=V, faces=F, process=False).area)


def test_mixed_voronoi_areas_of_single_triangle():
    F = np.array([[0, 1, 2]])
    # right angle at vertex 0: circumcenter is the hypotenuse midpoint
    V = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    assert np.allclose(mixed_voronoi_areas(V, F), [0.25, 0.125, 0.125])

    # obtuse at vertex 2: half the area there, a quarter elsewhere
    V = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [1.0, 0.2, 0.0]])
    assert np.allclose(mixed_voronoi_areas(V, F), [0.05, 0.05, 0.1])


def test_laplacian_annihilates_constants_and_scales_inversely():
    mesh = tm.creation.icosphere(subdivisions=2, radius=1.0)
    V = np.asarray(mesh.vertices)
    F = np.asarray(mesh.faces)

    L = cotangent_laplacian(V, F)
    assert np.allclose(L @ np.ones(len(V)), 0.0, atol=1e-10)
    # cotangent weights are scale invariant
    L2 = cotangent_laplacian(V * 5.0, F)
    assert abs(L - L2).max() < 1e-9


def test_corner_angles_sum_to_pi():
    mesh = tm.creation.icosphere(subdivisions=1)
    angles = corner_angles(np.asarray(mesh.vertices), np.asarray(mesh.faces))
    assert angles.shape == (len(mesh.faces), 3)
    assert np.allclose(angles.sum(axis=1), np.pi)
