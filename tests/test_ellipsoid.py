import numpy as np
import pytest
import trimesh as tm

from pysrep.ellipsoid import EllipsoidParameters, calculate_best_fit_ellipsoid, ellipsoid_volume
from pysrep.mesh import example_mesh


def _rotation(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def test_fit_recovers_axis_aligned_ellipsoid():
    mesh = example_mesh("ellipsoid", radii=(3.0, 2.0, 1.0), subdivisions=4)
    fit = calculate_best_fit_ellipsoid(mesh)
    assert np.allclose(fit.center, 0.0, atol=1e-6)
    # radii ascend; volume matches the mesh
    assert fit.rz < fit.ry < fit.rx
    assert np.isclose(fit.volume, mesh.volume, rtol=1e-6)
    assert np.allclose(fit.radii, [1.0, 2.0, 3.0], rtol=0.05)
    # longest axis along x
    assert np.isclose(abs(fit.rotation[0, 2]), 1.0, atol=1e-3)


def test_fit_recovers_rotated_translated_ellipsoid():
    R = _rotation(0.7)
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = [1.0, -2.0, 0.5]
    mesh = example_mesh("ellipsoid", radii=(2.0, 1.0, 0.5), subdivisions=4, transform=T)
    fit = calculate_best_fit_ellipsoid(mesh)

    assert np.allclose(fit.center, [1.0, -2.0, 0.5], atol=1e-6)
    assert np.allclose(fit.rotation.T @ fit.rotation, np.eye(3), atol=1e-10)
    major = fit.rotation[:, 2]
    assert np.isclose(abs(major @ R[:, 0]), 1.0, atol=1e-3)


def test_volume_mesh_controls_scale():
    flowed = example_mesh("ellipsoid", radii=(2.0, 1.0, 0.5), subdivisions=3)
    target = example_mesh("sphere", radius=3.0, subdivisions=3)
    fit = calculate_best_fit_ellipsoid(flowed, volume_mesh=target)
    assert np.isclose(fit.volume, target.volume, rtol=1e-6)
    # aspect ratios come from the flowed mesh
    assert np.isclose(fit.rx / fit.rz, 4.0, rtol=0.05)


def test_medial_radii():
    e = EllipsoidParameters(center=np.zeros(3), radii=[1.0, 2.0, 3.0], rotation=np.eye(3))
    assert np.isclose(e.mrx_o, (9.0 - 1.0) / 3.0)
    assert np.isclose(e.mry_o, (4.0 - 1.0) / 2.0)
    assert np.isclose(e.volume, ellipsoid_volume(1.0, 2.0, 3.0))
    sphere = EllipsoidParameters(center=np.zeros(3), radii=[1.0, 1.0, 1.0], rotation=np.eye(3))
    assert sphere.mrx_o == 0.0 and sphere.mry_o == 0.0


def test_to_mesh_matches_parameters():
    e = EllipsoidParameters(center=[1.0, 0.0, 0.0], radii=[0.5, 1.0, 2.0], rotation=np.eye(3))
    mesh = e.to_mesh(subdivisions=3)
    assert np.allclose(mesh.bounds, [[0.5, -1.0, -2.0], [1.5, 1.0, 2.0]], atol=1e-6)


def test_invalid_inputs():
    with pytest.raises(ValueError):
        calculate_best_fit_ellipsoid(None)
    flat = tm.Trimesh(vertices=[[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0]], faces=[[0, 1, 2], [1, 3, 2]], process=False)
    with pytest.raises(ValueError):
        calculate_best_fit_ellipsoid(flat)
    with pytest.raises(ValueError):
        EllipsoidParameters(center=np.zeros(3), radii=[-1.0, 1.0, 1.0], rotation=np.eye(3))
