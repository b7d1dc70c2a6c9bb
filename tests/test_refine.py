import numpy as np
import pytest

from pysrep.creator import generate_srep
from pysrep.ellipsoid import calculate_best_fit_ellipsoid
from pysrep.mesh import MeshManager, example_mesh
from pysrep.refine import (
    Refiner,
    RefinerState,
    apply_coefficients,
    bound_crest_radii_by_curvature,
    distance_and_normal_penalty,
    initial_coefficients,
    match_crest_radii,
    refine_srep,
    rsrad_penalty,
)
from pysrep.config import OBJECTIVE_FAILURE_PENALTY
from pysrep.srep import EllipticalSRep, SpokeOrientation


def _disk_srep(up_fn, num_lines=8, rhos=(0.2, 0.6, 1.0), crest_skeletal_radius=None, crest_length=0.1):
    """Flat skeletal disk in the z=0 plane; ``up_fn(x)`` gives the up spoke vectors."""
    theta = 2 * np.pi * np.arange(num_lines) / num_lines
    rhos = np.asarray(rhos, dtype=float)
    skeletal = np.zeros((num_lines, len(rhos), 3))
    skeletal[..., 0] = np.cos(theta)[:, None] * rhos[None, :]
    skeletal[..., 1] = np.sin(theta)[:, None] * rhos[None, :]
    up = up_fn(skeletal)
    down = up * np.array([1.0, 1.0, -1.0])
    outward = np.column_stack([np.cos(theta), np.sin(theta), np.zeros(num_lines)])
    if crest_skeletal_radius is None:
        crest_skeletal = skeletal[:, -1]
    else:
        crest_skeletal = outward * crest_skeletal_radius
    return EllipticalSRep.from_arrays(skeletal, up, down, crest_skeletal, outward * crest_length)


def _ellipsoid_case(num_lines=6, num_steps=2):
    mesh = example_mesh("ellipsoid", radii=(1.0, 0.75, 0.5), subdivisions=3)
    srep = generate_srep(calculate_best_fit_ellipsoid(mesh), num_lines, num_steps)
    return mesh, srep


# ---------------------------------------------------------------------------
# objective terms
# ---------------------------------------------------------------------------

def test_rsrad_is_zero_for_parallel_spokes():
    srep = _disk_srep(lambda x: np.broadcast_to([0.0, 0.0, 1.0], x.shape).copy())
    assert rsrad_penalty(srep, SpokeOrientation.UP, 0) == 0.0
    assert rsrad_penalty(srep, SpokeOrientation.DOWN, 0) == 0.0


def test_rsrad_penalizes_crossing_spokes():
    focal = np.array([0.0, 0.0, 1.0])
    # spokes aimed at a common focal point and running twice as far cross each other
    crossing = _disk_srep(lambda x: 2.0 * (focal - x))
    converging = _disk_srep(lambda x: 0.5 * (focal - x))
    assert rsrad_penalty(crossing, SpokeOrientation.UP, 0) > 0.0
    assert rsrad_penalty(converging, SpokeOrientation.UP, 0) == 0.0


def test_rsrad_of_empty_srep():
    assert rsrad_penalty(EllipticalSRep(), SpokeOrientation.UP, 2) == 0.0


def test_distance_penalty_grows_when_spokes_overshoot():
    mesh, srep = _ellipsoid_case()
    refiner = Refiner(
        srep, mesh,
        initial_region_size=0.01, final_region_size=0.001, max_iterations=10,
        interpolation_level=0, l0_weight=1, l1_weight=1, l2_weight=1,
        voxel_spacing=0.02,
    )
    sdf = refiner.signed_distance_field
    fitted_d, fitted_n = distance_and_normal_penalty(srep, sdf, SpokeOrientation.UP)

    coeff = initial_coefficients(srep, SpokeOrientation.UP).reshape(-1, 4)
    coeff[:, 3] = np.log(1.5)
    longer = apply_coefficients(srep, coeff.ravel(), SpokeOrientation.UP)
    long_d, _ = distance_and_normal_penalty(longer, sdf, SpokeOrientation.UP)

    assert fitted_n >= 0.0
    assert long_d > fitted_d


# ---------------------------------------------------------------------------
# coefficients
# ---------------------------------------------------------------------------

def test_initial_coefficients_reproduce_srep():
    _, srep = _ellipsoid_case()
    coeff = initial_coefficients(srep, SpokeOrientation.UP)
    assert coeff.shape == (srep.num_lines * srep.num_steps * 4,)
    same = apply_coefficients(srep, coeff, SpokeOrientation.UP)
    for (_, _, a), (_, _, b) in zip(srep, same):
        assert np.array_equal(a.up_spoke.direction, b.up_spoke.direction)


def test_apply_coefficients_scales_one_orientation():
    _, srep = _ellipsoid_case()
    coeff = initial_coefficients(srep, SpokeOrientation.DOWN).reshape(-1, 4)
    coeff[:, 3] = np.log(2.0)
    scaled = apply_coefficients(srep, coeff.ravel(), SpokeOrientation.DOWN)
    for (_, _, a), (_, _, b) in zip(srep, scaled):
        assert b.down_spoke.radius == pytest.approx(2.0 * a.down_spoke.radius)
        assert np.array_equal(a.up_spoke.direction, b.up_spoke.direction)
    # input untouched
    assert scaled.skeletal_point(0, 0).down_spoke is not srep.skeletal_point(0, 0).down_spoke

    with pytest.raises(ValueError):
        apply_coefficients(srep, coeff.ravel()[:-1], SpokeOrientation.DOWN)
    with pytest.raises(ValueError):
        apply_coefficients(srep, coeff.ravel(), SpokeOrientation.CREST)
    with pytest.raises(ValueError):
        initial_coefficients(srep, SpokeOrientation.CREST)


# ---------------------------------------------------------------------------
# crest spokes
# ---------------------------------------------------------------------------

def test_crest_radii_converge_to_surface():
    mesh = MeshManager(example_mesh("sphere", radius=1.0, subdivisions=3), verbose=False)
    srep = _disk_srep(
        lambda x: np.broadcast_to([0.0, 0.0, 0.5], x.shape).copy(),
        rhos=(0.2, 0.5), crest_skeletal_radius=0.5, crest_length=0.2,
    )
    visited = []
    match_crest_radii(srep, mesh, 0.01, 2000, on_spoke=lambda: visited.append(1))
    assert len(visited) == srep.num_lines
    for _, spoke in srep.crest_spokes():
        assert abs(mesh.implicit_distance(spoke.boundary_point)[0]) <= 2e-5


def test_crest_radii_shrink_when_outside():
    mesh = MeshManager(example_mesh("sphere", radius=1.0, subdivisions=3), verbose=False)
    srep = _disk_srep(
        lambda x: np.broadcast_to([0.0, 0.0, 0.5], x.shape).copy(),
        rhos=(0.2, 0.5), crest_skeletal_radius=0.5, crest_length=0.8,
    )
    match_crest_radii(srep, mesh, 0.01, 2000)
    for _, spoke in srep.crest_spokes():
        assert spoke.radius < 0.8
        assert abs(mesh.implicit_distance(spoke.boundary_point)[0]) <= 2e-5


def test_curvature_bound_keeps_boundary_point():
    mesh = MeshManager(example_mesh("sphere", radius=0.25, subdivisions=3), verbose=False)
    srep = _disk_srep(
        lambda x: np.broadcast_to([0.0, 0.0, 0.1], x.shape).copy(),
        num_lines=4, rhos=(0.1, 0.2), crest_skeletal_radius=-0.75, crest_length=1.0,
    )
    # crest spokes start on the far side of the center and end on the sphere
    before = [spoke.boundary_point for _, spoke in srep.crest_spokes()]

    bound_crest_radii_by_curvature(srep, mesh)

    for (_, spoke), tip in zip(srep.crest_spokes(), before):
        assert np.allclose(spoke.boundary_point, tip, atol=1e-9)
        assert 0.1 < spoke.radius < 0.3


def test_curvature_bound_leaves_short_spokes():
    mesh = MeshManager(example_mesh("sphere", radius=1.0, subdivisions=3), verbose=False)
    srep = _disk_srep(
        lambda x: np.broadcast_to([0.0, 0.0, 0.5], x.shape).copy(),
        rhos=(0.2, 0.9), crest_length=0.1,
    )
    before = srep.spoke_arrays(SpokeOrientation.CREST)
    bound_crest_radii_by_curvature(srep, mesh)
    after = srep.spoke_arrays(SpokeOrientation.CREST)
    assert np.allclose(before[0], after[0]) and np.allclose(before[1], after[1])


# ---------------------------------------------------------------------------
# refiner
# ---------------------------------------------------------------------------

def _refiner(srep, mesh, **kwargs):
    params = dict(
        initial_region_size=0.01,
        final_region_size=0.001,
        max_iterations=30,
        interpolation_level=0,
        l0_weight=0.0,
        l1_weight=0.0,
        l2_weight=0.0,
        voxel_spacing=0.05,
        refine_crest=False,
    )
    params.update(kwargs)
    return Refiner(srep, mesh, **params)


def test_zero_weights_leave_srep_unchanged():
    mesh, srep = _ellipsoid_case()
    progress = []
    refiner = _refiner(srep, mesh, progress_callback=progress.append)
    assert refiner.state is RefinerState.CONSTRUCTED
    refined = refiner.run()
    assert refiner.state is RefinerState.DONE

    assert refined is not srep
    assert refined.shape == srep.shape
    for orientation in SpokeOrientation:
        a = srep.spoke_arrays(orientation)
        b = refined.spoke_arrays(orientation)
        assert np.allclose(a[0], b[0]) and np.allclose(a[1], b[1])

    assert progress
    assert all(0.0 <= p <= 1.0 for p in progress)
    assert all(b >= a for a, b in zip(progress, progress[1:]))
    assert progress[-1] == 1.0


def test_up_down_phases_stay_within_their_evaluation_budget():
    # 72 coefficients: COBYLA alone would want 74 evaluations per phase
    mesh, srep = _ellipsoid_case(num_lines=6, num_steps=2)
    events = []
    refiner = _refiner(srep, mesh, l0_weight=1.0, refine_crest=True, progress_callback=events.append)

    evaluate = refiner.evaluate_objective
    evaluations = []

    def counted(coeff, orientation):
        evaluations.append(orientation)
        return evaluate(coeff, orientation)

    refine_crest = refiner._refine_crest

    def marked_crest():
        events.append("crest")
        refine_crest()

    refiner.evaluate_objective = counted
    refiner._refine_crest = marked_crest
    refiner.run()

    assert evaluations.count(SpokeOrientation.UP) <= 30
    assert evaluations.count(SpokeOrientation.DOWN) <= 30
    total = 2 * 30 + 2 * 6
    crest_start = events.index("crest")
    before, after = events[:crest_start], events[crest_start + 1:]
    assert before and after
    assert all(p <= 2 * 30 / total for p in before)
    # one tick per crest spoke in each crest pass, then the final report
    assert len(after) == 2 * 6 + 1
    assert after[0] == pytest.approx((2 * 30 + 1) / total)
    assert events[-1] == 1.0
    assert all(b >= a for a, b in zip(before + after, (before + after)[1:]))


def test_refiner_runs_once():
    mesh, srep = _ellipsoid_case()
    refiner = _refiner(srep, mesh, max_iterations=5)
    refiner.run()
    with pytest.raises(RuntimeError):
        refiner.run()


def test_objective_failure_returns_penalty():
    mesh, srep = _ellipsoid_case()
    refiner = _refiner(srep, mesh, l0_weight=1.0)
    bad = np.zeros(7)
    assert refiner.evaluate_objective(bad, SpokeOrientation.UP) == OBJECTIVE_FAILURE_PENALTY
    good = initial_coefficients(srep, SpokeOrientation.UP)
    assert refiner.evaluate_objective(good, SpokeOrientation.UP) < OBJECTIVE_FAILURE_PENALTY


def test_refinement_pulls_overlong_spokes_back():
    mesh, srep = _ellipsoid_case()
    coeff = initial_coefficients(srep, SpokeOrientation.UP).reshape(-1, 4)
    coeff[:, 3] = np.log(1.3)
    overlong = apply_coefficients(srep, coeff.ravel(), SpokeOrientation.UP)

    refiner = _refiner(
        overlong, mesh, l0_weight=1.0, initial_region_size=0.1, max_iterations=300, voxel_spacing=0.02
    )
    sdf = refiner.signed_distance_field
    before, _ = distance_and_normal_penalty(overlong, sdf, SpokeOrientation.UP)
    refined = refiner.run()
    after, _ = distance_and_normal_penalty(refined, sdf, SpokeOrientation.UP)

    assert after < before
    # skeletal points never move during up/down refinement
    assert np.allclose(
        refined.spoke_arrays(SpokeOrientation.UP)[0], overlong.spoke_arrays(SpokeOrientation.UP)[0]
    )


def test_refine_srep_with_crest_and_interpolation():
    mesh, srep = _ellipsoid_case(num_lines=6, num_steps=2)
    refined = refine_srep(
        srep, MeshManager(mesh, verbose=False), 0.01, 0.001, 20, 1, 1.0, 1.0, 1.0,
        voxel_spacing=0.05,
    )
    assert refined.shape == srep.shape
    for _, spoke in refined.crest_spokes():
        assert np.all(np.isfinite(spoke.boundary_point))


def test_refine_srep_rejects_invalid_input():
    mesh, srep = _ellipsoid_case()
    args = (0.01, 0.001, 10, 1, 1.0, 1.0, 1.0)
    with pytest.raises(ValueError):
        refine_srep(srep, None, *args)
    with pytest.raises(ValueError):
        refine_srep(None, mesh, *args)
    with pytest.raises(ValueError):
        refine_srep(EllipticalSRep(), mesh, *args)
    with pytest.raises(ValueError):
        refine_srep(srep, mesh, 0.01, 0.001, 0, 1, 1.0, 1.0, 1.0)
    with pytest.raises(ValueError):
        refine_srep(srep, mesh, 0.01, 0.001, 10, -1, 1.0, 1.0, 1.0)
