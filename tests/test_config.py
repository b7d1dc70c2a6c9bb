import pytest

from pysrep.config import FlowParameters, RefinementParameters


def test_defaults_validate():
    FlowParameters().validate()
    RefinementParameters().validate()


@pytest.mark.parametrize(
    "kwargs",
    [{"dt": 0.0}, {"smooth_amount": -1.0}, {"max_iterations": -1}],
)
def test_invalid_flow_parameters(kwargs):
    with pytest.raises(ValueError):
        FlowParameters(**kwargs).validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_iterations": 0},
        {"interpolation_level": -1},
        {"initial_region_size": 0.0},
        {"voxel_spacing": 1.5},
        {"voxel_spacing": 0.25},
    ],
)
def test_invalid_refinement_parameters(kwargs):
    with pytest.raises(ValueError):
        RefinementParameters(**kwargs).validate()
