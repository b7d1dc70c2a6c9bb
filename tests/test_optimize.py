import numpy as np
import pytest

from pysrep.optimize import minimize_in_region


def test_minimizes_quadratic_in_place():
    target = np.array([0.3, -0.2, 0.1])
    coeff = np.zeros(3)

    value = minimize_in_region(lambda x: float(np.sum((x - target) ** 2)), coeff, 0.1, 1e-6, 2000)

    assert np.allclose(coeff, target, atol=1e-3)
    assert value < 1e-5


def test_start_kept_when_nothing_improves():
    coeff = np.array([1.0, 2.0])
    start = coeff.copy()
    calls = []

    def flat(x):
        calls.append(x.copy())
        return 5.0

    value = minimize_in_region(flat, coeff, 0.5, 1e-3, 50)
    assert value == 5.0
    assert np.array_equal(coeff, start)
    assert np.array_equal(calls[0], start)
    assert len(calls) <= 50


def test_budget_smaller_than_cobyla_minimum_is_respected():
    # COBYLA wants at least n + 2 evaluations; the objective must still see only the budget
    target = np.linspace(0.1, 0.5, 10)
    coeff = np.zeros(10)
    calls = []

    def quadratic(x):
        calls.append(x.copy())
        return float(np.sum((x - target) ** 2))

    value = minimize_in_region(quadratic, coeff, 0.1, 1e-4, 5)

    assert len(calls) == 5
    assert np.array_equal(calls[0], np.zeros(10))
    # coeff ends on the best point actually evaluated
    seen = [float(np.sum((c - target) ** 2)) for c in calls]
    assert value == pytest.approx(min(seen))
    assert value == pytest.approx(float(np.sum((coeff - target) ** 2)))
    assert value < seen[0]


def test_start_kept_at_minimum():
    coeff = np.array([0.0, 0.0])
    minimize_in_region(lambda x: float(np.sum(x ** 2)), coeff, 0.1, 1e-4, 100)
    assert np.array_equal(coeff, [0.0, 0.0])


def test_invalid_arguments():
    with pytest.raises(ValueError):
        minimize_in_region(lambda x: 0.0, np.zeros((2, 2)), 0.1, 0.01, 10)
    with pytest.raises(ValueError):
        minimize_in_region(lambda x: 0.0, np.zeros(2), 0.1, 0.01, 0)
