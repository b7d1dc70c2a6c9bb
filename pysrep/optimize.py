from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def minimize_in_region(
    objective: Callable[[np.ndarray], float],
    coeff: np.ndarray,
    initial_region_size: float,
    final_region_size: float,
    max_iterations: int,
) -> float:
    """Derivative-free trust-region minimization, updating ``coeff`` in place.

    Runs scipy's COBYLA without constraints: only objective values are used,
    and the trust region starts at ``initial_region_size`` and shrinks down to
    ``final_region_size``. ``objective`` is called at most ``max_iterations``
    times. COBYLA insists on at least ``len(coeff) + 2`` evaluations, so once
    the budget is spent it is fed the best value seen so far instead.

    ``coeff`` ends on the best evaluated point, or is left untouched when
    nothing beat the starting point.

    Returns
    -------
    float
        Objective value at the final ``coeff``.
    """
    if coeff.ndim != 1:
        raise ValueError("coeff must be a flat vector")
    if max_iterations < 1:
        raise ValueError("max_iterations must be at least 1")
    max_iterations = int(max_iterations)
    initial_region_size = float(initial_region_size)
    final_region_size = min(float(final_region_size), initial_region_size)

    start = coeff.copy()
    values: list[float] = []
    best = {"x": start, "value": np.inf}

    def budgeted(x: np.ndarray) -> float:
        if len(values) >= max_iterations:
            return best["value"]
        value = float(objective(x))
        values.append(value)
        if value < best["value"]:
            best["x"] = np.array(x, dtype=float)
            best["value"] = value
        return value

    result = minimize(
        budgeted,
        start,
        method="COBYLA",
        options={
            "rhobeg": initial_region_size,
            "tol": final_region_size,
            "maxiter": max(max_iterations, start.size + 2),
        },
    )
    logger.debug(
        "COBYLA finished after %d objective evaluations: %s", len(values), result.message
    )

    if not best["value"] < values[0]:
        coeff[:] = start
        return values[0]
    coeff[:] = best["x"]
    return best["value"]
