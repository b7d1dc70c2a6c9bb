from __future__ import annotations

import logging

import numpy as np
from scipy.interpolate import CubicSpline

from .srep import EllipticalSRep, SpokeOrientation

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _upsample_periodic(values: np.ndarray, density: int) -> np.ndarray:
    """Resample along axis 0, treating it as closed (the last sample wraps to the first)."""
    n = values.shape[0]
    if density == 1:
        return values.copy()
    if n < 2:
        return np.repeat(values, density, axis=0)
    closed = np.concatenate([values, values[:1]], axis=0)
    spline = CubicSpline(np.arange(n + 1), closed, axis=0, bc_type="periodic")
    return spline(np.arange(n * density) / density)


def _upsample_open(values: np.ndarray, density: int, axis: int) -> np.ndarray:
    """Resample along ``axis`` keeping both end samples: n -> (n-1)*density + 1."""
    n = values.shape[axis]
    if density == 1 or n < 2:
        return values.copy()
    spline = CubicSpline(np.arange(n), values, axis=axis, bc_type="natural")
    return spline(np.arange((n - 1) * density + 1) / density)


def _split(directions: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    radii = np.linalg.norm(directions, axis=-1)
    units = directions / np.where(radii > 0, radii, 1.0)[..., None]
    return units, radii


def _join(units: np.ndarray, radii: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(units, axis=-1)
    units = units / np.where(norms > 0, norms, 1.0)[..., None]
    return units * np.maximum(radii, 0.0)[..., None]


def interpolate_srep(srep: EllipticalSRep, interpolation_level: int) -> EllipticalSRep:
    """Upsample an SRep grid by ``2**interpolation_level`` along both grid axes.

    Skeletal positions, unit spoke directions and spoke radii are interpolated
    separately with cubic splines: periodic around the lines, natural along the
    steps. The result has ``num_lines * d`` lines and ``(num_steps - 1) * d + 1``
    steps (``d = 2**interpolation_level``); the input points reappear at
    ``(line * d, step * d)``. Crest spokes are interpolated around the last
    step row.
    """
    if interpolation_level < 0:
        raise ValueError("interpolation level must be non-negative")
    if srep.is_empty or interpolation_level == 0:
        return srep.clone()
    density = 2 ** int(interpolation_level)

    def upsample_grid(values: np.ndarray) -> np.ndarray:
        return _upsample_open(_upsample_periodic(values, density), density, axis=1)

    skeletal, up = srep.spoke_arrays(SpokeOrientation.UP)
    _, down = srep.spoke_arrays(SpokeOrientation.DOWN)
    crest_skeletal, crest = srep.spoke_arrays(SpokeOrientation.CREST)

    up_units, up_radii = _split(up)
    down_units, down_radii = _split(down)
    crest_units, crest_radii = _split(crest)

    new_skeletal = upsample_grid(skeletal)
    new_up = _join(upsample_grid(up_units), upsample_grid(up_radii))
    new_down = _join(upsample_grid(down_units), upsample_grid(down_radii))
    new_crest_skeletal = _upsample_periodic(crest_skeletal, density)
    new_crest = _join(_upsample_periodic(crest_units, density), _upsample_periodic(crest_radii, density))

    interpolated = EllipticalSRep.from_arrays(new_skeletal, new_up, new_down, new_crest_skeletal, new_crest)
    logger.debug(
        "Interpolated SRep %dx%d -> %dx%d",
        srep.num_lines, srep.num_steps, interpolated.num_lines, interpolated.num_steps,
    )
    return interpolated
