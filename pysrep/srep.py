"""Skeletal representation data model.

An :class:`EllipticalSRep` is a grid of :class:`SkeletalPoint` indexed by
``(line, step)``. Lines wrap around (angular position on the medial ellipse),
steps run from the spine (step 0) out to the fold (last step). Every point
owns an up and a down spoke; points on the last step also own a crest spoke.
"""
from __future__ import annotations

import enum
import logging
import os
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _as_point(value, name: str = "point") -> np.ndarray:
    arr = np.array(value, dtype=float).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"{name} must have 3 components, got shape {np.shape(value)}")
    if np.any(np.isnan(arr)):
        raise ValueError(f"{name} cannot have a nan component")
    return arr


class SpokeOrientation(enum.Enum):
    UP = "up"
    DOWN = "down"
    CREST = "crest"


class Spoke:
    """Vector from a skeletal point to the boundary.

    ``direction`` carries both the unit direction and the length (radius);
    the boundary point is ``skeletal_point + direction``.
    """

    __slots__ = ("_skeletal_point", "_direction")

    def __init__(self, skeletal_point, direction):
        self._skeletal_point = _as_point(skeletal_point, "skeletal point")
        self._direction = _as_point(direction, "spoke direction")

    @classmethod
    def from_points(cls, skeletal_point, boundary_point) -> "Spoke":
        skeletal = _as_point(skeletal_point, "skeletal point")
        return cls(skeletal, _as_point(boundary_point, "boundary point") - skeletal)

    @property
    def skeletal_point(self) -> np.ndarray:
        return self._skeletal_point.copy()

    @skeletal_point.setter
    def skeletal_point(self, value) -> None:
        self._skeletal_point = _as_point(value, "skeletal point")

    @property
    def direction(self) -> np.ndarray:
        return self._direction.copy()

    @property
    def boundary_point(self) -> np.ndarray:
        return self._skeletal_point + self._direction

    @property
    def radius(self) -> float:
        return float(np.linalg.norm(self._direction))

    @radius.setter
    def radius(self, value: float) -> None:
        self._direction = _as_point(self.unit_direction * float(value), "spoke direction")

    @property
    def unit_direction(self) -> np.ndarray:
        r = np.linalg.norm(self._direction)
        if r == 0:
            raise ValueError("Spoke of zero length has no direction")
        return self._direction / r

    @unit_direction.setter
    def unit_direction(self, value) -> None:
        u = _as_point(value, "spoke direction")
        n = np.linalg.norm(u)
        if n == 0:
            raise ValueError("Spoke direction cannot be the zero vector")
        self._direction = _as_point(u / n * self.radius, "spoke direction")

    def set_direction_and_magnitude(self, direction) -> None:
        """Set unit direction and radius together from a single vector."""
        self._direction = _as_point(direction, "spoke direction")

    def copy(self) -> "Spoke":
        return Spoke(self._skeletal_point, self._direction)

    def __repr__(self) -> str:
        return f"Spoke(skeletal_point={self._skeletal_point.tolist()}, direction={self._direction.tolist()})"


class SkeletalPoint:
    __slots__ = ("up_spoke", "down_spoke", "crest_spoke")

    def __init__(self, up_spoke: Spoke, down_spoke: Spoke, crest_spoke: Optional[Spoke] = None):
        if up_spoke is None or down_spoke is None:
            raise ValueError("A skeletal point needs both an up and a down spoke")
        self.up_spoke = up_spoke
        self.down_spoke = down_spoke
        self.crest_spoke = crest_spoke

    @property
    def is_crest(self) -> bool:
        return self.crest_spoke is not None

    @property
    def position(self) -> np.ndarray:
        return self.up_spoke.skeletal_point

    def get_spoke(self, orientation: SpokeOrientation) -> Optional[Spoke]:
        if orientation is SpokeOrientation.UP:
            return self.up_spoke
        if orientation is SpokeOrientation.DOWN:
            return self.down_spoke
        if orientation is SpokeOrientation.CREST:
            return self.crest_spoke
        raise ValueError(f"Unsupported spoke orientation: {orientation!r}")

    def set_spoke(self, orientation: SpokeOrientation, spoke: Spoke) -> None:
        if orientation is SpokeOrientation.UP:
            self.up_spoke = spoke
        elif orientation is SpokeOrientation.DOWN:
            self.down_spoke = spoke
        elif orientation is SpokeOrientation.CREST:
            self.crest_spoke = spoke
        else:
            raise ValueError(f"Unsupported spoke orientation: {orientation!r}")

    def copy(self) -> "SkeletalPoint":
        return SkeletalPoint(
            self.up_spoke.copy(),
            self.down_spoke.copy(),
            None if self.crest_spoke is None else self.crest_spoke.copy(),
        )


Grid = List[List[SkeletalPoint]]


class EllipticalSRep:
    """Grid of skeletal points, ``grid[line][step]``.

    The grid must be rectangular and carry crest spokes exactly on the last
    step of every line. An empty grid (no lines) is allowed and reports
    ``is_empty``.
    """

    def __init__(self, grid: Optional[Sequence[Sequence[SkeletalPoint]]] = None):
        grid = [] if grid is None else [list(line) for line in grid]
        if grid:
            num_steps = len(grid[0])
            if num_steps == 0:
                raise ValueError("Every line of an elliptical SRep needs at least one step")
            for l, line in enumerate(grid):
                if len(line) != num_steps:
                    raise ValueError(
                        f"Elliptical SRep grid must be rectangular: line {l} has {len(line)} steps, expected {num_steps}"
                    )
                for s, point in enumerate(line):
                    crest_expected = s == num_steps - 1
                    if point.is_crest != crest_expected:
                        raise ValueError(
                            f"Crest spokes belong exactly on the last step (line {l}, step {s})"
                        )
        self._grid: Grid = grid

    # ------------------------------------------------------------------
    # shape and access
    # ------------------------------------------------------------------

    @property
    def num_lines(self) -> int:
        return len(self._grid)

    @property
    def num_steps(self) -> int:
        return len(self._grid[0]) if self._grid else 0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.num_lines, self.num_steps

    @property
    def is_empty(self) -> bool:
        return self.num_lines == 0

    def skeletal_point(self, line: int, step: int) -> SkeletalPoint:
        return self._grid[line][step]

    def __iter__(self) -> Iterator[Tuple[int, int, SkeletalPoint]]:
        for l, line in enumerate(self._grid):
            for s, point in enumerate(line):
                yield l, s, point

    def crest_spokes(self) -> Iterator[Tuple[int, Spoke]]:
        """Yield ``(line, crest_spoke)`` for every crest point, in line order."""
        for l, line in enumerate(self._grid):
            for point in line:
                if point.is_crest:
                    yield l, point.crest_spoke

    def clone(self) -> "EllipticalSRep":
        """Deep copy; the clone shares no spokes with this SRep."""
        return EllipticalSRep([[p.copy() for p in line] for line in self._grid])

    def bounds(self) -> np.ndarray:
        """Axis-aligned bounds (2,3) over skeletal and boundary points of all spokes."""
        if self.is_empty:
            raise ValueError("An empty SRep has no bounds")
        pts = []
        for _, _, point in self:
            for spoke in (point.up_spoke, point.down_spoke, point.crest_spoke):
                if spoke is not None:
                    pts.append(spoke.skeletal_point)
                    pts.append(spoke.boundary_point)
        P = np.asarray(pts)
        return np.vstack([P.min(axis=0), P.max(axis=0)])

    # ------------------------------------------------------------------
    # array views
    # ------------------------------------------------------------------

    def spoke_arrays(self, orientation: SpokeOrientation) -> Tuple[np.ndarray, np.ndarray]:
        """Return (skeletal_points, directions) for one orientation.

        UP/DOWN give arrays of shape (lines, steps, 3); CREST gives (lines, 3).
        """
        if orientation is SpokeOrientation.CREST:
            spokes = [spoke for _, spoke in self.crest_spokes()]
            skeletal = np.array([s._skeletal_point for s in spokes]).reshape(-1, 3)
            directions = np.array([s._direction for s in spokes]).reshape(-1, 3)
            return skeletal, directions
        if orientation not in (SpokeOrientation.UP, SpokeOrientation.DOWN):
            raise ValueError(f"Unsupported spoke orientation: {orientation!r}")
        skeletal = np.empty((self.num_lines, self.num_steps, 3))
        directions = np.empty((self.num_lines, self.num_steps, 3))
        for l, s, point in self:
            spoke = point.get_spoke(orientation)
            skeletal[l, s] = spoke._skeletal_point
            directions[l, s] = spoke._direction
        return skeletal, directions

    @classmethod
    def from_arrays(
        cls,
        skeletal_points: np.ndarray,
        up_directions: np.ndarray,
        down_directions: np.ndarray,
        crest_skeletal_points: np.ndarray,
        crest_directions: np.ndarray,
    ) -> "EllipticalSRep":
        """Build a grid from (lines, steps, 3) arrays plus (lines, 3) crest arrays."""
        skeletal_points = np.asarray(skeletal_points, dtype=float)
        if skeletal_points.ndim != 3 or skeletal_points.shape[2] != 3:
            raise ValueError("skeletal_points must have shape (lines, steps, 3)")
        num_lines, num_steps, _ = skeletal_points.shape
        up_directions = np.asarray(up_directions, dtype=float).reshape(num_lines, num_steps, 3)
        down_directions = np.asarray(down_directions, dtype=float).reshape(num_lines, num_steps, 3)
        crest_skeletal_points = np.asarray(crest_skeletal_points, dtype=float).reshape(num_lines, 3)
        crest_directions = np.asarray(crest_directions, dtype=float).reshape(num_lines, 3)

        grid: Grid = []
        for l in range(num_lines):
            line = []
            for s in range(num_steps):
                crest = None
                if s == num_steps - 1:
                    crest = Spoke(crest_skeletal_points[l], crest_directions[l])
                line.append(
                    SkeletalPoint(
                        Spoke(skeletal_points[l, s], up_directions[l, s]),
                        Spoke(skeletal_points[l, s], down_directions[l, s]),
                        crest,
                    )
                )
            grid.append(line)
        return cls(grid)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def save(self, path: Union[str, os.PathLike]) -> None:
        """Write the SRep to a compressed ``.npz`` archive."""
        if self.is_empty:
            raise ValueError("Cannot save an empty SRep")
        skeletal, up = self.spoke_arrays(SpokeOrientation.UP)
        _, down = self.spoke_arrays(SpokeOrientation.DOWN)
        crest_skeletal, crest = self.spoke_arrays(SpokeOrientation.CREST)
        np.savez_compressed(
            path,
            skeletal_points=skeletal,
            up_directions=up,
            down_directions=down,
            crest_skeletal_points=crest_skeletal,
            crest_directions=crest,
        )
        logger.debug("Saved %dx%d SRep to %s", self.num_lines, self.num_steps, path)

    @classmethod
    def load(cls, path: Union[str, os.PathLike]) -> "EllipticalSRep":
        with np.load(path) as data:
            try:
                return cls.from_arrays(
                    data["skeletal_points"],
                    data["up_directions"],
                    data["down_directions"],
                    data["crest_skeletal_points"],
                    data["crest_directions"],
                )
            except KeyError as e:
                raise ValueError(f"{path} is not an SRep archive: missing {e}") from e

    def __repr__(self) -> str:
        return f"EllipticalSRep(lines={self.num_lines}, steps={self.num_steps})"
