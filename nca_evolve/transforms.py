"""Reversible geometric and colour transforms applied around a simulation."""

import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List

from .constants import NUM_COLORS
from .grid import Grid


class Transform:
    """Base class: `apply` before simulation, `revert` on the prediction."""

    name = "identity"

    def apply(self, grid: Grid) -> Grid:
        return grid

    def revert(self, grid: Grid) -> Grid:
        return grid

    def to_dict(self) -> Dict:
        return {"type": self.name}

    def __eq__(self, other):
        return type(self) is type(other) and self.to_dict() == other.to_dict()


class Identity(Transform):
    name = "identity"


class Rotate90CW(Transform):
    name = "rotate90cw"

    def apply(self, grid: Grid) -> Grid:
        return Grid(np.rot90(grid.data, k=-1))

    def revert(self, grid: Grid) -> Grid:
        return Grid(np.rot90(grid.data, k=1))


class Rotate180(Transform):
    name = "rotate180"

    def apply(self, grid: Grid) -> Grid:
        return Grid(np.rot90(grid.data, k=2))

    def revert(self, grid: Grid) -> Grid:
        return self.apply(grid)


class Rotate270CW(Transform):
    name = "rotate270cw"

    def apply(self, grid: Grid) -> Grid:
        return Grid(np.rot90(grid.data, k=1))

    def revert(self, grid: Grid) -> Grid:
        return Grid(np.rot90(grid.data, k=-1))


class FlipHorizontal(Transform):
    name = "flip_horizontal"

    def apply(self, grid: Grid) -> Grid:
        return Grid(grid.data[:, ::-1])

    def revert(self, grid: Grid) -> Grid:
        return self.apply(grid)


class FlipVertical(Transform):
    name = "flip_vertical"

    def apply(self, grid: Grid) -> Grid:
        return Grid(grid.data[::-1, :])

    def revert(self, grid: Grid) -> Grid:
        return self.apply(grid)


class ReflectMainDiagonal(Transform):
    name = "reflect_main_diagonal"

    def apply(self, grid: Grid) -> Grid:
        return Grid(grid.data.T)

    def revert(self, grid: Grid) -> Grid:
        return self.apply(grid)


class ReflectAntiDiagonal(Transform):
    name = "reflect_anti_diagonal"

    def apply(self, grid: Grid) -> Grid:
        return Grid(grid.data[::-1, ::-1].T)

    def revert(self, grid: Grid) -> Grid:
        return self.apply(grid)


class RemapColors(Transform):
    """Colour substitution. `col_map` maps original -> mapped."""

    name = "remap_colors"

    def __init__(self, col_map=None):
        self.col_map = list(range(NUM_COLORS)) if col_map is None else list(col_map)
        self.rev_col_map = list(range(NUM_COLORS))
        for src, dst in enumerate(self.col_map):
            self.rev_col_map[dst] = src

    def map(self, src: int, dst: int):
        self.col_map[src] = dst
        self.rev_col_map[dst] = src

    def apply(self, grid: Grid) -> Grid:
        return Grid(np.asarray(self.col_map, dtype=np.uint8)[grid.data])

    def revert(self, grid: Grid) -> Grid:
        return Grid(np.asarray(self.rev_col_map, dtype=np.uint8)[grid.data])

    def to_dict(self) -> Dict:
        return {"type": self.name, "col_map": list(self.col_map)}

    def __str__(self):
        return "\n".join(f"{i} -> {c}" for i, c in enumerate(self.col_map))


TRANSFORMS = {
    cls.name: cls
    for cls in (
        Identity, Rotate90CW, Rotate180, Rotate270CW, FlipHorizontal,
        FlipVertical, ReflectMainDiagonal, ReflectAntiDiagonal, RemapColors,
    )
}


def transform_from_dict(data: Dict) -> Transform:
    kind = data["type"]
    if kind not in TRANSFORMS:
        raise ValueError(f"Unknown transform type '{kind}'")
    if kind == RemapColors.name:
        return RemapColors(data["col_map"])
    return TRANSFORMS[kind]()


@dataclass
class TransformPipeline:
    """Transforms applied in order and reverted in reverse order."""
    steps: List[Transform] = field(default_factory=list)

    def apply(self, grid: Grid) -> Grid:
        for transform in self.steps:
            grid = transform.apply(grid)
        return grid

    def revert(self, grid: Grid) -> Grid:
        for transform in reversed(self.steps):
            grid = transform.revert(grid)
        return grid

    def prepend(self, transform: Transform) -> "TransformPipeline":
        return TransformPipeline([transform] + list(self.steps))

    def to_dict(self) -> List[Dict]:
        return [t.to_dict() for t in self.steps]

    @classmethod
    def from_dict(cls, data: List[Dict]) -> "TransformPipeline":
        return cls([transform_from_dict(d) for d in data])
