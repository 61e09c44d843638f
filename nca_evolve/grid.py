"""Immutable ARC grids with a stable content hash."""

import hashlib
import numpy as np
from typing import List, Sequence, Set, Tuple


class Grid:
    """A read-only matrix of colours 0-9.

    The hash is computed once from shape and content so that predictions can be
    compared and counted cheaply (voting, augmentation, parity checks).
    """

    __slots__ = ("_data", "_hash")

    def __init__(self, data):
        arr = np.array(data, dtype=np.uint8)
        if arr.ndim != 2 or arr.size == 0:
            raise ValueError(f"Grid must be a non-empty 2D matrix, got shape {arr.shape}")
        arr.setflags(write=False)
        self._data = arr
        digest = hashlib.blake2b(digest_size=8)
        digest.update(np.array(arr.shape, dtype=np.int64).tobytes())
        digest.update(arr.tobytes())
        self._hash = int.from_bytes(digest.digest(), "little")

    @classmethod
    def zeros(cls, height: int, width: int) -> "Grid":
        return cls(np.zeros((height, width), dtype=np.uint8))

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def size(self) -> int:
        return self._data.size

    @property
    def hash(self) -> int:
        return self._hash

    @property
    def colors(self) -> Set[int]:
        return set(int(c) for c in np.unique(self._data))

    def to_list(self) -> List[List[int]]:
        return self._data.tolist()

    def __getitem__(self, index):
        return self._data[index]

    def __hash__(self):
        return self._hash

    def __eq__(self, other):
        if not isinstance(other, Grid):
            return False
        return self._hash == other._hash and np.array_equal(self._data, other._data)

    def __repr__(self):
        return f"Grid({self.height}x{self.width}, hash={self._hash:016x})"


def union_colors(grids: Sequence[Grid]) -> Set[int]:
    """Colours present in any of the grids."""
    colors: Set[int] = set()
    for grid in grids:
        colors |= grid.colors
    return colors
