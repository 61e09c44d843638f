"""Grid <-> substrate encoding.

A substrate is a float32 array of shape (height, width, INP_CHS). The input
grid is embedded into the read-only channels; predictions are decoded from the
read-write channels.
"""

import numpy as np

from .constants import (
    HID_END, HID_START, INP_CHS, RO_END, RO_START, RW_END, RW_START,
)
from .grid import Grid

# Colour -> visible channel pattern. Colour 0 is the empty pattern.
EMBEDDING = np.array([
    [0., 0., 0., 0.],
    [1., 0., 0., 0.],
    [0., 1., 0., 0.],
    [0., 0., 1., 0.],
    [0., 0., 0., 1.],
    [1., 0., 1., 0.],
    [1., 0., 0., 1.],
    [0., 1., 1., 0.],
    [0., 1., 0., 1.],
    [0., 0., 1., 1.],
], dtype=np.float32)


def from_grid(grid: Grid) -> np.ndarray:
    """Embed a grid into the read-only channels of a fresh substrate."""
    state = np.zeros((grid.height, grid.width, INP_CHS), dtype=np.float32)
    state[:, :, RO_START:RO_END] = EMBEDDING[grid.data]
    return state


def decode_colors(visible: np.ndarray) -> np.ndarray:
    """Nearest-prototype decoding of (..., VIS_CHS) channel vectors.

    Channels are thresholded to 0/1 first; ties go to the lowest colour index
    (argmax returns the first maximum).
    """
    binary = (visible > 0.5).astype(np.float32)
    dots = binary @ EMBEDDING.T
    return np.argmax(dots, axis=-1).astype(np.uint8)


def decode_color(visible) -> int:
    return int(decode_colors(np.asarray(visible, dtype=np.float32)))


def to_grid(state: np.ndarray) -> Grid:
    """Decode the read-write channels of a substrate back into a grid."""
    return Grid(decode_colors(state[:, :, RW_START:RW_END]))


def clear_hidden(state: np.ndarray) -> np.ndarray:
    """Copy of `state` with the hidden channels zeroed."""
    cleared = state.copy()
    cleared[:, :, HID_START:HID_END] = 0.0
    return cleared


def visible_target(grid: Grid) -> np.ndarray:
    """Embedding of a target grid, shaped like the read-write channels."""
    return from_grid(grid)[:, :, RO_START:RO_END]
