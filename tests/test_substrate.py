import numpy as np
import pytest

from nca_evolve.constants import HID_START, INP_CHS, NUM_COLORS, RO_END, RO_START, RW_END, RW_START, VIS_CHS
from nca_evolve.grid import Grid, union_colors
from nca_evolve.substrate import EMBEDDING, clear_hidden, decode_color, from_grid, to_grid


def test_grid_hash_depends_on_shape_and_content():
    a = Grid([[1, 2, 3], [4, 5, 6]])
    b = Grid([[1, 2, 3], [4, 5, 6]])
    c = Grid([[1, 2], [3, 4], [5, 6]])
    assert a == b
    assert a.hash == b.hash
    assert a.hash != c.hash
    assert Grid.zeros(2, 3).hash != Grid.zeros(3, 2).hash


def test_grid_is_read_only():
    grid = Grid([[1, 2], [3, 4]])
    with pytest.raises(ValueError):
        grid.data[0, 0] = 9


def test_grid_rejects_empty():
    with pytest.raises(ValueError):
        Grid([])


def test_grid_colors():
    grids = [Grid([[0, 1], [1, 2]]), Grid([[7]])]
    assert grids[0].colors == {0, 1, 2}
    assert union_colors(grids) == {0, 1, 2, 7}


def test_from_grid_writes_read_only_channels():
    grid = Grid([[0, 5], [9, 1]])
    state = from_grid(grid)
    assert state.shape == (2, 2, INP_CHS)
    assert state.dtype == np.float32
    np.testing.assert_array_equal(state[1, 0, RO_START:RO_END], EMBEDDING[9])
    assert not state[:, :, RW_START:].any()


def test_every_color_decodes_to_itself():
    grid = Grid(np.arange(10).reshape(2, 5))
    state = from_grid(grid)
    state[:, :, RW_START:RW_END] = state[:, :, RO_START:RO_END]
    assert to_grid(state) == grid


def test_decode_thresholds_before_matching():
    assert decode_color([0.6, 0.0, 0.7, 0.2]) == 5
    assert decode_color([0.4, 0.4, 0.4, 0.4]) == 0
    # Three channels on: first colour with the best overlap wins
    assert decode_color([1.0, 1.0, 1.0, 0.0]) == 5


def test_clear_hidden_returns_copy():
    state = from_grid(Grid([[1, 2]]))
    state[:, :, HID_START:] = 0.9
    cleared = clear_hidden(state)
    assert not cleared[:, :, HID_START:].any()
    assert state[:, :, HID_START:].all()


def test_embedding_has_one_row_per_colour():
    assert EMBEDDING.shape == (NUM_COLORS, VIS_CHS)
    assert len({tuple(row) for row in EMBEDDING}) == NUM_COLORS
