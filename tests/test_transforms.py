import numpy as np
import pytest

from nca_evolve.grid import Grid
from nca_evolve.transforms import (
    TRANSFORMS, FlipHorizontal, ReflectAntiDiagonal, RemapColors, Rotate90CW,
    TransformPipeline, transform_from_dict,
)


GRID = Grid([[1, 2, 3], [4, 5, 6]])


@pytest.mark.parametrize("name", sorted(TRANSFORMS))
def test_revert_undoes_apply(name):
    transform = TRANSFORMS[name]()
    assert transform.revert(transform.apply(GRID)) == GRID


def test_rotate_clockwise():
    assert Rotate90CW().apply(Grid([[1, 2], [3, 4]])) == Grid([[3, 1], [4, 2]])


def test_anti_diagonal_reflection():
    assert ReflectAntiDiagonal().apply(Grid([[1, 2], [3, 4]])) == Grid([[4, 2], [3, 1]])


def test_remap_colors():
    remap = RemapColors()
    remap.map(3, 7)
    grid = Grid([[0, 3], [3, 1]])
    mapped = remap.apply(grid)
    assert mapped == Grid([[0, 7], [7, 1]])
    assert remap.revert(mapped) == grid


def test_pipeline_reverts_in_reverse_order():
    pipeline = TransformPipeline([Rotate90CW(), FlipHorizontal()])
    out = pipeline.apply(GRID)
    np.testing.assert_array_equal(out.data, np.rot90(GRID.data, k=-1)[:, ::-1])
    assert pipeline.revert(out) == GRID


def test_pipeline_dict_round_trip():
    remap = RemapColors()
    remap.map(2, 5)
    pipeline = TransformPipeline([Rotate90CW(), remap])
    restored = TransformPipeline.from_dict(pipeline.to_dict())
    assert restored == pipeline
    assert restored.apply(GRID) == pipeline.apply(GRID)


def test_unknown_transform():
    with pytest.raises(ValueError):
        transform_from_dict({"type": "shear"})
