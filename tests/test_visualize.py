from PIL import Image

from nca_evolve.automaton import Rule
from nca_evolve.dataset import Task, TrainExample
from nca_evolve.grid import Grid
from nca_evolve.metrics import TrainMetrics
from nca_evolve.visualize import (
    PALETTE, create_task_image, plot_metrics, record_run, render_grid_fast, save_animation,
)

GRID = Grid([[0, 1, 2], [3, 4, 5]])


def test_render_uses_palette():
    img = render_grid_fast(GRID, cell_size=4)
    assert img.shape == (8, 12, 3)
    assert tuple(img[5, 9]) == tuple(PALETTE[5])


def test_record_run_has_one_frame_per_step():
    frames = record_run(Rule.passthrough(10), GRID)
    assert len(frames) == 3
    assert frames[0] == Grid.zeros(2, 3)
    assert frames[-1] == GRID


def test_saves_images(tmp_path):
    task = Task("t", [TrainExample(GRID, GRID)])
    create_task_image(task, Rule.passthrough(4), str(tmp_path / "task.png"), cell_size=4)
    assert Image.open(tmp_path / "task.png").size[0] > 3 * 12

    save_animation(record_run(Rule.passthrough(4), GRID), str(tmp_path / "run.gif"), cell_size=4)
    assert (tmp_path / "run.gif").exists()

    metrics = TrainMetrics()
    metrics.add(0, 0, 0.5, 0.1)
    metrics.add(1, 0, 0.2, 0.6)
    plot_metrics(metrics, str(tmp_path / "plots" / "metrics.png"), title="t")
    assert (tmp_path / "plots" / "metrics.png").exists()
