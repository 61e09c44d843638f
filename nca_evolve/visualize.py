"""Visualization utilities for grids, rule runs and training curves."""

import numpy as np
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from PIL import Image

from .automaton import Rule
from .dataset import Task
from .executors import CpuExecutor, prepare_substrate
from .grid import Grid
from .metrics import Model, TrainMetrics, inference
from .substrate import to_grid

# ARC colour palette, indexed by colour
PALETTE = np.array([
    [0, 0, 0],
    [0, 116, 217],
    [255, 65, 54],
    [46, 204, 64],
    [255, 220, 0],
    [170, 170, 170],
    [240, 18, 190],
    [255, 133, 27],
    [127, 219, 255],
    [135, 12, 37],
], dtype=np.uint8)

BORDER_COLOR = np.array([50, 50, 50], dtype=np.uint8)


def render_grid_fast(grid: Grid, cell_size: int = 16) -> np.ndarray:
    """Vectorized rendering of a grid as an RGB array, one square per cell."""
    upscaled = np.repeat(np.repeat(grid.data, cell_size, axis=0), cell_size, axis=1)
    img = PALETTE[upscaled]
    if cell_size > 2:
        # Thin grid lines between cells
        img[::cell_size, :] = BORDER_COLOR
        img[:, ::cell_size] = BORDER_COLOR
    return img


def save_image(grid: Grid, filepath: str, cell_size: int = 16):
    """Save grid as PNG image."""
    Image.fromarray(render_grid_fast(grid, cell_size)).save(filepath)


def record_run(rule: Rule, grid: Grid) -> List[Grid]:
    """Decoded prediction after every step of a CPU run, starting with step 0."""
    executor = CpuExecutor(rule, prepare_substrate(grid, rule))
    frames = [rule.pipeline.revert(to_grid(executor.state))]
    while not executor.terminated:
        before = executor.steps
        executor.step()
        if executor.steps > before:
            frames.append(rule.pipeline.revert(to_grid(executor.state)))
    return frames


def save_animation(
    frames: Sequence[Grid],
    filepath: str,
    cell_size: int = 16,
    duration: int = 200,
    loop: int = 0,
):
    """Save a sequence of grids as animated GIF."""
    images = [Image.fromarray(render_grid_fast(g, cell_size)) for g in frames]
    if images:
        images[0].save(
            filepath,
            save_all=True,
            append_images=images[1:],
            duration=duration,
            loop=loop,
        )


def create_task_image(
    task: Task,
    model: Model,
    output_path: str,
    cell_size: int = 16,
):
    """One row per train example: input, prediction, target."""
    padding = 10
    rows = []
    for example in task.train:
        pred = inference(example.input, model)
        rows.append([example.input, pred, example.output])

    col_widths = [max(row[c].width for row in rows) * cell_size for c in range(3)]
    row_heights = [max(g.height for g in row) * cell_size for row in rows]

    total_width = sum(col_widths) + 4 * padding
    total_height = sum(row_heights) + (len(rows) + 1) * padding
    canvas = Image.new("RGB", (total_width, total_height), (30, 30, 30))

    y = padding
    for row, height in zip(rows, row_heights):
        x = padding
        for grid, width in zip(row, col_widths):
            canvas.paste(Image.fromarray(render_grid_fast(grid, cell_size)), (x, y))
            x += width + padding
        y += height + padding

    canvas.save(output_path)


def plot_metrics(metrics: TrainMetrics, output_path: str, title: Optional[str] = None):
    """Fitness and accuracy per individual across epochs."""
    fig, (ax_fit, ax_acc) = plt.subplots(2, 1, figsize=(8, 6), sharex=True)

    for ind_id, records in metrics.by_individual().items():
        epochs = [r.epoch for r in records]
        ax_fit.plot(epochs, [r.fitness for r in records], linewidth=0.8, alpha=0.7)
        ax_acc.plot(epochs, [r.accuracy for r in records], linewidth=0.8, alpha=0.7)

    ax_fit.set_yscale("log")
    ax_fit.set_ylabel("fitness")
    ax_acc.set_ylim(0.0, 1.05)
    ax_acc.set_ylabel("accuracy")
    ax_acc.set_xlabel("epoch")
    if title:
        fig.suptitle(title)

    fig.tight_layout()
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
