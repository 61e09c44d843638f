"""Colour-remap augmentation for test inputs that use colours unseen in training."""

import math
import numpy as np
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .automaton import Rule
from .constants import MAX_PERMUTATIONS
from .dataset import Task
from .executors import make_executor, prepare_substrate
from .gpu import DevicePool
from .grid import Grid, union_colors
from .substrate import to_grid
from .transforms import RemapColors


def _nonzero_sorted(colors: Set[int]) -> List[int]:
    return sorted(c for c in colors if c != 0)


def floyd_sample(total: int, count: int, rng: np.random.Generator) -> List[int]:
    """`count` distinct integers from [0, total) by Floyd's algorithm."""
    count = min(count, total)
    chosen: Set[int] = set()
    out = []
    for j in range(total - count, total):
        t = int(rng.integers(0, j + 1))
        x = j if t in chosen else t
        chosen.add(x)
        out.append(x)
    return out


def unrank_k_permutation(rank: int, items: Sequence[int], k: int) -> List[int]:
    """The `rank`-th ordered selection of `k` items, decoded in mixed radix."""
    avail = list(items)
    out = []
    for i in range(k):
        base = len(items) - i
        out.append(avail.pop(rank % base))
        rank //= base
    return out


def most_common_remap(counts: Dict[int, Tuple[int, RemapColors]]) -> RemapColors:
    """Remap behind the most frequent prediction; the latest entry wins ties."""
    best, best_count = None, -1
    for count, remap in counts.values():
        if count >= best_count:
            best, best_count = remap, count
    return best


def augment(
    grid: Grid,
    task: Task,
    rule: Rule,
    config,
    rng: np.random.Generator,
    pool: Optional[DevicePool] = None,
) -> Rule:
    """Prepend the colour remap that gives the most common prediction on `grid`.

    Only applies when `grid` contains colours absent from every train input.
    Candidate remaps send the grid's non-zero colours onto distinct train
    colours; up to `min(MAX_PERMUTATIONS, config.max_fun_evals)` of them are
    sampled. Empty predictions do not count. The rule is returned unchanged
    when no remap is needed or none gives a usable prediction.
    """
    train_colors = union_colors(task.train_inputs())
    if not (grid.colors - train_colors):
        return rule

    train_cols = _nonzero_sorted(train_colors)
    grid_cols = _nonzero_sorted(grid.colors)
    if len(grid_cols) > len(train_cols):
        return rule

    total = math.perm(len(train_cols), len(grid_cols))
    empty_hash = Grid.zeros(grid.height, grid.width).hash
    counts: Dict[int, Tuple[int, RemapColors]] = {}

    for rank in floyd_sample(total, min(MAX_PERMUTATIONS, config.max_fun_evals), rng):
        perm = unrank_k_permutation(rank, train_cols, len(grid_cols))
        remap = RemapColors()
        for src, dst in zip(grid_cols, perm):
            remap.map(src, dst)

        candidate = rule.with_pipeline(rule.pipeline.prepend(remap))
        executor = make_executor(candidate, prepare_substrate(grid, candidate), config.backend, pool)
        executor.run()
        pred = candidate.pipeline.revert(to_grid(executor.state))

        if pred.hash == empty_hash:
            continue
        if pred.hash in counts:
            count, first = counts[pred.hash]
            counts[pred.hash] = (count + 1, first)
        else:
            counts[pred.hash] = (1, remap)

    if not counts:
        return rule

    return rule.with_pipeline(rule.pipeline.prepend(most_common_remap(counts)))
