"""Majority vote over the predictions of several trained models."""

from typing import Dict, List, Optional, Sequence, Tuple

from .executors import Backend
from .gpu import DevicePool
from .grid import Grid
from .metrics import Model, inference


def vote(
    grid: Grid,
    models: Sequence[Model],
    k: int,
    backend: Backend = Backend.CPU,
    pool: Optional[DevicePool] = None,
    verbose: bool = False,
) -> List[Model]:
    """Return up to `k` models whose predictions for `grid` are the most common.

    Predictions identical to the input are ignored. Models with the same
    prediction count once each; ties keep first-seen order. When every
    prediction is ignored the first `k` models are returned unchanged.
    """
    counts: Dict[int, Tuple[Model, int]] = {}

    for model in models:
        pred = inference(grid, model, backend, pool)
        if pred.hash == grid.hash:
            continue
        if pred.hash in counts:
            first, count = counts[pred.hash]
            counts[pred.hash] = (first, count + 1)
        else:
            counts[pred.hash] = (model, 1)

    if not counts:
        return list(models[:k])

    entries = sorted(counts.items(), key=lambda item: item[1][1], reverse=True)

    if verbose:
        print("\nMajority vote results:")
        singles = 0
        for pred_hash, (_, count) in entries:
            if count > 1:
                print(f"hash:{pred_hash:016x}, count:{count}")
            else:
                singles += 1
        if singles > 0:
            print(f"{singles} grids with only one count")

    return [model for _, (model, _) in entries[:k]]
