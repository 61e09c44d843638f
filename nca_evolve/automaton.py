"""Neural cellular automaton rules and the CPU update kernel."""

import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .constants import (
    ALIVE_THRESHOLD, INP_CHS, NHBD, NHBD_CENTER, NHBD_LEN, N_BIASES, N_PARAMS,
    N_WEIGHTS, OUT_CHS, RO_START, RW_START, VIS_CHS,
)
from .transforms import TransformPipeline

WEIGHT_SHAPE = (NHBD_LEN, INP_CHS, OUT_CHS)


@dataclass(eq=False)
class Rule:
    """One local-update automaton.

    `weights[ni, ch, o]` is the contribution of input channel `ch` of the
    neighbour at `NHBD[ni]` to output channel `o`. Output channel `o` writes
    substrate channel `VIS_CHS + o` (read-write visible, then hidden).
    """
    weights: np.ndarray
    biases: np.ndarray
    max_steps: int
    pipeline: TransformPipeline = field(default_factory=TransformPipeline)

    def __post_init__(self):
        self.weights = np.asarray(self.weights, dtype=np.float32).reshape(WEIGHT_SHAPE)
        self.biases = np.asarray(self.biases, dtype=np.float32).reshape(OUT_CHS)

    @classmethod
    def zeros(cls, max_steps: int) -> "Rule":
        return cls(np.zeros(WEIGHT_SHAPE), np.zeros(OUT_CHS), max_steps)

    @classmethod
    def random(cls, max_steps: int, rng: Optional[np.random.Generator] = None, scale: float = 0.2) -> "Rule":
        """Small normally distributed weights and biases."""
        if rng is None:
            rng = np.random.default_rng()
        return cls(
            rng.normal(0.0, scale, size=WEIGHT_SHAPE),
            rng.normal(0.0, scale, size=OUT_CHS),
            max_steps,
        )

    @classmethod
    def identity(cls, max_steps: int) -> "Rule":
        """Each read-write channel copies itself at the centre tap."""
        rule = cls.zeros(max_steps)
        for i in range(VIS_CHS):
            rule.weights[NHBD_CENTER, RW_START + i, i] = 1.0
        return rule

    @classmethod
    def passthrough(cls, max_steps: int) -> "Rule":
        """Each read-write channel copies the matching read-only channel."""
        rule = cls.zeros(max_steps)
        for i in range(VIS_CHS):
            rule.weights[NHBD_CENTER, RO_START + i, i] = 1.0
        return rule

    @classmethod
    def from_vector(cls, params, max_steps: int, pipeline: Optional[TransformPipeline] = None) -> "Rule":
        params = np.array(params, dtype=np.float32).ravel()
        if params.size != N_PARAMS:
            raise ValueError(f"Expected {N_PARAMS} parameters ({N_WEIGHTS} weights + {N_BIASES} biases); found {params.size}")
        return cls(
            params[:N_WEIGHTS],
            params[N_WEIGHTS:],
            max_steps,
            pipeline if pipeline is not None else TransformPipeline(),
        )

    def to_vector(self) -> np.ndarray:
        return np.concatenate([self.weights.ravel(), self.biases.ravel()])

    def with_pipeline(self, pipeline: TransformPipeline) -> "Rule":
        return Rule(self.weights.copy(), self.biases.copy(), self.max_steps, pipeline)

    def to_dict(self):
        return {
            "weights": self.weights.ravel().tolist(),
            "biases": self.biases.tolist(),
            "max_steps": self.max_steps,
            "pipeline": self.pipeline.to_dict(),
        }

    @classmethod
    def from_dict(cls, data) -> "Rule":
        params = list(data["weights"]) + list(data["biases"])
        return cls.from_vector(params, data["max_steps"], TransformPipeline.from_dict(data.get("pipeline", [])))


@dataclass(eq=False)
class Ensemble:
    """Rules applied one after another, sharing one transform pipeline."""
    rules: List[Rule]
    task_id: str = ""
    pipeline: TransformPipeline = field(default_factory=TransformPipeline)

    @classmethod
    def from_rule(cls, rule: Rule, task_id: str = "") -> "Ensemble":
        return cls([rule], task_id, rule.pipeline)

    def __len__(self):
        return len(self.rules)

    def to_dict(self):
        return {
            "task_id": self.task_id,
            "rules": [r.to_dict() for r in self.rules],
            "pipeline": self.pipeline.to_dict(),
        }

    @classmethod
    def from_dict(cls, data) -> "Ensemble":
        return cls(
            [Rule.from_dict(r) for r in data["rules"]],
            data.get("task_id", ""),
            TransformPipeline.from_dict(data.get("pipeline", [])),
        )


def neighbor_slices(height: int, width: int, dx: int, dy: int) -> Tuple[Tuple[slice, slice], Tuple[slice, slice]]:
    """Destination and source slices for the in-bounds part of a neighbour shift.

    `dst` cells (y, x) read the neighbour at (y + dy, x + dx) from `src`.
    """
    y0, y1 = max(0, -dy), min(height, height - dy)
    x0, x1 = max(0, -dx), min(width, width - dx)
    dst = (slice(y0, y1), slice(x0, x1))
    src = (slice(y0 + dy, y1 + dy), slice(x0 + dx, x1 + dx))
    return dst, src


def update_substrate(state: np.ndarray, rule: Rule) -> np.ndarray:
    """Apply one alive-masked update step and return the next substrate.

    Per output channel the sum runs over neighbours in `NHBD` order, then over
    input channels in index order, as an unfused float32 multiply followed by
    an add. Each product is rounded before it is accumulated, so results can
    differ in the last bit from a fused multiply-add kernel. The batched GPU
    kernel uses the same order and rounding so both produce the same bits.
    """
    height, width, _ = state.shape
    zero = np.float32(0.0)
    acc = np.empty((height, width, OUT_CHS), dtype=np.float32)
    acc[...] = rule.biases

    for ni, (dx, dy) in enumerate(NHBD):
        dst, src = neighbor_slices(height, width, dx, dy)
        nbr = np.zeros_like(state)
        inside = np.zeros((height, width), dtype=bool)
        nbr[dst] = state[src]
        inside[dst] = True

        for ch in range(INP_CHS):
            v = nbr[:, :, ch]
            alive = inside & (v >= ALIVE_THRESHOLD)
            contrib = v[:, :, None] * rule.weights[ni, ch]
            acc += np.where(alive[:, :, None], contrib, zero)

    nxt = state.copy()
    nxt[:, :, RW_START:] = np.clip(acc, zero, np.float32(1.0))
    return nxt
