"""Execution state machines for single rules and staged ensembles."""

import copy
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .automaton import Ensemble, Rule, update_substrate
from .constants import CONVERGENCE_THRESHOLD
from .grid import Grid
from .gpu import DevicePool, GpuBatch
from .substrate import clear_hidden, from_grid


class Backend(Enum):
    CPU = "CPU"
    GPU = "GPU"


class StopKind(Enum):
    MAX_STEPS = "MaxSteps"
    CONVERGENCE = "Convergence"


@dataclass(frozen=True)
class Termination:
    kind: StopKind
    steps: int

    @classmethod
    def max_steps(cls, steps: int) -> "Termination":
        return cls(StopKind.MAX_STEPS, steps)

    @classmethod
    def convergence(cls, steps: int) -> "Termination":
        return cls(StopKind.CONVERGENCE, steps)

    def __str__(self):
        if self.kind == StopKind.CONVERGENCE:
            return f"Convergence: {self.steps}"
        return "MaxSteps"


def prepare_substrate(grid: Grid, rule: Rule) -> np.ndarray:
    """Apply the rule's transforms to the grid and encode it."""
    return from_grid(rule.pipeline.apply(grid))


class CpuExecutor:
    """Steps one rule on one substrate.

    Running while `reason is None`; once terminated, further `step()` calls
    return the same reason and leave the substrate alone.
    """

    def __init__(self, rule: Rule, substrate: np.ndarray):
        self.rule = rule
        self.state = np.array(substrate, dtype=np.float32)
        self.prev_state = self.state.copy()
        self.steps = 0
        self.reason: Optional[Termination] = None

    @classmethod
    def from_grid(cls, rule: Rule, grid: Grid) -> "CpuExecutor":
        return cls(rule, prepare_substrate(grid, rule))

    @property
    def terminated(self) -> bool:
        return self.reason is not None

    def step(self) -> Optional[Termination]:
        if self.reason is not None:
            return self.reason

        if self.steps >= self.rule.max_steps:
            self.reason = Termination.max_steps(self.steps)
            return self.reason

        self.prev_state = self.state
        self.state = update_substrate(self.state, self.rule)
        self.steps += 1

        if np.abs(self.prev_state - self.state).max() < CONVERGENCE_THRESHOLD:
            self.reason = Termination.convergence(self.steps)
            return self.reason

        return None

    def run(self) -> Termination:
        while True:
            reason = self.step()
            if reason is not None:
                return reason


class GpuExecutor:
    """Single rule on the batched GPU path. Runs to completion in one launch."""

    def __init__(self, rule: Rule, substrate: np.ndarray, pool: Optional[DevicePool] = None):
        self.rule = rule
        self.state = np.array(substrate, dtype=np.float32)
        self.prev_state = self.state.copy()
        self.steps = 0
        self.reason: Optional[Termination] = None
        self.pool = pool

    @classmethod
    def from_grid(cls, rule: Rule, grid: Grid, pool: Optional[DevicePool] = None) -> "GpuExecutor":
        return cls(rule, prepare_substrate(grid, rule), pool)

    @property
    def terminated(self) -> bool:
        return self.reason is not None

    def step(self) -> Optional[Termination]:
        raise NotImplementedError("step() is not available on the GPU backend; use run()")

    def run(self) -> Termination:
        if self.reason is not None:
            return self.reason
        batch = GpuBatch([self.rule], [[self.state]], self.pool).run()
        self.state = batch.states[0][0]
        self.prev_state = batch.prev_states[0][0]
        self.steps = int(batch.steps[0, 0])
        if batch.converged[0, 0]:
            self.reason = Termination.convergence(self.steps)
        else:
            self.reason = Termination.max_steps(self.steps)
        return self.reason


def make_executor(rule: Rule, substrate: np.ndarray, backend: Backend = Backend.CPU, pool: Optional[DevicePool] = None):
    if backend == Backend.GPU:
        return GpuExecutor(rule, substrate, pool)
    return CpuExecutor(rule, substrate)


class EnsembleExecutor:
    """Runs the rules of an ensemble one stage after another.

    Each stage starts from the previous stage's final substrate with the
    hidden channels cleared.
    """

    def __init__(self, ensemble: Ensemble, grid: Grid, backend: Backend = Backend.CPU, pool: Optional[DevicePool] = None):
        if len(ensemble) == 0:
            raise ValueError("Ensemble must contain at least one rule")
        self.ensemble = Ensemble(list(ensemble.rules), ensemble.task_id, ensemble.pipeline)
        self.backend = backend
        self.pool = pool

        initial = from_grid(ensemble.pipeline.apply(grid))
        self.executors = [make_executor(rule, initial, backend, pool) for rule in ensemble.rules]
        self.seeds: List[np.ndarray] = [initial] + [None] * (len(ensemble) - 1)
        self.active = 0
        self.steps = 0
        self.reasons: List[Optional[Termination]] = [None] * len(ensemble)

    def __len__(self):
        return len(self.executors)

    @property
    def terminated(self) -> bool:
        return self.active == len(self.executors) - 1 and self.reasons[self.active] is not None

    @property
    def substrate(self) -> np.ndarray:
        return self.executors[self.active].state

    @property
    def last(self):
        return self.executors[-1]

    def _advance(self, reason: Termination) -> Optional[Termination]:
        self.reasons[self.active] = reason
        if self.active == len(self.executors) - 1:
            return reason

        seed = clear_hidden(self.executors[self.active].state)
        self.active += 1
        self.seeds[self.active] = seed
        rule = self.executors[self.active].rule
        self.executors[self.active] = make_executor(rule, seed, self.backend, self.pool)
        self.reasons[self.active] = None
        return None

    def step(self) -> Optional[Termination]:
        if self.terminated:
            return self.reasons[self.active]

        reason = self.executors[self.active].step()
        self.steps += 1
        if reason is None:
            return None
        return self._advance(reason)

    def run(self) -> Termination:
        while True:
            if self.terminated:
                return self.reasons[self.active]
            reason = self.executors[self.active].run()
            result = self._advance(reason)
            if result is not None:
                return result

    def upsert(self, rule: Rule, index: int):
        """Replace stage `index` (or append one when `index == len(self)`).

        The stage restarts from its own seed (for an appended stage, the last
        stage's current substrate) with hidden channels cleared and no steps
        taken. Earlier stages keep their results; later stages are re-seeded
        once the replaced stage terminates.
        """
        if index < 0 or index > len(self.executors):
            raise IndexError(f"Stage index {index} out of range for {len(self.executors)} stages")

        if index == len(self.executors):
            seed = clear_hidden(self.executors[-1].state)
            self.executors.append(make_executor(rule, seed, self.backend, self.pool))
            self.seeds.append(seed)
            self.reasons.append(None)
            self.ensemble.rules.append(rule)
        else:
            seed = self.seeds[index]
            if seed is None:
                seed = self.executors[index - 1].state
            seed = clear_hidden(seed)
            self.executors[index] = make_executor(rule, seed, self.backend, self.pool)
            self.seeds[index] = seed
            self.ensemble.rules[index] = rule
            for i in range(index, len(self.reasons)):
                self.reasons[i] = None

        self.active = index

    def fork(self) -> "EnsembleExecutor":
        """Independent copy sharing no mutable state with this executor."""
        clone = copy.copy(self)
        clone.ensemble = Ensemble(list(self.ensemble.rules), self.ensemble.task_id, self.ensemble.pipeline)
        clone.executors = [copy.copy(e) for e in self.executors]
        clone.seeds = list(self.seeds)
        clone.reasons = list(self.reasons)
        return clone
