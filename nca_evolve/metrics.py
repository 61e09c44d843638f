"""Accuracy, inference and fitness for rules and ensembles, plus training records."""

import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from .automaton import Ensemble, Rule
from .constants import RW_END, RW_START
from .dataset import Task
from .executors import Backend, CpuExecutor, EnsembleExecutor, prepare_substrate
from .gpu import DevicePool, GpuBatch
from .grid import Grid
from .substrate import to_grid, visible_target

Model = Union[Rule, Ensemble]


def compute_accuracy(pred: Grid, target: Grid) -> float:
    """Fraction of matching cells; 0 when the shapes differ."""
    if pred.shape != target.shape:
        return 0.0
    return float(np.mean(pred.data == target.data))


def _as_ensemble(model: Model) -> Ensemble:
    if isinstance(model, Rule):
        return Ensemble.from_rule(model)
    return model


def inference(grid: Grid, model: Model, backend: Backend = Backend.CPU, pool: Optional[DevicePool] = None) -> Grid:
    """Run a rule or ensemble on `grid` and return the decoded prediction."""
    ensemble = _as_ensemble(model)
    executor = EnsembleExecutor(ensemble, grid, backend, pool)
    executor.run()
    pred = to_grid(executor.last.state)
    return ensemble.pipeline.revert(pred)


def evaluate(input: Grid, output: Grid, model: Model, backend: Backend = Backend.CPU, pool: Optional[DevicePool] = None) -> float:
    return compute_accuracy(inference(input, model, backend, pool), output)


def mean_accuracy(task: Task, model: Model, backend: Backend = Backend.CPU, pool: Optional[DevicePool] = None) -> List[float]:
    """Per-example train accuracies of `model` on `task`."""
    return [evaluate(ex.input, ex.output, model, backend, pool) for ex in task.train]


def weight_cost(rule: Rule, config) -> float:
    w = rule.weights.astype(np.float64)
    return config.l2_coeff * float(np.mean(w ** 2)) + config.l1_coeff * float(np.mean(np.abs(w)))


def stage_cost(prev_state: np.ndarray, state: np.ndarray, steps: int, rule: Rule, config) -> float:
    """Oscillation, non-convergence and weight penalties of one stage."""
    diff = prev_state.astype(np.float64) - state.astype(np.float64)
    cost = config.oscillation_cost_coeff * float(np.mean(diff ** 2))
    if steps == rule.max_steps:
        cost += config.non_convergence_cost_coeff
    return cost + weight_cost(rule, config)


def compute_fitness(
    state: np.ndarray,
    prev_state: np.ndarray,
    steps: int,
    target_state: np.ndarray,
    rules: Sequence[Rule],
    config,
) -> float:
    """Error of the read-write channels against the target plus penalties.

    `target_state` holds the target's embedding in its read-only channels (or
    is already shaped like the read-write channels). The step penalties apply
    to the stage that produced `state`, the last of `rules`; the weight
    penalties apply to every rule.
    """
    pred = state[:, :, RW_START:RW_END].astype(np.float64)
    tgt = target_state[:, :, :RW_END - RW_START].astype(np.float64)
    err = float(np.mean((pred - tgt) ** 2))
    fitness = err + stage_cost(prev_state, state, steps, rules[-1], config)
    for rule in rules[:-1]:
        fitness += weight_cost(rule, config)
    return fitness


def ensemble_fitness(executor: EnsembleExecutor, target: Grid, config) -> float:
    """Fitness of a fully run ensemble executor, summing every stage's penalties."""
    pred = executor.last.state[:, :, RW_START:RW_END].astype(np.float64)
    tgt = visible_target(executor.ensemble.pipeline.apply(target)).astype(np.float64)
    if pred.shape != tgt.shape:
        raise ValueError(f"Prediction shape {pred.shape[:2]} does not match target shape {tgt.shape[:2]}")
    fitness = float(np.mean((pred - tgt) ** 2))
    for stage in executor.executors:
        fitness += stage_cost(stage.prev_state, stage.state, stage.steps, stage.rule, config)
    return fitness


def batch_fitness(
    vectors: np.ndarray,
    task: Task,
    config,
    pipeline=None,
    pool: Optional[DevicePool] = None,
) -> np.ndarray:
    """Mean fitness over every train example for each parameter vector.

    On the GPU backend all candidates and examples go through one batched run;
    on the CPU backend each (candidate, example) pair gets its own executor.
    """
    vectors = np.atleast_2d(vectors)
    rules = [Rule.from_vector(v, config.max_steps, pipeline) for v in vectors]
    substrates = [prepare_substrate(ex.input, rules[0]) for ex in task.train]
    targets = [visible_target(rules[0].pipeline.apply(ex.output)) for ex in task.train]

    scores = np.zeros((len(rules), len(task.train)), dtype=np.float64)
    if config.backend == Backend.GPU:
        batch = GpuBatch.from_substrates(rules, substrates, pool).run()
        for p, rule in enumerate(rules):
            for g, target in enumerate(targets):
                scores[p, g] = compute_fitness(
                    batch.states[p][g], batch.prev_states[p][g], int(batch.steps[p, g]), target, [rule], config,
                )
    else:
        for p, rule in enumerate(rules):
            for g, (substrate, target) in enumerate(zip(substrates, targets)):
                executor = CpuExecutor(rule, substrate)
                executor.run()
                scores[p, g] = compute_fitness(
                    executor.state, executor.prev_state, executor.steps, target, [rule], config,
                )

    return scores.mean(axis=1)


@dataclass
class IndividualMetrics:
    epoch: int
    id: int
    fitness: float
    accuracy: float

    def to_dict(self) -> Dict:
        return {"epoch": self.epoch, "id": self.id, "fitness": self.fitness, "accuracy": self.accuracy}


@dataclass
class TrainMetrics:
    """Per-individual fitness and accuracy, one record per individual per epoch."""
    records: List[IndividualMetrics] = field(default_factory=list)

    def add(self, epoch: int, id: int, fitness: float, accuracy: float):
        self.records.append(IndividualMetrics(epoch, id, fitness, accuracy))

    def by_individual(self) -> Dict[int, List[IndividualMetrics]]:
        grouped: Dict[int, List[IndividualMetrics]] = {}
        for record in self.records:
            grouped.setdefault(record.id, []).append(record)
        return grouped

    def epochs(self) -> List[int]:
        return sorted({r.epoch for r in self.records})

    def to_dict(self) -> Dict:
        return {"records": [r.to_dict() for r in self.records]}

    @classmethod
    def from_dict(cls, data: Dict) -> "TrainMetrics":
        return cls([IndividualMetrics(**r) for r in data.get("records", [])])


@dataclass
class TaskReport:
    """Outcome of training on one task."""
    task_id: str
    n_examples_train: int
    n_examples_test: int
    train_accs: List[float]
    test_accs: List[float] = field(default_factory=list)
    duration_ms: Optional[int] = None

    @property
    def solved(self) -> bool:
        return bool(self.train_accs) and all(acc == 1.0 for acc in self.train_accs)

    def to_dict(self) -> Dict:
        return {
            "task_id": self.task_id,
            "n_examples_train": self.n_examples_train,
            "n_examples_test": self.n_examples_test,
            "train_accs": self.train_accs,
            "test_accs": self.test_accs,
            "duration_ms": self.duration_ms,
        }
