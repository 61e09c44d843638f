"""Population training loop: subset LM-CMA hill climbing with tournament selection."""

import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .automaton import Ensemble, Rule
from .config import Config
from .constants import N_PARAMS
from .dataset import Task
from .executors import Backend, EnsembleExecutor
from .gpu import DevicePool, make_worker_initializer
from .lmcma import LMCMA
from .metrics import TrainMetrics, batch_fitness, ensemble_fitness, mean_accuracy


class Optimize(Enum):
    MINIMIZE = "minimize"
    MAXIMIZE = "maximize"


@dataclass
class Individual:
    """A candidate rule with its fitness and train accuracy."""
    id: int
    rule: Rule
    fitness: float = float("inf")
    accuracy: float = 0.0
    train_accs: List[float] = field(default_factory=list)
    subset: Optional[np.ndarray] = None

    @property
    def score(self) -> float:
        return self.fitness

    @property
    def solved(self) -> bool:
        return self.accuracy == 1.0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "rule": self.rule.to_dict(),
            "fitness": self.fitness,
            "accuracy": self.accuracy,
            "train_accs": self.train_accs,
            "subset": None if self.subset is None else self.subset.tolist(),
        }


@dataclass
class TrainOutput:
    """Solved and remaining individuals, best first, with per-epoch metrics."""
    individuals: List[Individual]
    metrics: TrainMetrics

    @property
    def best(self) -> Optional[Individual]:
        return self.individuals[0] if self.individuals else None

    def to_dict(self) -> Dict:
        return {
            "individuals": [ind.to_dict() for ind in self.individuals],
            "metrics": self.metrics.to_dict(),
        }


class TournamentSelector:
    """Partition the pool into random groups of `k` and keep the best of each.

    Groups are drawn without replacement, so the output holds
    `ceil(len(population) / k)` individuals.
    """

    def __init__(self, k: int, mode: Optimize = Optimize.MINIMIZE):
        if k < 1:
            raise ValueError("Tournament size k must be >= 1")
        self.k = k
        self.mode = mode

    def select(self, population: Sequence[Individual], rng: np.random.Generator) -> List[Individual]:
        if len(population) == 0:
            raise ValueError("Population must not be empty")

        order = rng.permutation(len(population))
        selected = []
        for start in range(0, len(order), self.k):
            group = [population[i] for i in order[start:start + self.k]]
            if self.mode == Optimize.MINIMIZE:
                selected.append(min(group, key=lambda ind: ind.score))
            else:
                selected.append(max(group, key=lambda ind: ind.score))
        return selected


def _resolve_pool(config: Config, pool: Optional[DevicePool]) -> Optional[DevicePool]:
    if config.backend == Backend.GPU and pool is None:
        return DevicePool.shared(threads_per_device=config.threads_per_device)
    return pool


def individual_rng(seed: int, epoch: int, id: int) -> np.random.Generator:
    """Generator for one individual in one epoch, independent of thread scheduling."""
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(epoch, id)))


def new_individual(id: int, task: Task, config: Config, pool: Optional[DevicePool] = None) -> Individual:
    """Fresh individual with a zeroed rule, scored on the train examples."""
    rule = Rule.zeros(config.max_steps)
    fitness = float(batch_fitness(rule.to_vector()[None], task, config, pool=pool)[0])
    accs = mean_accuracy(task, rule, config.backend, pool)
    return Individual(id=id, rule=rule, fitness=fitness, accuracy=float(np.mean(accs)), train_accs=accs)


def optimize_individual(
    individual: Individual,
    task: Task,
    config: Config,
    epoch: int,
    seed: int,
    pool: Optional[DevicePool] = None,
) -> Individual:
    """Run LM-CMA over a random parameter subset and keep the result unless accuracy drops."""
    rng = individual_rng(seed, epoch, individual.id)
    x = individual.rule.to_vector().astype(np.float64)
    subset = np.sort(rng.choice(N_PARAMS, size=min(config.subset_size, N_PARAMS), replace=False))
    individual.subset = subset

    def objective(X: np.ndarray) -> np.ndarray:
        full = np.repeat(x[None, :], X.shape[0], axis=0)
        full[:, subset] = X
        return batch_fitness(full, task, config, pool=pool)

    es = LMCMA(
        x[subset],
        config.initial_sigma,
        objective,
        max_fun_evals=config.max_fun_evals,
        tol_fun_hist=1e-7,
        fun_target=1e-7,
        seed=rng,
    )
    result = es.run()
    if result.best is None:
        return individual

    full = x.copy()
    full[subset] = result.best.point
    rule = Rule.from_vector(full, config.max_steps)
    accs = mean_accuracy(task, rule, config.backend, pool)
    accuracy = float(np.mean(accs))

    if accuracy >= individual.accuracy:
        individual.rule = rule
        individual.fitness = result.best.value
        individual.accuracy = accuracy
        individual.train_accs = accs
    return individual


def train(
    task: Task,
    config: Config,
    seed: Optional[int] = None,
    verbose: bool = False,
    pool: Optional[DevicePool] = None,
) -> TrainOutput:
    """Evolve a population of rules for `task`.

    Every epoch the unsolved pool is optionally thinned by tournament
    selection, refilled with fresh individuals and optimised in parallel.
    Individuals reaching perfect train accuracy are set aside.
    """
    if not task.train:
        raise ValueError(f"Task {task.id} has no train examples")
    if not task.preserves_grid_size():
        raise ValueError(f"Task {task.id}: train inputs and outputs must share their shape")

    if seed is None:
        seed = int(np.random.SeedSequence().entropy)
    pool = _resolve_pool(config, pool)
    rng = np.random.default_rng(seed)
    selector = TournamentSelector(config.k, Optimize.MINIMIZE)
    metrics = TrainMetrics()

    active: List[Individual] = []
    solved: List[Individual] = []
    next_id = 0
    # Epochs between consecutive solves; the first entry is the configured patience
    solve_gaps = [config.selection_patience]
    stagnation = 0

    for epoch in range(config.epochs):
        if active and stagnation > np.median(solve_gaps):
            before = len(active)
            active = selector.select(active, rng)
            stagnation = 0
            if verbose:
                print(f"Epoch {epoch:3d}: selection {before} -> {len(active)}")

        while len(active) + len(solved) < config.pop:
            active.append(new_individual(next_id, task, config, pool))
            next_id += 1

        with ThreadPoolExecutor(max_workers=config.n_workers, initializer=make_worker_initializer()) as executor:
            active = list(executor.map(
                lambda ind: optimize_individual(ind, task, config, epoch, seed, pool),
                active,
            ))

        for ind in active:
            metrics.add(epoch, ind.id, ind.fitness, ind.accuracy)

        newly_solved = [ind for ind in active if ind.solved]
        active = [ind for ind in active if not ind.solved]
        stagnation += 1
        if newly_solved:
            solved.extend(newly_solved)
            solve_gaps.append(stagnation)
            stagnation = 0

        if verbose:
            fitnesses = [ind.fitness for ind in active + newly_solved]
            best_acc = max((ind.accuracy for ind in active + newly_solved), default=0.0)
            print(
                f"Epoch {epoch:3d}: Best={min(fitnesses, default=float('inf')):.3e} "
                f"Avg={np.mean(fitnesses) if fitnesses else float('nan'):.3e} "
                f"BestAcc={best_acc:.3f} Solved={len(solved)} Pool={len(active)}"
            )

        if len(solved) >= config.max_solved:
            break

    individuals = sorted(solved + active, key=lambda ind: (-ind.accuracy, ind.fitness))

    if verbose:
        print(f"Pop solved: count={len(solved)}/{len(individuals)}")

    return TrainOutput(individuals, metrics)


def train_stage(
    ensemble: Ensemble,
    task: Task,
    config: Config,
    seed: Optional[int] = None,
    verbose: bool = False,
    pool: Optional[DevicePool] = None,
) -> Tuple[Ensemble, float]:
    """Graft one new stage onto a frozen ensemble and optimise it with LM-CMA.

    The existing stages are run once per train example; every candidate stage
    is evaluated on a fork of those executors.
    """
    if len(ensemble) == 0:
        raise ValueError("Ensemble must contain at least one rule")
    pool = _resolve_pool(config, pool)
    index = len(ensemble)

    prefix = [EnsembleExecutor(ensemble, ex.input, config.backend, pool) for ex in task.train]
    for executor in prefix:
        executor.run()

    def objective(X: np.ndarray) -> np.ndarray:
        scores = np.empty(X.shape[0])
        for i, params in enumerate(X):
            rule = Rule.from_vector(params, config.max_steps, ensemble.pipeline)
            per_example = []
            for executor, example in zip(prefix, task.train):
                candidate = executor.fork()
                candidate.upsert(rule, index)
                candidate.run()
                per_example.append(ensemble_fitness(candidate, example.output, config))
            scores[i] = np.mean(per_example)
        return scores

    x0 = Rule.zeros(config.max_steps).to_vector()
    es = LMCMA(
        x0,
        config.initial_sigma,
        objective,
        max_fun_evals=config.max_fun_evals,
        tol_fun_hist=1e-7,
        fun_target=1e-7,
        seed=np.random.default_rng(seed),
        verbose=verbose,
    )
    result = es.run()
    if result.best is None:
        current = np.mean([ensemble_fitness(ex, example.output, config) for ex, example in zip(prefix, task.train)])
        return ensemble, float(current)

    rule = Rule.from_vector(result.best.point, config.max_steps, ensemble.pipeline)
    extended = Ensemble(list(ensemble.rules) + [rule], ensemble.task_id, ensemble.pipeline)
    if verbose:
        print(f"Stage {index}: fitness={result.best.value:.3e} evals={result.function_evals} ({', '.join(r.value for r in result.reasons)})")
    return extended, result.best.value
