import numpy as np
import pytest

from nca_evolve.automaton import Ensemble, Rule
from nca_evolve.config import Config
from nca_evolve.dataset import Task, TrainExample
from nca_evolve.executors import Backend, CpuExecutor
from nca_evolve.gpu import DevicePool
from nca_evolve.grid import Grid
from nca_evolve.metrics import (
    TaskReport, TrainMetrics, batch_fitness, compute_accuracy, compute_fitness, evaluate, inference,
)
from nca_evolve.substrate import from_grid
from nca_evolve.transforms import Rotate90CW, TransformPipeline


def identity_task():
    grids = [Grid([[1, 0, 2], [0, 3, 0]]), Grid([[4, 4], [0, 5]])]
    return Task("copy", [TrainExample(g, g) for g in grids])


def quiet_config(**kwargs):
    values = dict(l2_coeff=0.0, l1_coeff=0.0, oscillation_cost_coeff=0.0, non_convergence_cost_coeff=0.0)
    values.update(kwargs)
    return Config(**values)


def test_accuracy():
    a = Grid([[1, 2], [3, 4]])
    assert compute_accuracy(a, a) == 1.0
    assert compute_accuracy(a, Grid([[1, 2], [0, 0]])) == 0.5
    assert compute_accuracy(a, Grid([[1, 2, 3, 4]])) == 0.0


def test_inference_reverts_pipeline():
    grid = Grid([[1, 2, 3], [4, 5, 6]])
    rule = Rule.passthrough(5).with_pipeline(TransformPipeline([Rotate90CW()]))
    assert inference(grid, rule) == grid
    assert evaluate(grid, grid, Ensemble.from_rule(rule)) == 1.0


def test_fitness_of_exact_prediction_is_weight_cost():
    grid = Grid([[1, 0], [7, 2]])
    rule = Rule.passthrough(10)
    executor = CpuExecutor(rule, from_grid(grid))
    executor.run()
    config = quiet_config(l2_coeff=1.0)
    fitness = compute_fitness(executor.state, executor.prev_state, executor.steps, from_grid(grid), [rule], config)
    assert fitness == pytest.approx(4 / rule.weights.size)


def test_fitness_charges_non_convergence():
    grid = Grid([[1, 0], [7, 2]])
    rule = Rule.passthrough(1)
    executor = CpuExecutor(rule, from_grid(grid))
    executor.run()
    config = quiet_config(non_convergence_cost_coeff=0.5)
    fitness = compute_fitness(executor.state, executor.prev_state, executor.steps, from_grid(grid), [rule], config)
    assert fitness == pytest.approx(0.5)


def test_fitness_charges_oscillation():
    grid = Grid([[1]])
    rule = Rule.passthrough(1)
    executor = CpuExecutor(rule, from_grid(grid))
    executor.run()
    config = quiet_config(oscillation_cost_coeff=1.0)
    fitness = compute_fitness(executor.state, executor.prev_state, executor.steps, from_grid(grid), [rule], config)
    # One read-write channel moved from 0 to 1 out of nine
    assert fitness == pytest.approx(1 / 9)


def test_batch_fitness_prefers_the_copying_rule():
    task = identity_task()
    vectors = np.stack([Rule.zeros(6).to_vector(), Rule.passthrough(6).to_vector()])
    scores = batch_fitness(vectors, task, quiet_config(max_steps=6))
    assert scores.shape == (2,)
    assert scores[1] == 0.0
    assert scores[0] > scores[1]


def test_batch_fitness_same_on_both_backends():
    task = identity_task()
    rng = np.random.default_rng(4)
    vectors = np.stack([Rule.random(5, rng, scale=0.5).to_vector() for _ in range(3)])
    cpu = batch_fitness(vectors, task, Config(max_steps=5))
    gpu = batch_fitness(vectors, task, Config(max_steps=5, backend=Backend.GPU), pool=DevicePool(devices=["cpu"]))
    np.testing.assert_array_equal(cpu, gpu)


def test_train_metrics_group_by_individual():
    metrics = TrainMetrics()
    metrics.add(0, 1, 0.5, 0.2)
    metrics.add(0, 2, 0.4, 0.3)
    metrics.add(1, 1, 0.3, 0.6)
    grouped = metrics.by_individual()
    assert [r.epoch for r in grouped[1]] == [0, 1]
    assert metrics.epochs() == [0, 1]
    assert TrainMetrics.from_dict(metrics.to_dict()).records == metrics.records


def test_task_report():
    report = TaskReport("t", 2, 1, [1.0, 1.0], [0.5])
    assert report.solved
    assert report.to_dict()["test_accs"] == [0.5]
    assert not TaskReport("t", 2, 1, [1.0, 0.9]).solved
