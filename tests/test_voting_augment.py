import math
import numpy as np

from nca_evolve.augment import augment, floyd_sample, most_common_remap, unrank_k_permutation
from nca_evolve.automaton import Rule
from nca_evolve.config import Config
from nca_evolve.dataset import Task, TrainExample
from nca_evolve.grid import Grid
from nca_evolve.metrics import inference
from nca_evolve.transforms import RemapColors
from nca_evolve.voting import vote

GRID = Grid([[1, 0], [0, 2]])


def constant_rule(max_steps=5):
    """Predicts colour 1 everywhere."""
    rule = Rule.zeros(max_steps)
    rule.biases[0] = 1.0
    return rule


def test_vote_picks_most_common_prediction():
    blank_a, blank_b, ones = Rule.zeros(5), Rule.zeros(5), constant_rule()
    models = [Rule.passthrough(5), ones, blank_a, blank_b]
    assert inference(GRID, ones) == Grid([[1, 1], [1, 1]])

    winners = vote(GRID, models, 1)
    assert winners == [blank_a]
    assert vote(GRID, models, 2) == [blank_a, ones]


def test_vote_without_candidates_returns_first_models():
    models = [Rule.passthrough(5), Rule.passthrough(6), Rule.passthrough(7)]
    assert vote(GRID, models, 2) == models[:2]


def test_floyd_sample_is_distinct_and_in_range():
    rng = np.random.default_rng(0)
    sample = floyd_sample(50, 20, rng)
    assert len(sample) == len(set(sample)) == 20
    assert all(0 <= x < 50 for x in sample)
    assert sorted(floyd_sample(5, 10, rng)) == [0, 1, 2, 3, 4]


def test_unrank_enumerates_every_arrangement():
    items = [1, 2, 3, 4]
    arrangements = {tuple(unrank_k_permutation(r, items, 2)) for r in range(math.perm(4, 2))}
    assert len(arrangements) == 12
    assert all(a != b for a, b in arrangements)


def test_augment_maps_unseen_colours():
    task = Task("t", [TrainExample(Grid([[1, 2], [0, 1]]), Grid([[1, 2], [0, 1]]))])
    test_grid = Grid([[3, 0], [0, 3]])
    rule = Rule.passthrough(5)

    augmented = augment(test_grid, task, rule, Config(max_fun_evals=10), np.random.default_rng(0))
    assert len(augmented.pipeline.steps) == 1
    remap = augmented.pipeline.steps[0]
    assert isinstance(remap, RemapColors)
    assert remap.col_map[3] in (1, 2)
    assert inference(test_grid, augmented) == test_grid
    assert len(rule.pipeline.steps) == 0


def test_augment_keeps_rule_for_known_colours():
    task = Task("t", [TrainExample(Grid([[1, 2]]), Grid([[1, 2]]))])
    rule = Rule.passthrough(5)
    assert augment(Grid([[2, 1]]), task, rule, Config(), np.random.default_rng(0)) is rule


def test_most_common_remap_prefers_latest_on_tie():
    first, second, third = RemapColors(), RemapColors(), RemapColors()
    first.map(3, 1)
    second.map(3, 2)
    third.map(3, 4)
    assert most_common_remap({10: (2, first), 11: (2, second), 12: (1, third)}) is second
    assert most_common_remap({10: (3, first), 11: (2, second)}) is first
