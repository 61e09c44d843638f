import json

import numpy as np
import pytest

from nca_evolve.automaton import Ensemble, Rule
from nca_evolve.config import Config
from nca_evolve.dataset import Dataset
from nca_evolve.executors import Backend
from nca_evolve.metrics import TaskReport
from nca_evolve.storage import ModelDatabase
from nca_evolve.transforms import FlipVertical, TransformPipeline


def test_config_round_trip(tmp_path):
    config = Config(pop=7, backend=Backend.GPU, l2_coeff=0.5)
    path = tmp_path / "config.json"
    config.save(str(path))
    assert json.loads(path.read_text())["backend"] == "GPU"
    assert Config.load(str(path)) == config


def test_config_parses_backend_names():
    assert Config(backend="gpu").backend == Backend.GPU
    with pytest.raises(ValueError):
        Config(backend="tpu")


def test_config_rejects_unknown_keys():
    with pytest.raises(ValueError):
        Config.from_dict({"pop": 3, "population": 3})


def test_config_validates_values():
    with pytest.raises(ValueError):
        Config(k=0)


def test_model_database_keeps_best_per_task(tmp_path):
    path = tmp_path / "models.json"
    db = ModelDatabase(str(path))
    weak = Ensemble([Rule.zeros(4)], task_id="t1")
    strong = Ensemble([Rule.passthrough(4)], task_id="t1", pipeline=TransformPipeline([FlipVertical()]))

    db.add(weak, TaskReport("t1", 2, 1, [0.5, 0.5]), fitness=0.3)
    db.add(strong, TaskReport("t1", 2, 1, [1.0, 1.0], [1.0]), fitness=0.1, seed=4)
    db.add(weak, TaskReport("t1", 2, 1, [0.5, 1.0]), fitness=0.01)

    reloaded = ModelDatabase(str(path))
    assert len(reloaded) == 1
    stored = reloaded.get_by_task("t1")
    assert stored.score == 1.0
    assert stored.seed == 4
    model = stored.model
    np.testing.assert_array_equal(model.rules[0].weights, strong.rules[0].weights)
    assert model.pipeline == strong.pipeline


def test_model_database_export(tmp_path):
    db = ModelDatabase(str(tmp_path / "models.json"))
    db.add(Ensemble([Rule.zeros(2)], "a"), TaskReport("a", 1, 0, [0.25]), fitness=1.0)
    db.add(Ensemble([Rule.zeros(2)], "b"), TaskReport("b", 1, 0, [0.75]), fitness=1.0)
    assert [m.task_id for m in db.get_leaderboard()] == ["b", "a"]

    out = tmp_path / "models.csv"
    db.export_csv(str(out))
    lines = out.read_text().strip().splitlines()
    assert lines[0].startswith("task_id,score")
    assert lines[1].startswith("b,")


def test_dataset_load(tmp_path):
    tasks = {
        "bbb": {"train": [{"input": [[1]], "output": [[1]]}], "test": [{"input": [[2]]}]},
        "aaa": {"train": [{"input": [[1, 2]], "output": [[3]]}], "test": []},
    }
    solutions = {"bbb": [[[2]]]}
    (tmp_path / "tasks.json").write_text(json.dumps(tasks))
    (tmp_path / "solutions.json").write_text(json.dumps(solutions))

    dataset = Dataset.load(str(tmp_path / "tasks.json"), str(tmp_path / "solutions.json"))
    assert [t.id for t in dataset.tasks] == ["aaa", "bbb"]
    assert not dataset.get_task("aaa").preserves_grid_size()
    assert dataset.get_task("bbb").preserves_grid_size()
    assert dataset.get_solution("bbb").outputs[0].to_list() == [[2]]
    assert dataset.get_solution("aaa") is None
