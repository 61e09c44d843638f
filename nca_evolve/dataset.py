"""ARC task containers and JSON loading."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .grid import Grid


@dataclass
class TrainExample:
    input: Grid
    output: Grid


@dataclass
class TestProblem:
    input: Grid


@dataclass
class Task:
    """One ARC task: ordered train pairs and test inputs."""
    id: str
    train: List[TrainExample]
    test: List[TestProblem] = field(default_factory=list)

    def train_inputs(self) -> List[Grid]:
        return [example.input for example in self.train]

    def train_outputs(self) -> List[Grid]:
        return [example.output for example in self.train]

    def test_inputs(self) -> List[Grid]:
        return [problem.input for problem in self.test]

    def preserves_grid_size(self) -> bool:
        """True when every train input has the same shape as its output."""
        return all(example.input.shape == example.output.shape for example in self.train)

    @classmethod
    def from_dict(cls, task_id: str, data: Dict) -> "Task":
        train = [
            TrainExample(input=Grid(ex["input"]), output=Grid(ex["output"]))
            for ex in data.get("train", [])
        ]
        test = [TestProblem(input=Grid(p["input"])) for p in data.get("test", [])]
        return cls(id=task_id, train=train, test=test)

    def to_dict(self) -> Dict:
        return {
            "train": [{"input": ex.input.to_list(), "output": ex.output.to_list()} for ex in self.train],
            "test": [{"input": p.input.to_list()} for p in self.test],
        }


@dataclass
class Solution:
    id: str
    outputs: List[Grid]


class Dataset:
    """ARC challenges file plus an optional solutions file."""

    def __init__(self, tasks: List[Task], solutions: Optional[List[Solution]] = None):
        self.tasks = tasks
        self.solutions = solutions

    @classmethod
    def load(cls, tasks_path: str, solutions_path: Optional[str] = None) -> "Dataset":
        with open(tasks_path, "r") as f:
            raw_tasks = json.load(f)
        tasks = sorted(
            (Task.from_dict(task_id, data) for task_id, data in raw_tasks.items()),
            key=lambda t: t.id,
        )

        solutions = None
        if solutions_path is not None:
            with open(solutions_path, "r") as f:
                raw_solutions = json.load(f)
            solutions = sorted(
                (Solution(id=task_id, outputs=[Grid(g) for g in grids]) for task_id, grids in raw_solutions.items()),
                key=lambda s: s.id,
            )

        return cls(tasks, solutions)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def get_solution(self, task_id: str) -> Optional[Solution]:
        if self.solutions is None:
            return None
        for solution in self.solutions:
            if solution.id == task_id:
                return solution
        return None

    def __len__(self):
        return len(self.tasks)


def save_tasks(tasks: List[Task], filepath: str):
    """Write tasks back out in the ARC challenges layout."""
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({task.id: task.to_dict() for task in tasks}, f)
