"""Training hyperparameters."""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict

from .executors import Backend


@dataclass
class Config:
    pop: int = 100
    epochs: int = 50
    k: int = 5
    subset_size: int = 32
    max_fun_evals: int = 2000
    initial_sigma: float = 0.2
    l2_coeff: float = 1e-4
    backend: Backend = Backend.CPU

    max_steps: int = 40
    l1_coeff: float = 1e-4
    oscillation_cost_coeff: float = 1e-5
    non_convergence_cost_coeff: float = 1e-5
    max_solved: int = 1
    selection_patience: int = 5
    n_workers: int = 4
    threads_per_device: int = 1
    max_stages: int = 1

    def __post_init__(self):
        if isinstance(self.backend, str):
            try:
                self.backend = Backend[self.backend.upper()]
            except KeyError:
                raise ValueError(f"Unknown backend '{self.backend}'; expected CPU or GPU") from None
        if self.pop < 1:
            raise ValueError("pop must be >= 1")
        if self.k < 1:
            raise ValueError("Tournament size k must be >= 1")
        if self.subset_size < 1:
            raise ValueError("subset_size must be >= 1")
        if self.initial_sigma <= 0:
            raise ValueError("initial_sigma must be > 0")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["backend"] = self.backend.name
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Config":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, filepath: str) -> "Config":
        with open(filepath, "r") as f:
            return cls.from_dict(json.load(f))

    def save(self, filepath: str):
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
