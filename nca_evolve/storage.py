"""Persistence layer for trained models."""

import csv
import json
from pathlib import Path
from datetime import datetime
from typing import List, Dict, Optional
from dataclasses import dataclass, asdict, field

from .automaton import Ensemble
from .metrics import TaskReport


@dataclass
class StoredModel:
    """A trained ensemble with its scores."""
    task_id: str
    ensemble: Dict
    score: float
    fitness: float
    train_accs: List[float] = field(default_factory=list)
    test_accs: List[float] = field(default_factory=list)
    saved_at: str = ""
    seed: Optional[int] = None
    notes: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "StoredModel":
        return cls(**data)

    @property
    def model(self) -> Ensemble:
        return Ensemble.from_dict(self.ensemble)


class ModelDatabase:
    """JSON-based storage, keeping the best model per task."""

    def __init__(self, filepath: str = "trained_models.json"):
        self.filepath = Path(filepath)
        self.models: List[StoredModel] = []
        self._load()

    def _load(self):
        """Load models from file."""
        if self.filepath.exists():
            with open(self.filepath, "r") as f:
                data = json.load(f)
            self.models = [StoredModel.from_dict(m) for m in data.get("models", [])]
        else:
            self.models = []

    def save(self):
        """Save models to file."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": "1.0",
            "updated_at": datetime.now().isoformat(),
            "models": [m.to_dict() for m in self.models],
        }
        with open(self.filepath, "w") as f:
            json.dump(data, f, indent=2)

    def add(
        self,
        ensemble: Ensemble,
        report: TaskReport,
        fitness: float,
        seed: Optional[int] = None,
        notes: str = "",
    ) -> StoredModel:
        """Store a model, replacing the task's entry only when the new score is higher.

        The score is the mean train accuracy.
        """
        score = sum(report.train_accs) / len(report.train_accs) if report.train_accs else 0.0
        existing = self.get_by_task(report.task_id)
        if existing is not None:
            if score > existing.score or (score == existing.score and fitness < existing.fitness):
                existing.ensemble = ensemble.to_dict()
                existing.score = score
                existing.fitness = fitness
                existing.train_accs = list(report.train_accs)
                existing.test_accs = list(report.test_accs)
                existing.saved_at = datetime.now().isoformat()
                existing.seed = seed
                self.save()
            return existing

        stored = StoredModel(
            task_id=report.task_id,
            ensemble=ensemble.to_dict(),
            score=score,
            fitness=fitness,
            train_accs=list(report.train_accs),
            test_accs=list(report.test_accs),
            saved_at=datetime.now().isoformat(),
            seed=seed,
            notes=notes,
        )
        self.models.append(stored)
        self.save()
        return stored

    def get_leaderboard(self, top_n: int = 20) -> List[StoredModel]:
        """Get top N models by score, lowest fitness first on ties."""
        return sorted(self.models, key=lambda m: (-m.score, m.fitness))[:top_n]

    def get_by_task(self, task_id: str) -> Optional[StoredModel]:
        for m in self.models:
            if m.task_id == task_id:
                return m
        return None

    def remove(self, task_id: str) -> bool:
        for i, m in enumerate(self.models):
            if m.task_id == task_id:
                del self.models[i]
                self.save()
                return True
        return False

    def export_csv(self, filepath: str):
        """Export scores to CSV format."""
        with open(filepath, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["task_id", "score", "fitness", "stages", "train_accs", "test_accs", "saved_at", "notes"])
            for m in self.get_leaderboard(len(self.models)):
                writer.writerow([
                    m.task_id,
                    f"{m.score:.4f}",
                    f"{m.fitness:.4e}",
                    len(m.ensemble.get("rules", [])),
                    " ".join(f"{a:.3f}" for a in m.train_accs),
                    " ".join(f"{a:.3f}" for a in m.test_accs),
                    m.saved_at,
                    m.notes,
                ])

    def __len__(self):
        return len(self.models)

    def __iter__(self):
        return iter(self.models)
