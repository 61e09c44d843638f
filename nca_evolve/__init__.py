"""Evolve neural cellular automata that solve ARC tasks with LM-CMA."""

from .automaton import Ensemble, Rule
from .config import Config
from .executors import Backend, CpuExecutor, EnsembleExecutor, GpuExecutor, Termination
from .grid import Grid
from .metrics import evaluate, inference
from .search import train

__all__ = [
    "Backend",
    "Config",
    "CpuExecutor",
    "Ensemble",
    "EnsembleExecutor",
    "GpuExecutor",
    "Grid",
    "Rule",
    "Termination",
    "evaluate",
    "inference",
    "train",
]
