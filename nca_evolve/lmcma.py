"""Limited-memory CMA evolution strategy (LM-CMA) with batched evaluation.

The covariance factor is never stored. It is represented by at most `m`
direction vectors kept in a fixed ring of slots; `j` gives the order of the
slots and `l` the generation each slot was last written.
"""

import math
import time
import numpy as np
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, List, Optional

from scipy.stats import rankdata


class StopReason(Enum):
    TARGET_FUNCTION_VALUE = "TargetFunctionValue"
    TOL_FUN_HIST = "TolFunHist"
    MAX_FUNCTION_EVALUATIONS = "MaxFunctionEvaluations"
    MIN_SIGMA = "MinSigma"
    TIME_LIMIT = "TimeLimit"


@dataclass
class EvaluatedPoint:
    point: np.ndarray
    value: float


@dataclass
class OptimizationResult:
    best: Optional[EvaluatedPoint]
    function_evals: int
    reasons: List[StopReason] = field(default_factory=list)
    best_history: List[float] = field(default_factory=list)  # newest first


def _finite_or_zero(x: np.ndarray) -> np.ndarray:
    x[~np.isfinite(x)] = 0.0
    return x


class LMCMA:
    """Minimise `objective` starting from `x0` with step size `sigma0`.

    `objective` receives a (lambda, n) float64 array of candidates and returns
    one fitness per row; lower is better.
    """

    def __init__(
        self,
        x0,
        sigma0: float,
        objective: Callable[[np.ndarray], np.ndarray],
        lam: Optional[int] = None,
        fun_target: float = 1e-12,
        max_fun_evals: int = 10_000,
        tol_fun_hist: float = 1e-12,
        min_sigma: float = 1e-12,
        time_limit: Optional[float] = None,
        seed=42,
        verbose: bool = False,
        m: Optional[int] = None,
        base_m: int = 4,
        period: Optional[int] = None,
        n_steps: Optional[int] = None,
        c_c: Optional[float] = None,
        c_1: Optional[float] = None,
        c_s: float = 0.3,
        d_s: float = 1.0,
        z_star: float = 0.3,
    ):
        x0 = np.array(x0, dtype=np.float64).ravel()
        if x0.size == 0:
            raise ValueError("Initial mean must be non-empty")
        if not np.all(np.isfinite(x0)):
            raise ValueError("Initial mean must be finite")
        if not math.isfinite(sigma0) or sigma0 <= 0.0:
            raise ValueError(f"Initial sigma must be finite and > 0, got {sigma0}")

        n = x0.size
        self.n = n
        self.objective = objective
        self.xmean = x0
        self.sigma = float(sigma0)
        self.fun_target = fun_target
        self.max_fun_evals = max_fun_evals
        self.tol_fun_hist = tol_fun_hist
        self.min_sigma = min_sigma
        self.time_limit = time_limit
        self.verbose = verbose
        self.rng = np.random.default_rng(seed)

        # Recombination
        lam = lam if lam is not None else int(4 + math.floor(3 * math.log(n)))
        self.lam = max(lam, 2)
        self.mu = max(self.lam // 2, 1)
        weights = math.log(self.mu + 0.5) - np.log(np.arange(1, self.mu + 1))
        self.weights = weights / weights.sum()
        mueff = 1.0 / np.sum(self.weights ** 2)

        # Limited-memory parameters
        self.m = m if m is not None else int(4 + 3 * math.log(n))
        self.base_m = base_m
        self.period = period if period is not None else int(max(math.log(n), 1.0))
        self.n_steps = n_steps if n_steps is not None else n
        c_c = c_c if c_c is not None else 0.5 / math.sqrt(n)
        c_1 = c_1 if c_1 is not None else 1.0 / (10.0 * math.log(n + 1.0))
        self.c_s = c_s
        self.d_s = d_s
        self.z_star = z_star

        self.a = math.sqrt(1.0 - c_1)
        self.c = 1.0 / math.sqrt(1.0 - c_1)
        self.bd_2 = c_1 / (1.0 - c_1)
        self.p_c_1 = 1.0 - c_c
        self.p_c_2 = math.sqrt(c_c * (2.0 - c_c) * mueff)

        # State
        self.p_c = np.zeros(n)
        self.s = 0.0
        self.vm = np.zeros((self.m, n))
        self.pm = np.zeros((self.m, n))
        self.b = np.zeros(self.m)
        self.d = np.zeros(self.m)
        self.j = list(range(self.m))
        self.l = [0] * self.m
        self.it = 0

        # Success-rule weights by rank position over 2 * lambda merged values
        self.rr = np.arange(2 * self.lam - 1, -1, -1, dtype=np.float64)
        self.y_bak = np.full(self.lam, np.inf)

        self.fevals = 0
        self.history: Deque[float] = deque()
        self.best: Optional[EvaluatedPoint] = None
        self.n_generations = 0
        self.start_time = time.monotonic()

    @property
    def tol_fun_window(self) -> int:
        return 10 + math.ceil(30 * self.n / self.lam)

    def _tol_fun_hist_reached(self) -> bool:
        need = self.tol_fun_window
        if len(self.history) < need:
            return False
        recent = [self.history[i] for i in range(need)]
        return max(recent) - min(recent) < self.tol_fun_hist

    def az(self, z: np.ndarray, start: int, it: int) -> np.ndarray:
        """Apply the implicit Cholesky factor to `z` using slots `j[start:it]`."""
        x = z.copy()
        for t in range(start, it):
            slot = self.j[t]
            x = self.a * x + self.b[slot] * np.dot(self.vm[slot], z) * self.pm[slot]
        return _finite_or_zero(x)

    def a_inv_z(self, v: np.ndarray, i: int) -> np.ndarray:
        """Apply the inverse factor built from the first `i` ordered slots."""
        x = v.copy()
        for t in range(i):
            slot = self.j[t]
            x = self.c * x - self.d[slot] * np.dot(self.vm[slot], x) * self.vm[slot]
        return _finite_or_zero(x)

    def _sample(self) -> np.ndarray:
        X = np.empty((self.lam, self.n))
        a_z = np.zeros(self.n)
        sign = 1.0
        for k in range(self.lam):
            if sign > 0:
                scale = 10.0 * self.base_m if k == 0 else float(self.base_m)
                base_m = min(scale * abs(self.rng.standard_normal()), float(self.it))
                start = max(int(math.floor(self.it - base_m)), 0) if self.it > 1 else 0
                z = np.where(self.rng.random(self.n) < 0.5, 1.0, -1.0)
                a_z = self.az(z, start, self.it)
            X[k] = self.xmean + sign * self.sigma * a_z
            sign = -sign
        return X

    def _refresh_slots(self):
        ng = self.n_generations // self.period
        i_min = 1

        if ng < self.m:
            self.j[ng] = ng
        elif self.m > 1:
            # Replace the slot whose spacing to its predecessor is furthest below n_steps
            d_min = (self.l[self.j[1]] - self.l[self.j[0]]) - self.n_steps
            for t in range(2, self.m):
                d_cur = (self.l[self.j[t]] - self.l[self.j[t - 1]]) - self.n_steps
                if d_cur < d_min:
                    d_min = d_cur
                    i_min = t
            if d_min >= 0:
                i_min = 0
            updated = self.j[i_min]
            self.j[i_min:self.m - 1] = self.j[i_min + 1:self.m]
            self.j[self.m - 1] = updated

        self.it = min(self.m, ng + 1)
        last = self.j[self.it - 1]
        self.l[last] = ng * self.period
        self.pm[last] = self.p_c

        for i in range(0 if i_min == 1 else i_min, self.it):
            slot = self.j[i]
            self.vm[slot] = self.a_inv_z(self.pm[slot], i)
            v_n = max(float(np.dot(self.vm[slot], self.vm[slot])), 1e-32)
            bd_3 = math.sqrt(1.0 + self.bd_2 * v_n)
            self.b[slot] = self.a / v_n * (bd_3 - 1.0)
            self.d[slot] = self.c / v_n * (1.0 - 1.0 / bd_3)

    def _adapt_step_size(self, fitness: np.ndarray):
        ranks = rankdata(np.concatenate([fitness, self.y_bak]), method="ordinal").astype(int) - 1
        r = self.rr[ranks]
        z = (r[:self.lam].sum() - r[self.lam:].sum()) / self.lam ** 2 - self.z_star
        self.s = (1.0 - self.c_s) * self.s + self.c_s * z
        self.sigma *= math.exp(self.s / self.d_s)

    def _stop_reason(self) -> Optional[StopReason]:
        if self.time_limit is not None and time.monotonic() - self.start_time >= self.time_limit:
            return StopReason.TIME_LIMIT
        if self.sigma <= self.min_sigma:
            return StopReason.MIN_SIGMA
        if self.fevals >= self.max_fun_evals:
            return StopReason.MAX_FUNCTION_EVALUATIONS
        if self._tol_fun_hist_reached():
            return StopReason.TOL_FUN_HIST
        return None

    def run(self) -> OptimizationResult:
        reasons: List[StopReason] = []

        while True:
            reason = self._stop_reason()
            if reason is not None:
                reasons.append(reason)
                break

            X = self._sample()
            fitness = np.asarray(self.objective(X), dtype=np.float64).ravel()
            if fitness.size != self.lam:
                raise ValueError(f"Objective returned {fitness.size} values for {self.lam} candidates")
            fitness = np.where(np.isnan(fitness), np.inf, fitness)
            self.fevals += self.lam

            order = np.argsort(fitness, kind="stable")
            gen_best = float(fitness[order[0]])
            self.history.appendleft(gen_best)
            if self.best is None or gen_best < self.best.value:
                self.best = EvaluatedPoint(X[order[0]].copy(), gen_best)

            if gen_best <= self.fun_target:
                reasons.append(StopReason.TARGET_FUNCTION_VALUE)
                break

            mean_new = self.weights @ X[order[:self.mu]]
            self.p_c = self.p_c_1 * self.p_c + self.p_c_2 * (mean_new - self.xmean) / self.sigma

            if self.n_generations % self.period == 0:
                self._refresh_slots()

            if self.n_generations > 0:
                self._adapt_step_size(fitness)

            self.y_bak = fitness
            self.xmean = mean_new

            if self.verbose and self.fevals % (self.lam * 50) == 0:
                print(f"LM-CMA: fevals={self.fevals} best={self.best.value:.3e} sigma={self.sigma:.3e}")

            self.n_generations += 1

        return OptimizationResult(
            best=self.best,
            function_evals=self.fevals,
            reasons=reasons,
            best_history=list(self.history),
        )
