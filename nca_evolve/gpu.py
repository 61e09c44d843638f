"""Batched execution of many rules over many substrates with torch.

One `GpuBatch.run()` is a single synchronous launch: every (rule, substrate)
pair is padded into one tensor, copied to the device, stepped `max_steps`
times with per-pair convergence tracking and copied back.
"""

import contextlib
import itertools
import math
import os
import threading
import numpy as np
import torch
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .automaton import Rule, neighbor_slices
from .constants import (
    ALIVE_THRESHOLD, CONVERGENCE_THRESHOLD, GPU_MAX_CELLS, INP_CHS, NHBD, NHBD_LEN,
    OUT_CHS, RW_START,
)

_worker = threading.local()


def make_worker_initializer():
    """Initializer for a ThreadPoolExecutor giving each thread a pool-relative index."""
    counter = itertools.count()
    lock = threading.Lock()

    def init():
        with lock:
            _worker.index = next(counter)

    return init


def worker_index() -> int:
    return getattr(_worker, "index", 0)


@dataclass
class DeviceSlot:
    device: torch.device
    stream: Optional["torch.cuda.Stream"] = None

    def context(self):
        if self.stream is None:
            return contextlib.nullcontext()
        return torch.cuda.stream(self.stream)


class DevicePool:
    """Fixed set of (device, stream) slots, `len(devices) * threads_per_device` long.

    Work goes to `slots[worker_index % len(slots)]`. This is round-robin by
    thread, not load balancing.
    """

    _shared: Optional["DevicePool"] = None
    _shared_lock = threading.Lock()

    def __init__(self, devices: Optional[Sequence] = None, threads_per_device: int = 1, verbose: bool = False):
        if threads_per_device < 1:
            raise ValueError("threads_per_device must be >= 1")
        if devices is None:
            if not torch.cuda.is_available():
                raise RuntimeError("GPU backend requested but no CUDA device is available")
            devices = [f"cuda:{i}" for i in range(torch.cuda.device_count())]

        self.slots: List[DeviceSlot] = []
        for dev in devices:
            device = torch.device(dev)
            for _ in range(threads_per_device):
                stream = torch.cuda.Stream(device=device) if device.type == "cuda" else None
                self.slots.append(DeviceSlot(device, stream))

        if verbose:
            print("======Initializing GPU(s)=========")
            print(f"Devices: {', '.join(str(torch.device(d)) for d in devices)}")
            print(f"Threads per device: {threads_per_device}")
            print("======GPU(s) Ready================\n")

    @classmethod
    def shared(cls, threads_per_device: Optional[int] = None, verbose: bool = False) -> "DevicePool":
        """Process-wide pool over all CUDA devices, built on first use only."""
        with cls._shared_lock:
            if cls._shared is None:
                if threads_per_device is None:
                    n_devices = max(1, torch.cuda.device_count())
                    threads_per_device = math.ceil((os.cpu_count() or 1) / n_devices)
                cls._shared = cls(threads_per_device=threads_per_device, verbose=verbose)
            return cls._shared

    def slot(self, index: Optional[int] = None) -> DeviceSlot:
        if index is None:
            index = worker_index()
        return self.slots[index % len(self.slots)]

    def __len__(self):
        return len(self.slots)


@dataclass
class LaunchConfig:
    """Launch geometry of a batch: one block per (grid, individual) pair."""
    grid_dim: Tuple[int, int, int]
    block_dim: Tuple[int, int, int]
    shared_mem_bytes: int


def _shift(t: torch.Tensor, dx: int, dy: int) -> torch.Tensor:
    """Neighbour at (y + dy, x + dx) for tensors laid out (P, G, H, W, ...)."""
    out = torch.zeros_like(t)
    dst, src = neighbor_slices(t.shape[2], t.shape[3], dx, dy)
    out[:, :, dst[0], dst[1]] = t[:, :, src[0], src[1]]
    return out


def _update(state, insides, weights, biases):
    """One update over a (P, G, H, W, C) batch.

    Mirrors `update_substrate`: neighbour then channel order, with a rounded
    float32 product added to the accumulator. There is no fused multiply-add.
    """
    P, G, H, W, _ = state.shape
    zero = torch.zeros((), dtype=state.dtype, device=state.device)
    acc = biases[:, None, None, None, :].expand(P, G, H, W, OUT_CHS).clone()

    for ni, (dx, dy) in enumerate(NHBD):
        nbr = _shift(state, dx, dy)
        inside = insides[ni]
        for ch in range(INP_CHS):
            v = nbr[..., ch]
            alive = inside & (v >= ALIVE_THRESHOLD)
            contrib = v[..., None] * weights[:, ni, ch][:, None, None, None, :]
            acc = acc + torch.where(alive[..., None], contrib, zero)

    return torch.cat([state[..., :RW_START], acc.clamp(0.0, 1.0)], dim=-1)


def run_kernel(state: torch.Tensor, valid: torch.Tensor, weights: torch.Tensor, biases: torch.Tensor, max_steps: int):
    """Step a padded (P, G, H, W, C) batch until every pair terminates.

    Returns the final state, the state before the last update, the number of
    updates per pair and which pairs stopped on convergence.
    """
    P, G = state.shape[:2]
    zero = torch.zeros((), dtype=state.dtype, device=state.device)
    insides = [_shift(valid, dx, dy) for dx, dy in NHBD]
    cell_valid = valid[..., None]

    prev = state.clone()
    steps = torch.zeros((P, G), dtype=torch.int32, device=state.device)
    active = torch.ones((P, G), dtype=torch.bool, device=state.device)
    converged = torch.zeros((P, G), dtype=torch.bool, device=state.device)

    for _ in range(max_steps):
        if not bool(active.any()):
            break
        nxt = torch.where(cell_valid, _update(state, insides, weights, biases), zero)
        act = active[:, :, None, None, None]
        prev = torch.where(act, state, prev)
        state = torch.where(act, nxt, state)
        steps = steps + active.to(torch.int32)

        delta = (prev - state).abs().amax(dim=(2, 3, 4))
        newly = active & (delta < CONVERGENCE_THRESHOLD)
        converged |= newly
        active &= ~newly

    return state, prev, steps, converged


class GpuBatch:
    """Runs `rules[p]` on `substrates[p][g]` for every individual p and grid g."""

    def __init__(self, rules: Sequence[Rule], substrates: Sequence[Sequence[np.ndarray]], pool: Optional[DevicePool] = None):
        if not rules:
            raise ValueError("GPU batch needs at least one rule")
        if len(substrates) != len(rules):
            raise ValueError(f"Expected substrates for {len(rules)} rules; found {len(substrates)}")
        n_grids = len(substrates[0])
        if n_grids == 0 or any(len(subs) != n_grids for subs in substrates):
            raise ValueError("Every rule in a GPU batch needs the same, non-zero number of substrates")

        budgets = {rule.max_steps for rule in rules}
        if len(budgets) != 1:
            raise ValueError(f"Every rule in a GPU batch must have equal max_steps; found {sorted(budgets)}")

        cells = [s.shape[0] * s.shape[1] for subs in substrates for s in subs]
        if max(cells) > GPU_MAX_CELLS:
            raise ValueError(f"Grids with more than {GPU_MAX_CELLS} cells are not supported on the GPU backend; found {max(cells)}")

        self.rules = list(rules)
        self.substrates = [[np.asarray(s, dtype=np.float32) for s in subs] for subs in substrates]
        self.max_steps = budgets.pop()
        self.pool = pool
        max_cells = max(cells)
        self.launch = LaunchConfig(
            grid_dim=(n_grids, len(rules), 1),
            block_dim=(max_cells, 1, 1),
            shared_mem_bytes=max_cells * INP_CHS * np.dtype(np.float32).itemsize,
        )

        self.states: List[List[np.ndarray]] = []
        self.prev_states: List[List[np.ndarray]] = []
        self.steps: np.ndarray = np.zeros((len(rules), n_grids), dtype=np.int64)
        self.converged: np.ndarray = np.zeros((len(rules), n_grids), dtype=bool)

    @classmethod
    def from_substrates(cls, rules: Sequence[Rule], substrates: Sequence[np.ndarray], pool: Optional[DevicePool] = None) -> "GpuBatch":
        """Every rule runs on the same list of substrates."""
        return cls(rules, [list(substrates) for _ in rules], pool)

    def _pack(self):
        P, G = len(self.rules), len(self.substrates[0])
        H = max(s.shape[0] for subs in self.substrates for s in subs)
        W = max(s.shape[1] for subs in self.substrates for s in subs)
        host = np.zeros((P, G, H, W, INP_CHS), dtype=np.float32)
        valid = np.zeros((P, G, H, W), dtype=bool)
        for p, subs in enumerate(self.substrates):
            for g, s in enumerate(subs):
                h, w = s.shape[:2]
                host[p, g, :h, :w] = s
                valid[p, g, :h, :w] = True
        params = np.stack([rule.to_vector() for rule in self.rules]).astype(np.float32)
        return host, valid, params

    def run(self):
        pool = self.pool if self.pool is not None else DevicePool.shared()
        slot = pool.slot()
        host, valid, params = self._pack()
        n_weights = NHBD_LEN * INP_CHS * OUT_CHS

        with slot.context():
            d_state = torch.from_numpy(host).to(slot.device)
            d_valid = torch.from_numpy(valid).to(slot.device)
            d_params = torch.from_numpy(params).to(slot.device)
            weights = d_params[:, :n_weights].reshape(-1, NHBD_LEN, INP_CHS, OUT_CHS)
            biases = d_params[:, n_weights:]

            state, prev, steps, converged = run_kernel(d_state, d_valid, weights, biases, self.max_steps)

            state = state.cpu().numpy()
            prev = prev.cpu().numpy()
            self.steps = steps.cpu().numpy().astype(np.int64)
            self.converged = converged.cpu().numpy()

        self.states = []
        self.prev_states = []
        for p, subs in enumerate(self.substrates):
            self.states.append([state[p, g, :s.shape[0], :s.shape[1]].copy() for g, s in enumerate(subs)])
            self.prev_states.append([prev[p, g, :s.shape[0], :s.shape[1]].copy() for g, s in enumerate(subs)])
        return self
