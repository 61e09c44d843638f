#!/usr/bin/env python3
"""CLI for evolving neural cellular automata on ARC tasks."""

import argparse
import json
import sys
import time
import numpy as np
from pathlib import Path

from .augment import augment
from .automaton import Ensemble, Rule
from .config import Config
from .dataset import Dataset
from .executors import Backend, CpuExecutor, GpuExecutor
from .gpu import DevicePool
from .grid import Grid
from .metrics import TaskReport, compute_accuracy, inference, mean_accuracy
from .search import train, train_stage
from .storage import ModelDatabase
from .substrate import from_grid
from .visualize import create_task_image, plot_metrics, record_run, save_animation
from .voting import vote


def build_config(args) -> Config:
    config = Config.load(args.config) if args.config else Config()
    overrides = {
        "pop": args.pop,
        "epochs": args.epochs,
        "max_steps": args.max_steps,
        "max_fun_evals": args.max_fun_evals,
        "n_workers": args.workers,
        "max_stages": args.stages,
        "backend": args.backend,
    }
    data = config.to_dict()
    data.update({key: value for key, value in overrides.items() if value is not None})
    return Config.from_dict(data)


def cmd_train(args):
    """Train rules for every selected task and store the best per task."""
    try:
        config = build_config(args)
        dataset = Dataset.load(args.tasks, args.solutions)
    except (OSError, ValueError, json.JSONDecodeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    tasks = dataset.tasks
    if args.task_id:
        tasks = [t for t in tasks if t.id in set(args.task_id)]
    if args.limit is not None:
        tasks = tasks[:args.limit]

    seed = args.seed if args.seed is not None else int(np.random.SeedSequence().entropy % (2 ** 63))
    pool = DevicePool.shared(config.threads_per_device, verbose=True) if config.backend == Backend.GPU else None
    rng = np.random.default_rng(seed)
    db = ModelDatabase(args.database)
    output_dir = Path(args.output)

    print(f"Training on {len(tasks)} task(s)")
    print(f"  Population: {config.pop}")
    print(f"  Epochs: {config.epochs}")
    print(f"  Backend: {config.backend.name}")
    print(f"  Seed: {seed}")
    print()

    reports = []
    start = time.time()
    for task in tasks:
        if not task.preserves_grid_size():
            print(f"[{task.id}] skipped: grid size changes between input and output")
            continue

        task_start = time.time()
        print(f"[{task.id}] {len(task.train)} train / {len(task.test)} test")
        output = train(task, config, seed=seed, verbose=args.verbose, pool=pool)
        best = output.best

        model = Ensemble.from_rule(best.rule, task.id)
        fitness = best.fitness
        while not best.solved and len(model) < config.max_stages:
            model, fitness = train_stage(model, task, config, seed=seed, verbose=args.verbose, pool=pool)
            if all(acc == 1.0 for acc in mean_accuracy(task, model, config.backend, pool)):
                break

        train_accs = mean_accuracy(task, model, config.backend, pool)
        candidates = [Ensemble.from_rule(ind.rule, task.id) for ind in output.individuals if ind.solved] or [model]

        test_accs = []
        solution = dataset.get_solution(task.id)
        for i, problem in enumerate(task.test):
            augmented = [
                Ensemble.from_rule(augment(problem.input, task, c.rules[0], config, rng, pool), task.id)
                if len(c) == 1 else c
                for c in candidates
            ]
            chosen = vote(problem.input, augmented, 1, config.backend, pool, verbose=args.verbose)[0]
            pred = inference(problem.input, chosen, config.backend, pool)
            if solution is not None and i < len(solution.outputs):
                test_accs.append(compute_accuracy(pred, solution.outputs[i]))

        report = TaskReport(
            task_id=task.id,
            n_examples_train=len(task.train),
            n_examples_test=len(task.test),
            train_accs=train_accs,
            test_accs=test_accs,
            duration_ms=int((time.time() - task_start) * 1000),
        )
        reports.append(report)
        db.add(model, report, fitness, seed=seed)

        status = "SOLVED" if report.solved else "unsolved"
        test_str = f" test={np.mean(test_accs):.3f}" if test_accs else ""
        print(f"[{task.id}] {status} train={np.mean(train_accs):.3f}{test_str} stages={len(model)} fitness={fitness:.3e}")

        if args.plot:
            output_dir.mkdir(parents=True, exist_ok=True)
            plot_metrics(output.metrics, str(output_dir / f"{task.id}_metrics.png"), title=task.id)
            create_task_image(task, model, str(output_dir / f"{task.id}_train.png"))

    solved = sum(1 for r in reports if r.solved)
    print(f"\nSolved {solved}/{len(reports)} task(s) in {time.time() - start:.1f}s")

    if args.report:
        with open(args.report, "w") as f:
            json.dump({"seed": seed, "config": config.to_dict(), "tasks": [r.to_dict() for r in reports]}, f, indent=2)
        print(f"Report written to {args.report}")


def cmd_check_gpu(args):
    """Compare the batched GPU path against the CPU executor on random rules."""
    try:
        pool = DevicePool(threads_per_device=1, verbose=True)
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)

    rng = np.random.default_rng(args.seed)
    failures = 0
    for trial in range(args.trials):
        h, w = rng.integers(1, 31, size=2)
        grid = Grid(rng.integers(0, 10, size=(h, w)))
        rule = Rule.random(args.max_steps, rng)
        substrate = from_grid(grid)

        cpu = CpuExecutor(rule, substrate)
        gpu = GpuExecutor(rule, substrate, pool)
        cpu_reason = cpu.run()
        gpu_reason = gpu.run()

        same = np.array_equal(cpu.state, gpu.state) and cpu_reason == gpu_reason
        if not same:
            failures += 1
        print(f"  trial {trial:3d} {h}x{w}: cpu={cpu_reason} gpu={gpu_reason} {'OK' if same else 'MISMATCH'}")

    if failures:
        print(f"\n{failures}/{args.trials} trial(s) differ between CPU and GPU")
        sys.exit(1)
    print(f"\nAll {args.trials} trial(s) match")


def cmd_render(args):
    """Render a stored model's predictions on a task."""
    try:
        dataset = Dataset.load(args.tasks)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    task = dataset.get_task(args.task_id)
    stored = ModelDatabase(args.database).get_by_task(args.task_id)
    if task is None or stored is None:
        print(f"Error: no task and stored model for '{args.task_id}'")
        sys.exit(1)

    model = stored.model
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    image_path = output_dir / f"{task.id}_train.png"
    create_task_image(task, model, str(image_path), cell_size=args.cell_size)
    print(f"Saved: {image_path}")

    if args.gif:
        frames = record_run(model.rules[0], task.train[0].input)
        gif_path = output_dir / f"{task.id}_run.gif"
        save_animation(frames, str(gif_path), cell_size=args.cell_size)
        print(f"Saved: {gif_path}")


def main():
    parser = argparse.ArgumentParser(
        description="Evolve neural cellular automata that solve ARC tasks"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Train command
    train_parser = subparsers.add_parser("train", help="Train rules on ARC tasks")
    train_parser.add_argument("tasks", type=str, help="ARC challenges JSON file")
    train_parser.add_argument("--solutions", type=str, default=None, help="ARC solutions JSON file")
    train_parser.add_argument("--task-id", type=str, action="append", help="Only train this task (repeatable)")
    train_parser.add_argument("--limit", type=int, default=None, help="Train at most this many tasks")
    train_parser.add_argument("--config", type=str, default=None, help="Config JSON file")
    train_parser.add_argument("-p", "--pop", type=int, default=None, help="Population size")
    train_parser.add_argument("-e", "--epochs", type=int, default=None, help="Number of epochs")
    train_parser.add_argument("--max-steps", type=int, default=None, help="Steps per rule")
    train_parser.add_argument("--max-fun-evals", type=int, default=None, help="Evaluations per optimizer run")
    train_parser.add_argument("--workers", type=int, default=None, help="Worker threads")
    train_parser.add_argument("--stages", type=int, default=None, help="Maximum stages per ensemble")
    train_parser.add_argument("--backend", type=str, choices=["CPU", "GPU"], default=None, help="Execution backend")
    train_parser.add_argument("--seed", type=int, default=None, help="Random seed")
    train_parser.add_argument("--database", type=str, default="trained_models.json", help="Database file")
    train_parser.add_argument("--report", type=str, default=None, help="Write a JSON report here")
    train_parser.add_argument("-o", "--output", type=str, default="output", help="Output directory for plots")
    train_parser.add_argument("--plot", action="store_true", help="Save metric plots and prediction images")
    train_parser.add_argument("-v", "--verbose", action="store_true", help="Print training progress")
    train_parser.set_defaults(func=cmd_train)

    # GPU check command
    gpu_parser = subparsers.add_parser("check-gpu", help="Check GPU results against the CPU executor")
    gpu_parser.add_argument("-n", "--trials", type=int, default=20, help="Number of random trials")
    gpu_parser.add_argument("--max-steps", type=int, default=20, help="Steps per rule")
    gpu_parser.add_argument("--seed", type=int, default=0, help="Random seed")
    gpu_parser.set_defaults(func=cmd_check_gpu)

    # Render command
    render_parser = subparsers.add_parser("render", help="Render a stored model's predictions")
    render_parser.add_argument("tasks", type=str, help="ARC challenges JSON file")
    render_parser.add_argument("task_id", type=str, help="Task id")
    render_parser.add_argument("--database", type=str, default="trained_models.json", help="Database file")
    render_parser.add_argument("--cell-size", type=int, default=16, help="Cell size in pixels")
    render_parser.add_argument("--gif", action="store_true", help="Also save an animation of the first stage")
    render_parser.add_argument("-o", "--output", type=str, default="output", help="Output directory")
    render_parser.set_defaults(func=cmd_render)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
