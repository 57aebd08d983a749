"""
Example, fitting a linear model with a bias by gradient descent.
Every worker owns a graph on its own shard of the data; the passes of all
workers run concurrently and the solver steps each set of parameters.

```bash
python examples/linreg.py --workers 4 --dot static/linreg.dot
```
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import pathlib

import numpy as np

from tapegrad import graph, machine, nodes, operations, parallel, solvers, symdiff

TRUE_WEIGHTS = np.array([1.5, -2.0, 0.5])
TRUE_BIAS = 0.25

np.random.seed(42)
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(message)s")
logger = logging.getLogger(__name__)


### Model ###
@dataclasses.dataclass
class Worker:
    graph: graph.ExprGraph
    machine: machine.TapeMachine
    weights: nodes.Node
    bias: nodes.Node
    cost: nodes.Node

    def params(self) -> tuple[nodes.Node, nodes.Node]:
        return self.weights, self.bias


def build_worker(name: str, features: np.ndarray, targets: np.ndarray) -> Worker:
    n_samples, n_features = features.shape
    g = graph.ExprGraph(name)
    x = g.matrix(n_samples, n_features, name="x", value=features)
    y = g.vector(n_samples, name="y", value=targets)
    weights = g.matrix(1, n_features, name="w", value=np.zeros((1, n_features)))
    bias = g.vector(1, name="b", value=np.zeros(1))
    # (n, f) * (1, f) broadcast along the batch axis, then bias broadcast over samples
    weighted = operations.sum(operations.broadcast_mul(x, weights, right_axes=[0]), axes=1)
    pred = operations.broadcast_add(weighted, bias, right_axes=[0])
    cost = operations.mean(operations.square(pred - y))
    symdiff.grad(cost, weights, bias)
    return Worker(g, machine.TapeMachine(g), weights, bias, cost)


### Data ###
def make_shards(n_workers: int, shard_size: int) -> list[tuple[np.ndarray, np.ndarray]]:
    shards = []
    for _ in range(n_workers):
        features = np.random.normal(size=(shard_size, len(TRUE_WEIGHTS)))
        targets = features @ TRUE_WEIGHTS + TRUE_BIAS + np.random.normal(scale=0.01, size=shard_size)
        shards.append((features, targets))
    return shards


def main():
    parser = argparse.ArgumentParser(description="Fit a linear model on sharded data.")
    parser.add_argument("--workers", type=int, default=4, help="Number of concurrent workers.")
    parser.add_argument("--shard_size", type=int, default=32, help="Samples per worker.")
    parser.add_argument("--steps", type=int, default=200, help="Number of training steps.")
    parser.add_argument("--learning_rate", type=float, default=0.1, help="Learning rate for training.")
    parser.add_argument("--log_every_n_steps", type=int, default=20, help="Log every n steps.")
    parser.add_argument("--dot", type=pathlib.Path, default=None, help="Write the graph of a worker as DOT.")
    args = parser.parse_args()
    train(
        n_workers=args.workers,
        shard_size=args.shard_size,
        steps=args.steps,
        learning_rate=args.learning_rate,
        log_every_n_steps=args.log_every_n_steps,
        dot_path=args.dot,
    )


def train(
    n_workers: int,
    shard_size: int,
    steps: int,
    learning_rate: float,
    log_every_n_steps: int,
    dot_path: pathlib.Path | None,
) -> None:
    workers = [build_worker(f"worker-{i}", *shard) for i, shard in enumerate(make_shards(n_workers, shard_size))]
    solver = solvers.VanillaSolver(learn_rate=learning_rate)
    if dot_path is not None:
        from tapegrad.encoding import dot

        dot_path.parent.mkdir(parents=True, exist_ok=True)
        dot.write_dot(workers[0].graph, dot_path)
    for step in range(steps):
        parallel.run_concurrently([w.machine for w in workers])
        solver.step(p for w in workers for p in w.params())
        if step % log_every_n_steps == 0:
            log_step(step, float(np.mean([w.cost.value for w in workers])))
    for worker in workers:
        logger.info("%s: w=%s b=%s", worker.graph.name, worker.weights.value.ravel(), worker.bias.value)


def log_step(step: int, mse: float) -> None:
    logger.info(" | ".join((f"step: {step:<6}", f"train_mse: {mse:.9f}")))


if __name__ == "__main__":
    main()
