"""
Solvers consume the gradients of a completed pass and update input values
"""

from __future__ import annotations

import abc
import logging
from typing import Iterable, Iterator

import numpy as np

from tapegrad import errors, nodes

logger = logging.getLogger(__name__)


def unique_params(params: Iterable[nodes.Node]) -> Iterator[nodes.Node]:
    seen_ids: set[tuple[int, int]] = set()
    for param in params:
        if (key := (id(param.graph), param.id)) in seen_ids:
            continue
        if not param.is_input:
            raise errors.GraphError(f"only inputs can be updated, {param} is computed by {param.op}")
        seen_ids.add(key)
        yield param


class Solver(abc.ABC):
    @abc.abstractmethod
    def step(self, params: Iterable[nodes.Node]) -> None: ...


class VanillaSolver(Solver):
    """Plain gradient descent: `w -= lr * clip(grad / batch_size + l2reg * w)`."""

    def __init__(
        self, learn_rate: float = 0.001, batch_size: float = 1.0, l2reg: float = 0.0, clip: float | None = None
    ) -> None:
        super().__init__()
        if batch_size <= 0:
            raise ValueError(f"{batch_size=} must be positive")
        self.learn_rate = learn_rate
        self.batch_size = batch_size
        self.l2reg = l2reg
        self.clip = clip

    def step(self, params: Iterable[nodes.Node]) -> None:
        for param in unique_params(params):
            grad = param.grad() / self.batch_size
            if self.l2reg:
                grad = grad + self.l2reg * param.value
            if self.clip is not None:
                grad = np.clip(grad, -self.clip, self.clip)
            param.graph.let(param, param.value - self.learn_rate * grad)
            logger.debug("updated %s", param)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(learn_rate={self.learn_rate}, batch_size={self.batch_size})"
