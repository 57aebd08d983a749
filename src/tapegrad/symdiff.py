"""
Symbolic reverse-mode differentiation: extends a graph with gradient nodes
"""

from __future__ import annotations

import functools
import logging
from typing import Sequence

import numpy as np

from tapegrad import errors, nodes, operations

logger = logging.getLogger(__name__)


def backpropagate(
    outputs: Sequence[nodes.Node], seeds: Sequence[nodes.Node], wrt: Sequence[nodes.Node]
) -> list[nodes.Node]:
    """
    Add the gradient nodes of `wrt` given the gradients `seeds` of `outputs`.
    Only nodes on a path from some `wrt` node to an output get differentiated.
    Every gradient node records the node it differentiates in `deriv_of`.
    """
    if len(outputs) != len(seeds):
        raise errors.BackpropError(f"{len(outputs)} outputs but {len(seeds)} seeds")
    if not outputs or not wrt:
        raise errors.BackpropError("nothing to differentiate")
    graph = outputs[0].graph
    if any(n.graph is not graph for n in (*outputs, *seeds, *wrt)):
        raise errors.GraphError("outputs, seeds and wrt must belong to the same graph")
    for out, seed in zip(outputs, seeds):
        if out.shape != seed.shape:
            raise errors.ShapeError(f"seed of {seed.shape} for output {out} of {out.shape}")

    order = graph.sorted(*outputs)
    affected = {n.id for n in wrt}
    for node in order:
        if node.op is not None and any(
            c in affected and node.op.diff_wrt(i) for i, c in enumerate(node.children)
        ):
            affected.add(node.id)
    active = affected & {n.id for n in order}

    contributions: dict[int, list[nodes.Node]] = {}
    for out, seed in zip(outputs, seeds):
        contributions.setdefault(out.id, []).append(seed)

    for node in reversed(order):
        if node.id not in active or not (parts := contributions.pop(node.id, None)):
            continue
        grad = functools.reduce(operations.add, parts)
        if node.id not in grad.deriv_of:
            grad.deriv_of.append(node.id)
        node.deriv = grad.id
        if node.op is None:
            continue
        children = graph.children(node)
        differentiable = [c.id in active and node.op.diff_wrt(i) for i, c in enumerate(children)]
        if not any(differentiable):
            continue
        child_grads = node.op.sym_diff(children, node, grad)
        for child, child_grad, wanted in zip(children, child_grads, differentiable, strict=True):
            if wanted and child_grad is not None:
                contributions.setdefault(child.id, []).append(child_grad)
        logger.debug("differentiated %s", node)

    if missing := [n for n in wrt if n.deriv is None]:
        raise errors.BackpropError(f"{missing} do not contribute to {list(outputs)}")
    return [graph.node(n.deriv) for n in wrt]


def grad(cost: nodes.Node, *wrt: nodes.Node) -> list[nodes.Node]:
    """Gradient nodes of a scalar `cost` with respect to each of `wrt`."""
    if not cost.shape.is_scalar:
        raise errors.ShapeError(f"cost must be a scalar, {cost} has {cost.shape}")
    seed = cost.graph.constant(np.ones((), dtype=cost.dtype))
    return backpropagate([cost], [seed], wrt)
