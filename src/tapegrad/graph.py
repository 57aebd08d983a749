"""
Expression graph: owns every node, deduplicates structurally equal nodes
and orders nodes topologically for compilation
"""

from __future__ import annotations

import collections
from typing import Any, Iterator

import numpy as np

from tapegrad import config, errors, nodes, shapes, values
from tapegrad.ops import base, tensor_ops

DedupKey = tuple[type, int, tuple[int, ...]]


class ExprGraph:
    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self._nodes: list[nodes.Node] = []
        self._dedup: collections.defaultdict[DedupKey, list[int]] = collections.defaultdict(list)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.name!r}, nodes={len(self)})>"

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[nodes.Node]:
        return iter(self._nodes)

    def __contains__(self, node: object) -> bool:
        return isinstance(node, nodes.Node) and node.graph is self

    ### Construction ###
    def input(
        self,
        shape: shapes.Shape | tuple[int, ...] | int,
        dtype: Any = np.float64,
        name: str | None = None,
        value: Any = None,
    ) -> nodes.Node:
        node = nodes.Node(self, len(self._nodes), shapes.as_shape(shape), np.dtype(dtype), name=name)
        self._nodes.append(node)
        config.Configuration.on_node_creation(node)
        if value is not None:
            self.let(node, value)
        return node

    def scalar(self, dtype: Any = np.float64, name: str | None = None, value: Any = None) -> nodes.Node:
        return self.input((), dtype, name, value)

    def vector(self, n: int, dtype: Any = np.float64, name: str | None = None, value: Any = None) -> nodes.Node:
        return self.input((n,), dtype, name, value)

    def matrix(
        self, rows: int, cols: int, dtype: Any = np.float64, name: str | None = None, value: Any = None
    ) -> nodes.Node:
        return self.input((rows, cols), dtype, name, value)

    def constant(self, value: Any, name: str | None = None) -> nodes.Node:
        return self.apply_op(tensor_ops.ConstantOp(values.as_value(value)), name=name)

    def apply_op(self, op: base.Op, *children: nodes.Node, name: str | None = None) -> nodes.Node:
        """Add the node `op(*children)` unless a structurally equal node already exists."""
        if foreign := [c for c in children if c.graph is not self]:
            raise errors.GraphError(f"{foreign} do not belong to {self}")
        base.check_arity(op, len(children))
        child_ids = tuple(c.id for c in children)
        key = (type(op), op.hashcode(), child_ids)
        for node_id in self._dedup.get(key, ()):
            if (existing := self._nodes[node_id]).op == op:
                existing.name = existing.name or name
                return existing
        node = nodes.Node(
            self,
            len(self._nodes),
            op.infer_shape(*(c.shape for c in children)),
            np.dtype(op.infer_dtype(*(c.dtype for c in children))),
            op=op,
            children=child_ids,
            name=name,
        )
        self._nodes.append(node)
        self._dedup[key].append(node.id)
        config.Configuration.on_node_creation(node)
        return node

    def let(self, node: nodes.Node, value: Any) -> None:
        """Bind a value to an input leaf."""
        if node not in self:
            raise errors.GraphError(f"{node} does not belong to {self}")
        if not node.is_input:
            raise errors.GraphError(f"only inputs can be bound, {node} is computed by {node.op}")
        node.bind(values.as_value(value, dtype=node.dtype))

    ### Queries ###
    def node(self, node_id: int) -> nodes.Node:
        if not 0 <= node_id < len(self._nodes):
            raise errors.GraphError(f"{self} has no node {node_id}")
        return self._nodes[node_id]

    def children(self, node: nodes.Node) -> tuple[nodes.Node, ...]:
        return tuple(self._nodes[i] for i in node.children)

    @property
    def inputs(self) -> list[nodes.Node]:
        return [n for n in self._nodes if n.is_input]

    def sorted(self, *roots: nodes.Node) -> list[nodes.Node]:
        """
        Depth-first post-order: every node comes after its children.
        Without roots the whole graph is ordered, visiting nodes in insertion order.
        """
        order: list[nodes.Node] = []
        seen: set[int] = set()
        for root in roots or self._nodes:
            stack = [(root, False)]
            while stack:
                node, expanded = stack.pop()
                if expanded:
                    order.append(node)
                    continue
                if node.id in seen:
                    continue
                seen.add(node.id)
                stack.append((node, True))
                stack.extend((self._nodes[c], False) for c in reversed(node.children) if c not in seen)
        return order
