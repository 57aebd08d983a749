"""
Nodes of an expression graph
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

import numpy as np

from tapegrad import errors, operations, shapes, values
from tapegrad.ops import base

if TYPE_CHECKING:
    from tapegrad import graph, ops


@dataclasses.dataclass(slots=True, eq=False)
class Node:
    """
    A value in the expression graph.
    graph:      The graph owning this node; nodes refer to each other by id.
    op:         The operation producing the node, None for input leaves.
    children:   Ids of the nodes the op reads, in argument order.
    deriv_of:   Ids of the nodes this node is the gradient of.
    deriv:      Id of the gradient node of this node, once differentiated.
    """

    graph: graph.ExprGraph
    id: int
    shape: shapes.Shape
    dtype: np.dtype
    op: ops.Op | None = None
    children: tuple[int, ...] = ()
    name: str | None = None
    deriv_of: list[int] = dataclasses.field(default_factory=list)
    deriv: int | None = None
    _bound: np.ndarray | values.DualValue | None = None

    def __repr__(self) -> str:
        label = self.name or (str(self.op) if self.op is not None else "input")
        return f"<{self.__class__.__name__}#{self.id}({label}, shape={self.shape.dims!r})>"

    @property
    def is_input(self) -> bool:
        return self.op is None

    @property
    def is_constant(self) -> bool:
        return self.op is not None and self.op.arity() == 0

    @property
    def is_bound(self) -> bool:
        return self._bound is not None

    @property
    def value(self) -> np.ndarray | None:
        match self._bound:
            case values.DualValue(value=value):
                return value
            case bound:
                return bound

    @property
    def dual(self) -> values.DualValue | None:
        return self._bound if isinstance(self._bound, values.DualValue) else None

    def dim_sizer(self) -> shapes.Shape | ops.DimSizer:
        return self.op if isinstance(self.op, base.DimSizer) else self.shape

    def grad(self) -> np.ndarray:
        """The accumulated gradient, or the value of the gradient node when no dual value tracked it."""
        if (dual := self.dual) is not None and dual.d is not None:
            return dual.d
        if self.deriv is not None and (grad_value := self.graph.node(self.deriv).value) is not None:
            return grad_value
        raise errors.BackpropError(f"{self} holds no gradient; was the graph differentiated and run?")

    def bind(self, value: Any) -> None:
        value = values.ensure_ndarray(value, self)
        if value.shape != self.shape.dims:
            raise errors.ShapeError(f"cannot bind a value of shape {value.shape} to {self}")
        if (dual := self.dual) is not None:
            dual.value = value
        else:
            self._bound = value

    def bind_copy(self, value: Any) -> None:
        self.bind(np.array(value, copy=True))

    def bind_dual(self) -> values.DualValue:
        if (dual := self.dual) is None:
            if self._bound is None:
                raise errors.GraphError(f"cannot track the gradient of unbound {self}")
            dual = self._bound = values.DualValue(self._bound)
        return dual

    def unbind_dual(self) -> None:
        if (dual := self.dual) is not None:
            self._bound = dual.value

    def unbind(self) -> None:
        self._bound = None

    ### Operator sugar ###
    def __add__(self, other: Node | float) -> Node:
        return operations.add(self, other)

    def __radd__(self, other: float) -> Node:
        return operations.add(other, self)

    def __sub__(self, other: Node | float) -> Node:
        return operations.sub(self, other)

    def __rsub__(self, other: float) -> Node:
        return operations.sub(other, self)

    def __mul__(self, other: Node | float) -> Node:
        return operations.mul(self, other)

    def __rmul__(self, other: float) -> Node:
        return operations.mul(other, self)

    def __truediv__(self, other: Node | float) -> Node:
        return operations.div(self, other)

    def __rtruediv__(self, other: float) -> Node:
        return operations.div(other, self)

    def __neg__(self) -> Node:
        return operations.neg(self)

    def __matmul__(self, other: Node) -> Node:
        return operations.matmul(self, other)
