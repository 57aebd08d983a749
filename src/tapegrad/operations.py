"""
Functions that build graph nodes by applying operations
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any, Iterable, Sequence

import numpy as np

from tapegrad import broadcast, errors, nodes, shapes
from tapegrad.ops import arith, tensor_ops

if TYPE_CHECKING:
    from tapegrad import graph, ops


def apply_op(op: ops.Op, *children: nodes.Node, name: str | None = None) -> nodes.Node:
    if not children:
        raise errors.GraphError(f"{op} has no inputs to infer the graph from, use ExprGraph.apply_op")
    return _graph_of(*children).apply_op(op, *children, name=name)


def _graph_of(*candidates: Any) -> graph.ExprGraph:
    graphs = {id(c.graph): c.graph for c in candidates if isinstance(c, nodes.Node)}
    if len(graphs) != 1:
        raise errors.GraphError(f"expected operands of exactly one graph, found {len(graphs)}")
    return next(iter(graphs.values()))


def _lift(g: graph.ExprGraph, x: Any, dtype: np.dtype) -> nodes.Node:
    if isinstance(x, nodes.Node):
        return x
    if not isinstance(x, (int, float, np.generic, np.ndarray)):
        x = np.asarray(x)
    # python scalars promote weakly: an int node times 0.5 is float
    return g.constant(np.asarray(x, dtype=np.result_type(dtype, x)))


### Structural ###
def at(node: nodes.Node, *coordinates: int) -> nodes.Node:
    return apply_op(tensor_ops.AtOp(tuple(coordinates), node.shape.ndims), node)


def size_of(node: nodes.Node, axis: int) -> nodes.Node:
    val = 1 if node.shape.is_scalar else node.shape.dim_size(axis)
    return apply_op(tensor_ops.SizeOp(axis, node.shape.ndims, val), node)


def repeat(node: nodes.Node, along: int, count: nodes.Node | int) -> nodes.Node:
    """Repeat each element of `node` `count` times along an axis; the count has to be known statically."""
    if not isinstance(count, nodes.Node):
        count = node.graph.constant(int(count))
    sizer = count.dim_sizer()
    if isinstance(sizer, shapes.Shape):
        raise errors.ShapeError(f"the count of a repeat must come from a size or a scalar constant, got {count}")
    return apply_op(tensor_ops.RepeatOp(along, node.shape, sizer.dim_size(along)), node, count)


def repeated_apply(
    node: nodes.Node, along: Sequence[int], counts: Sequence[nodes.Node | int]
) -> nodes.Node:
    if len(along) != len(counts):
        raise errors.ArityError(f"{len(along)} axes but {len(counts)} counts")
    return functools.reduce(lambda acc, axis_count: repeat(acc, *axis_count), zip(along, counts), node)


def slice_along(node: nodes.Node, along: int, slc: shapes.Slice | int) -> nodes.Node:
    slc = slc if isinstance(slc, shapes.Slice) else shapes.Slice(slc)
    return apply_op(tensor_ops.SliceOp(along, slc, node.shape.ndims), node)


def slice_incr(source: nodes.Node, incr: nodes.Node, along: int, slc: shapes.Slice | int) -> nodes.Node:
    slc = slc if isinstance(slc, shapes.Slice) else shapes.Slice(slc)
    return apply_op(tensor_ops.SliceIncrOp(along, slc, source.shape.ndims), source, incr)


def transpose(node: nodes.Node, pattern: Sequence[int] | None = None) -> nodes.Node:
    pattern = tuple(reversed(range(node.shape.ndims))) if pattern is None else tuple(pattern)
    return apply_op(tensor_ops.TransposeOp(pattern, node.shape.ndims), node)


def concat(axis: int, *inputs: nodes.Node) -> nodes.Node:
    if not inputs:
        raise errors.ArityError("concatenation needs at least one input")
    return apply_op(tensor_ops.ConcatOp(axis, inputs[0].shape.ndims, len(inputs)), *inputs)


def reshape(node: nodes.Node, to: shapes.Shape | Iterable[int]) -> nodes.Node:
    if (to := shapes.as_shape(to)) == node.shape:
        return node
    return apply_op(tensor_ops.ReshapeOp(node.shape, to), node)


### Arithmetic ###
def _binary(kind: arith.BinKind, a: Any, b: Any) -> nodes.Node:
    g = _graph_of(a, b)
    dtype = next(x.dtype for x in (a, b) if isinstance(x, nodes.Node))
    return apply_op(arith.ElemBinOp(kind), _lift(g, a, dtype), _lift(g, b, dtype))


def add(a: Any, b: Any) -> nodes.Node:
    return _binary(arith.BinKind.ADD, a, b)


def sub(a: Any, b: Any) -> nodes.Node:
    return _binary(arith.BinKind.SUB, a, b)


def mul(a: Any, b: Any) -> nodes.Node:
    return _binary(arith.BinKind.MUL, a, b)


def div(a: Any, b: Any) -> nodes.Node:
    return _binary(arith.BinKind.DIV, a, b)


def _unary(kind: arith.UnaryKind, node: nodes.Node) -> nodes.Node:
    return apply_op(arith.ElemUnaryOp(kind), node)


neg = functools.partial(_unary, arith.UnaryKind.NEG)
exp = functools.partial(_unary, arith.UnaryKind.EXP)
log = functools.partial(_unary, arith.UnaryKind.LOG)
square = functools.partial(_unary, arith.UnaryKind.SQUARE)
tanh = functools.partial(_unary, arith.UnaryKind.TANH)
sigmoid = functools.partial(_unary, arith.UnaryKind.SIGMOID)


def sum(node: nodes.Node, axes: Sequence[int] | int | None = None) -> nodes.Node:
    match axes:
        case None:
            axes = tuple(range(node.shape.ndims))
        case int(axis):
            axes = (axis,)
        case _:
            axes = tuple(sorted(axes))
    return apply_op(arith.SumOp(axes, node.shape.ndims), node)


def mean(node: nodes.Node, axes: Sequence[int] | int | None = None) -> nodes.Node:
    summed = sum(node, axes)
    return div(summed, node.shape.size // summed.shape.size)


def matmul(a: nodes.Node, b: nodes.Node) -> nodes.Node:
    return apply_op(arith.MatMulOp(), a, b)


def ones_like(node: nodes.Node) -> nodes.Node:
    return node.graph.constant(np.ones(node.shape.dims, dtype=node.dtype))


### Broadcasting ###
def auto_broadcast(a: nodes.Node, b: nodes.Node) -> tuple[nodes.Node, nodes.Node]:
    return broadcast.auto_broadcast_pattern(a.shape, b.shape).apply(a, b)


def broadcast_add(a: nodes.Node, b: nodes.Node, left_axes: Iterable[int] = (), right_axes: Iterable[int] = ()) -> nodes.Node:
    return add(*broadcast.BroadcastPattern.new(left_axes, right_axes).apply(a, b))


def broadcast_sub(a: nodes.Node, b: nodes.Node, left_axes: Iterable[int] = (), right_axes: Iterable[int] = ()) -> nodes.Node:
    return sub(*broadcast.BroadcastPattern.new(left_axes, right_axes).apply(a, b))


def broadcast_mul(a: nodes.Node, b: nodes.Node, left_axes: Iterable[int] = (), right_axes: Iterable[int] = ()) -> nodes.Node:
    return mul(*broadcast.BroadcastPattern.new(left_axes, right_axes).apply(a, b))


def broadcast_div(a: nodes.Node, b: nodes.Node, left_axes: Iterable[int] = (), right_axes: Iterable[int] = ()) -> nodes.Node:
    return div(*broadcast.BroadcastPattern.new(left_axes, right_axes).apply(a, b))
