"""
Broadcasting algebra.

A `BroadcastPattern` packs into a single byte which axes of the left and of the
right operand of a binary operation get virtually expanded. Axis `i` of the
left operand maps to bit `4 + i`, axis `i` of the right operand maps to bit `i`,
so at most `BC_ALLOWABLE_AXES` axes per operand can be described.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Iterable

from tapegrad import errors, operations, shapes

if TYPE_CHECKING:
    from tapegrad import nodes

BC_ALLOWABLE_AXES = 4
_BYTE_MASK = 0xFF


def _shift(left: bool, axis: int) -> int:
    return BC_ALLOWABLE_AXES + axis if left else axis


@dataclasses.dataclass(slots=True, frozen=True)
class BroadcastPattern:
    bits: int = 0

    @classmethod
    def new(cls, left_axes: Iterable[int] = (), right_axes: Iterable[int] = ()) -> BroadcastPattern:
        # NOTE: wraps like a byte, axes beyond BC_ALLOWABLE_AXES are not validated
        bits = 0
        for axis in left_axes:
            bits |= 1 << (BC_ALLOWABLE_AXES + axis)
        for axis in right_axes:
            bits |= 1 << axis
        return cls(bits & _BYTE_MASK)

    def with_axis(self, left: bool, axis: int) -> BroadcastPattern:
        return BroadcastPattern((self.bits | 1 << _shift(left, axis)) & _BYTE_MASK)

    def bc(self, left: bool, axis: int) -> bool:
        """Whether `axis` of the left (or right) operand is broadcast."""
        return bool(self.bits >> _shift(left, axis) & 1)

    def on(self) -> tuple[tuple[int, ...], tuple[int, ...]]:
        left = tuple(i for i in range(BC_ALLOWABLE_AXES) if self.bits >> (BC_ALLOWABLE_AXES + i) & 1)
        right = tuple(i for i in range(BC_ALLOWABLE_AXES) if self.bits >> i & 1)
        return left, right

    def __bool__(self) -> bool:
        return self.bits != 0

    def __str__(self) -> str:
        return f"BroadcastPattern({self.bits:08b})"

    def apply(self, a: nodes.Node, b: nodes.Node) -> tuple[nodes.Node, nodes.Node]:
        return broadcast(a, b, self)


def auto_broadcast_pattern(a_shape: shapes.Shape, b_shape: shapes.Shape) -> BroadcastPattern:
    """Mark the smaller side of every axis where the extents of two equal rank shapes differ."""
    if a_shape.ndims != b_shape.ndims:
        raise errors.BroadcastError(f"cannot infer a broadcast pattern for {a_shape} <> {b_shape}")
    pattern = BroadcastPattern()
    for axis, (a_dim, b_dim) in enumerate(zip(a_shape, b_shape)):
        if a_dim != b_dim:
            pattern = pattern.with_axis(a_dim < b_dim, axis)
    return pattern


def calc_broadcast_shape(shape: shapes.Shape, expected_ndims: int, broadcast_along: Iterable[int]) -> shapes.Shape:
    """Expand `shape` to `expected_ndims` by inserting singleton axes at `broadcast_along`."""
    if shape.ndims == expected_ndims:
        return shape
    dims = [0] * expected_ndims
    for axis in broadcast_along:
        dims[axis] = 1
    own = iter(shape)
    try:
        dims = [d if d else next(own) for d in dims]
    except StopIteration:
        raise errors.BroadcastError(f"cannot expand {shape} to {expected_ndims} dims along {broadcast_along}")
    if next(own, None) is not None:
        raise errors.BroadcastError(f"cannot expand {shape} to {expected_ndims} dims along {broadcast_along}")
    return shapes.Shape(tuple(dims))


def broadcast(a: nodes.Node, b: nodes.Node, pattern: BroadcastPattern) -> tuple[nodes.Node, nodes.Node]:
    left, right = pattern.on()
    x = _expand(a, b, left) if left else a
    y = _expand(b, a, right) if right else b
    return x, y


def _expand(node: nodes.Node, other: nodes.Node, axes: tuple[int, ...]) -> nodes.Node:
    if any(axis >= other.shape.ndims for axis in axes):
        raise errors.BroadcastError(f"cannot broadcast {node} along {axes}: {other} has shape {other.shape}")
    if node.shape.ndims < other.shape.ndims:
        node = operations.reshape(node, calc_broadcast_shape(node.shape, other.shape.ndims, axes))
    elif node.shape.ndims > other.shape.ndims:
        raise errors.BroadcastError(f"{node} has more dims than {other}")
    for axis in axes:
        own, target = node.shape[axis], other.shape[axis]
        if own == 1:
            count = operations.size_of(other, axis)
        elif target % own == 0:
            count = node.graph.constant(target // own)
        else:
            raise errors.BroadcastError(f"cannot broadcast extent {own} to {target} along {axis=}")
        node = operations.repeat(node, axis, count)
    return node
