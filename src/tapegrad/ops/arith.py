"""
Arithmetic operations: elementwise binary and unary ops, sum reduction, matrix products
"""

from __future__ import annotations

import dataclasses
import enum
from typing import TYPE_CHECKING, Any, Callable, Sequence

import numpy as np

from tapegrad import errors, operations, shapes, values
from tapegrad.ops import base
from tapegrad.ops.tensor_ops import check_prealloc

if TYPE_CHECKING:
    from tapegrad import nodes


def _sigmoid(x: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
    return np.divide(1.0, 1.0 + np.exp(-x), out=out)


def _float_dtype(dtype: np.dtype) -> np.dtype:
    return np.dtype(np.float64) if dtype.kind in "biu" else dtype


class BinKind(enum.Enum):
    ADD = enum.auto()
    SUB = enum.auto()
    MUL = enum.auto()
    DIV = enum.auto()


class UnaryKind(enum.Enum):
    NEG = enum.auto()
    EXP = enum.auto()
    LOG = enum.auto()
    SQUARE = enum.auto()
    TANH = enum.auto()
    SIGMOID = enum.auto()


BINARY_UFUNCS: dict[BinKind, Callable[..., Any]] = {
    BinKind.ADD: np.add,
    BinKind.SUB: np.subtract,
    BinKind.MUL: np.multiply,
    BinKind.DIV: np.true_divide,
}
UNARY_UFUNCS: dict[UnaryKind, Callable[..., Any]] = {
    UnaryKind.NEG: np.negative,
    UnaryKind.EXP: np.exp,
    UnaryKind.LOG: np.log,
    UnaryKind.SQUARE: np.square,
    UnaryKind.TANH: np.tanh,
    UnaryKind.SIGMOID: _sigmoid,
}


def _can_overwrite(x: np.ndarray, shape: tuple[int, ...], dtype: np.dtype) -> bool:
    return x.shape == shape and x.dtype == dtype and x.flags.writeable


@dataclasses.dataclass(slots=True, frozen=True)
class ElemBinOp(base.Op):
    """Elementwise binary arithmetic on equal shapes, or with one scalar operand."""

    kind: BinKind

    def arity(self) -> int:
        return 2

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        a, b = inputs
        if a == b or b.is_scalar:
            return a
        if a.is_scalar:
            return b
        raise errors.ShapeError(f"{self} needs equal shapes or a scalar operand, got {a} <> {b}")

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        dtype = np.result_type(*dtypes)
        return _float_dtype(dtype) if self.kind is BinKind.DIV else dtype

    def _operands(self, inputs: tuple[Any, ...]) -> tuple[np.ndarray, np.ndarray]:
        base.check_arity(self, len(inputs))
        a, b = (values.ensure_ndarray(v, self) for v in inputs)
        self.infer_shape(shapes.Shape(a.shape), shapes.Shape(b.shape))
        return a, b

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        a, b = self._operands(inputs)
        return np.asarray(BINARY_UFUNCS[self.kind](a, b))

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        a, b = self._operands(inputs)
        check_prealloc(self, prealloc, np.broadcast_shapes(a.shape, b.shape))
        return BINARY_UFUNCS[self.kind](a, b, out=prealloc)

    def overwrites_input(self) -> int:
        return 0

    def unsafe_do(self, *inputs: np.ndarray) -> np.ndarray:
        a, b = self._operands(inputs)
        if not _can_overwrite(a, np.broadcast_shapes(a.shape, b.shape), self.infer_dtype(a.dtype, b.dtype)):
            return self.do(a, b)
        return BINARY_UFUNCS[self.kind](a, b, out=a)

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        a, b = inputs
        match self.kind:
            case BinKind.ADD:
                ga, gb = grad, grad
            case BinKind.SUB:
                ga, gb = grad, operations.neg(grad)
            case BinKind.MUL:
                ga, gb = operations.mul(grad, b), operations.mul(grad, a)
            case BinKind.DIV:
                ga = operations.div(grad, b)
                gb = operations.neg(operations.div(operations.mul(grad, output), b))
        return _reduce_to(ga, a), _reduce_to(gb, b)

    def __str__(self) -> str:
        return self.kind.name.lower()


def _reduce_to(grad: nodes.Node, node: nodes.Node) -> nodes.Node:
    """Sum a tensor gradient down to a scalar operand."""
    if node.shape.is_scalar and not grad.shape.is_scalar:
        return operations.sum(grad)
    return grad


@dataclasses.dataclass(slots=True, frozen=True)
class ElemUnaryOp(base.Op):
    kind: UnaryKind

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        return x

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        (dtype,) = dtypes
        return dtype if self.kind in (UnaryKind.NEG, UnaryKind.SQUARE) else _float_dtype(dtype)

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        return np.asarray(UNARY_UFUNCS[self.kind](values.ensure_ndarray(inputs[0], self)))

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        check_prealloc(self, prealloc, x.shape)
        return UNARY_UFUNCS[self.kind](x, out=prealloc)

    def overwrites_input(self) -> int:
        return 0

    def unsafe_do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        if not _can_overwrite(x, x.shape, self.infer_dtype(x.dtype)):
            return self.do(x)
        return UNARY_UFUNCS[self.kind](x, out=x)

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        (x,) = inputs
        match self.kind:
            case UnaryKind.NEG:
                gx = operations.neg(grad)
            case UnaryKind.EXP:
                gx = operations.mul(grad, output)
            case UnaryKind.LOG:
                gx = operations.div(grad, x)
            case UnaryKind.SQUARE:
                gx = operations.mul(grad, operations.mul(x, 2))
            case UnaryKind.TANH:
                gx = operations.mul(grad, operations.sub(1, operations.square(output)))
            case UnaryKind.SIGMOID:
                gx = operations.mul(grad, operations.mul(output, operations.sub(1, output)))
        return (gx,)

    def __str__(self) -> str:
        return self.kind.name.lower()


@dataclasses.dataclass(slots=True, frozen=True)
class SumOp(base.Op):
    axes: tuple[int, ...]
    ndims: int

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if x.ndims != self.ndims or not all(0 <= a < x.ndims for a in self.axes):
            raise errors.ShapeError(f"cannot sum {x} along {self.axes}")
        return x.dropaxes(*self.axes)

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        (dtype,) = dtypes
        match dtype.kind:
            case "b" | "i":
                return np.result_type(dtype, np.int_)
            case "u":
                return np.result_type(dtype, np.uint)
        return dtype

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        return np.asarray(np.sum(x, axis=self.axes, dtype=self.infer_dtype(x.dtype)))

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        check_prealloc(self, prealloc, shapes.Shape(x.shape).dropaxes(*self.axes).dims)
        np.sum(x, axis=self.axes, out=prealloc)
        return prealloc

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        (x,) = inputs
        kept = operations.reshape(grad, x.shape.dropaxes(*self.axes).insertaxes(*self.axes))
        return (operations.repeated_apply(kept, self.axes, [operations.size_of(x, a) for a in self.axes]),)

    def __str__(self) -> str:
        return f"Sum{self.axes}"


@dataclasses.dataclass(slots=True, frozen=True)
class MatMulOp(base.Op):
    """Matrix-matrix and matrix-vector products."""

    def arity(self) -> int:
        return 2

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        a, b = inputs
        if a.ndims != 2 or b.ndims not in (1, 2) or a[1] != b[0]:
            raise errors.ShapeError(f"cannot multiply {a} @ {b}")
        return shapes.Shape((a[0], b[1])) if b.ndims == 2 else shapes.Shape((a[0],))

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        return np.matmul(*(values.ensure_ndarray(v, self) for v in inputs))

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        a, b = (values.ensure_ndarray(v, self) for v in inputs)
        check_prealloc(self, prealloc, self.infer_shape(shapes.Shape(a.shape), shapes.Shape(b.shape)).dims)
        return np.matmul(a, b, out=prealloc)

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        a, b = inputs
        if b.shape.is_vector:
            (m, n) = a.shape.dims
            ga = operations.matmul(operations.reshape(grad, (m, 1)), operations.reshape(b, (1, n)))
            return ga, operations.matmul(operations.transpose(a), grad)
        ga = operations.matmul(grad, operations.transpose(b))
        gb = operations.matmul(operations.transpose(a), grad)
        return ga, gb

    def __str__(self) -> str:
        return "matmul"
