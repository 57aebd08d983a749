"""
Structural tensor operations: indexing, sizing, repeating, slicing,
transposing, concatenating, reshaping and constants.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from tapegrad import errors, operations, shapes, values
from tapegrad.ops import base

if TYPE_CHECKING:
    from tapegrad import nodes

SIZE_KINDS = (np.dtype(np.float64), np.dtype(np.float32))


def check_prealloc(op: base.Op, prealloc: np.ndarray, shape: tuple[int, ...]) -> None:
    if not isinstance(prealloc, np.ndarray) or prealloc.shape != shape:
        raise errors.PreallocError(f"{op} cannot reuse a buffer of shape {np.shape(prealloc)}, needs {shape}")
    if not prealloc.flags.writeable or not prealloc.flags.c_contiguous:
        raise errors.PreallocError(f"{op} needs a writeable contiguous buffer")


@dataclasses.dataclass(slots=True, frozen=True)
class AtOp(base.Op):
    coordinates: tuple[int, ...]
    ndims: int

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if x.ndims != self.ndims or len(self.coordinates) != x.ndims:
            raise errors.ShapeError(f"{self} cannot index {x}")
        if not all(0 <= c < d for c, d in zip(self.coordinates, x)):
            raise errors.ShapeError(f"{self.coordinates=} out of bounds for {x}")
        return shapes.Shape(())

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        return np.array(x[self.coordinates])

    def diff_wrt(self, i: int) -> bool:
        base.Op.diff_wrt(self, i)
        return False

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        raise errors.NonDifferentiableError(f"{self} has no gradient")

    def __str__(self) -> str:
        return f"At{self.coordinates}"


@dataclasses.dataclass(slots=True, frozen=True)
class SizeOp(base.Op):
    """Extent of one axis, as a scalar of the input's kind."""

    axis: int
    ndims: int
    val: int = -1

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if not x.is_scalar and not 0 <= self.axis < x.ndims:
            raise errors.ShapeError(f"{self} out of range for {x}")
        return shapes.Shape(())

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        (dtype,) = dtypes
        if dtype.kind == "b":
            return np.dtype(np.int_)
        if dtype in SIZE_KINDS or dtype.kind in "iu":
            return dtype
        raise errors.UnsupportedKindError(self, dtype)

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        dtype = self.infer_dtype(x.dtype)
        if x.ndim == 0:
            return np.ones((), dtype=dtype)
        if self.axis >= x.ndim:
            raise errors.ShapeError(f"{self} out of range for shape {x.shape}")
        return np.asarray(x.shape[self.axis], dtype=dtype)

    def dim_size(self, axis: int) -> int:
        if axis != self.axis:
            raise errors.ShapeError(f"{self} is for axis {self.axis}, asked for the size of {axis}")
        return self.val

    def diff_wrt(self, i: int) -> bool:
        base.Op.diff_wrt(self, i)
        return False

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        raise errors.NonDifferentiableError(f"{self} has no gradient")

    def __str__(self) -> str:
        return f"SizeOf={self.val}"


@dataclasses.dataclass(slots=True, frozen=True)
class RepeatOp(base.Op):
    """
    Repeat every element `count` times along `along`, like `np.repeat`.
    Scalars are treated as shape (1,) and inputs with too few axes get trailing singleton axes.
    The count arrives at runtime as the second input and has to agree with the static one.
    """

    along: int
    input_shape: shapes.Shape
    count: int

    def arity(self) -> int:
        return 2

    def extended(self, shape: shapes.Shape) -> shapes.Shape:
        if shape.is_scalar:
            shape = shapes.Shape((1,))
        return shape.rpad_to(self.along + 1)

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        x, count = inputs
        if not count.is_scalar:
            raise errors.ShapeError(f"{self} needs a scalar count, got {count}")
        ext = self.extended(x)
        return ext.replace(self.along, ext[self.along] * self.count)

    def _prepare(self, inputs: Sequence[Any]) -> tuple[np.ndarray, int]:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        if (count := values.value_to_int(inputs[1])) != self.count:
            raise errors.ShapeError(f"{self} was built for count {self.count}, got {count}")
        return x.reshape(self.extended(shapes.Shape(x.shape)).dims), count

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        x, count = self._prepare(inputs)
        return np.repeat(x, count, axis=self.along)

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        x, count = self._prepare(inputs)
        out_shape = x.shape[: self.along] + (x.shape[self.along] * count,) + x.shape[self.along + 1 :]
        check_prealloc(self, prealloc, out_shape)
        split = prealloc.reshape(x.shape[: self.along + 1] + (count,) + x.shape[self.along + 1 :])
        split[...] = np.expand_dims(x, self.along + 1)
        return prealloc

    def diff_wrt(self, i: int) -> bool:
        base.Op.diff_wrt(self, i)
        return i == 0

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        x = inputs[0]
        ext = self.extended(x.shape)
        if (extent := ext[self.along]) == 1:
            summed = operations.sum(grad, axes=(self.along,))
        else:
            split = ext.dims[: self.along] + (extent, self.count) + ext.dims[self.along + 1 :]
            summed = operations.sum(operations.reshape(grad, split), axes=(self.along + 1,))
        return operations.reshape(summed, x.shape), None

    def __str__(self) -> str:
        return f"Repeat{self.along}x{self.count}"


@dataclasses.dataclass(slots=True, frozen=True)
class _AxisSlicing:
    along: int
    slc: shapes.Slice
    ndims: int

    def index(self, shape: tuple[int, ...]) -> tuple[int | slice, ...]:
        if not 0 <= self.along < len(shape):
            raise errors.ShapeError(f"cannot slice shape {shape} along {self.along}")
        start, end, step = self.slc.resolve(shape[self.along])
        index: list[int | slice] = [slice(None)] * len(shape)
        index[self.along] = start if len(range(start, end, step)) == 1 else slice(start, end, step)
        return tuple(index)


@dataclasses.dataclass(slots=True, frozen=True)
class SliceOp(_AxisSlicing, base.Op):
    """Select a span along one axis; selecting exactly one element drops the axis."""

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if x.is_scalar:
            raise errors.ShapeError(f"cannot slice a scalar with {self}")
        return x.slice_along(self.along, self.slc)

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        if x.ndim == 0:
            raise errors.ShapeError(f"cannot slice a scalar with {self}")
        return np.array(x[self.index(x.shape)])

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        return (operations.slice_incr(inputs[0], grad, self.along, self.slc),)

    def __str__(self) -> str:
        return f"Slice{self.along}{self.slc}"


@dataclasses.dataclass(slots=True, frozen=True)
class SliceIncrOp(_AxisSlicing, base.Op):
    """Scatter an increment into a zero buffer shaped like the source, adding into the sliced span."""

    def arity(self) -> int:
        return 2

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        x, incr = inputs
        if x.is_scalar:
            raise errors.ShapeError(f"cannot slice a scalar with {self}")
        if (expected := x.slice_along(self.along, self.slc)) != incr:
            raise errors.ShapeError(f"{self} needs an increment of {expected}, got {incr}")
        return x

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x, incr = (values.ensure_ndarray(v, self) for v in inputs)
        out = np.zeros(x.shape, dtype=self.infer_dtype(x.dtype, incr.dtype))
        out[self.index(x.shape)] += incr
        return out

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x, incr = (values.ensure_ndarray(v, self) for v in inputs)
        check_prealloc(self, prealloc, x.shape)
        prealloc.fill(0)
        prealloc[self.index(x.shape)] += incr
        return prealloc

    def diff_wrt(self, i: int) -> bool:
        base.Op.diff_wrt(self, i)
        return i == 1

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        return None, operations.slice_along(grad, self.along, self.slc)

    def __str__(self) -> str:
        return f"SliceIncr{self.along}{self.slc}"


@dataclasses.dataclass(slots=True, frozen=True)
class TransposeOp(base.Op):
    pattern: tuple[int, ...]
    ndims: int

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if x.is_scalar:
            raise errors.ShapeError(f"cannot transpose a scalar with {self}")
        return x.permute(self.pattern)

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        if x.ndim == 0:
            raise errors.ShapeError(f"cannot transpose a scalar with {self}")
        return np.ascontiguousarray(np.transpose(x, self.pattern))

    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        transposed = np.transpose(x, self.pattern)
        check_prealloc(self, prealloc, transposed.shape)
        np.copyto(prealloc, transposed)
        return prealloc

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        inverse = tuple(int(i) for i in np.argsort(self.pattern))
        return (operations.transpose(grad, inverse),)

    def __str__(self) -> str:
        return f"T{self.pattern}"


@dataclasses.dataclass(slots=True, frozen=True)
class ConcatOp(base.Op):
    axis: int
    ndims: int
    n: int

    def __post_init__(self) -> None:
        if self.n < 1:
            raise errors.ArityError(f"concatenation needs at least one input, got {self.n}")

    def arity(self) -> int:
        return base.VARIADIC

    def _check_count(self, n_inputs: int) -> None:
        if n_inputs != self.n:
            raise errors.ArityError(f"{self} was built for {self.n} inputs, got {n_inputs}")

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        self._check_count(len(inputs))
        first, *rest = inputs
        return first.concat(self.axis, *rest)

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        self._check_count(len(inputs))
        if self.n == 1:
            return values.ensure_ndarray(inputs[0], self)
        return np.concatenate(inputs, axis=self.axis)

    def returns_view(self) -> bool:
        return self.n == 1

    def diff_wrt(self, i: int) -> bool:
        if not 0 <= i < self.n:
            raise errors.ArityError(f"{self} has no input {i}")
        return True

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        if self.n == 1:
            return (grad,)
        grads, offset = [], 0
        for x in inputs:
            span = x.shape[self.axis]
            part = operations.slice_along(grad, self.axis, shapes.Slice(offset, offset + span))
            grads.append(operations.reshape(part, x.shape) if span == 1 else part)
            offset += span
        return tuple(grads)

    def __str__(self) -> str:
        return f"Concat{self.axis}"


@dataclasses.dataclass(slots=True, frozen=True)
class ReshapeOp(base.Op):
    from_shape: shapes.Shape
    to_shape: shapes.Shape

    def __post_init__(self) -> None:
        if self.from_shape.size != self.to_shape.size:
            raise errors.ShapeMismatchError(f"cannot reshape {self.from_shape} to {self.to_shape}")

    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        (x,) = inputs
        if x.size != self.to_shape.size:
            raise errors.ShapeMismatchError(f"cannot reshape {x} to {self.to_shape}")
        return self.to_shape

    def _checked(self, inputs: Sequence[Any]) -> np.ndarray:
        base.check_arity(self, len(inputs))
        x = values.ensure_ndarray(inputs[0], self)
        if x.size != self.to_shape.size:
            raise errors.ShapeMismatchError(f"cannot reshape a value of shape {x.shape} to {self.to_shape}")
        return x

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        x = self._checked(inputs)
        if x.base is not None:  # views get materialized
            return np.array(x).reshape(self.to_shape.dims)
        return x.reshape(self.to_shape.dims)

    def unsafe_do(self, *inputs: np.ndarray) -> np.ndarray:
        return self._checked(inputs).reshape(self.to_shape.dims)

    def overwrites_input(self) -> int:
        return 0

    def returns_view(self) -> bool:
        return True

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        return (operations.reshape(grad, inputs[0].shape),)

    def __str__(self) -> str:
        return f"Reshape{self.to_shape.dims}"


@dataclasses.dataclass(slots=True, frozen=True, eq=False)
class ConstantOp(base.Op):
    value: np.ndarray

    def __post_init__(self) -> None:
        value = np.array(values.as_value(self.value), copy=True)
        value.setflags(write=False)
        object.__setattr__(self, "value", value)

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, ConstantOp)
            and self.value.dtype == other.value.dtype
            and self.value.shape == other.value.shape
            and np.array_equal(self.value, other.value)
        )

    def __hash__(self) -> int:
        return self.hashcode()

    def arity(self) -> int:
        return 0

    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape:
        return shapes.Shape(self.value.shape)

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        return self.value.dtype

    def do(self, *inputs: np.ndarray) -> np.ndarray:
        base.check_arity(self, len(inputs))
        return self.value.copy()

    def dim_size(self, axis: int) -> int:
        """A scalar constant sizes any axis with its value; other constants report their extent."""
        if self.value.ndim == 0:
            return values.value_to_int(self.value)
        return shapes.Shape(self.value.shape).dim_size(axis)

    def write_hash(self, h: Any) -> None:
        h.update(str(self.value.dtype).encode())
        h.update(repr(self.value.shape).encode())
        h.update(self.value.tobytes())

    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        return ()

    def __str__(self) -> str:
        return f"Const({self.value.item()!r})" if self.value.ndim == 0 else f"Const{self.value.shape}"
