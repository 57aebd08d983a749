"""
The operation contract every computation primitive implements
"""

from __future__ import annotations

import abc
import hashlib
from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable

import numpy as np

from tapegrad import errors

if TYPE_CHECKING:
    from tapegrad import nodes, shapes

VARIADIC = -1


class Op(abc.ABC):
    """
    A pure value-level computation.
    Concrete ops are frozen dataclasses so they hash and compare by content.
    """

    @abc.abstractmethod
    def arity(self) -> int:
        """Number of inputs, or `VARIADIC`"""

    @abc.abstractmethod
    def infer_shape(self, *inputs: shapes.Shape) -> shapes.Shape: ...

    @abc.abstractmethod
    def do(self, *inputs: np.ndarray) -> np.ndarray: ...

    @abc.abstractmethod
    def sym_diff(
        self, inputs: Sequence[nodes.Node], output: nodes.Node, grad: nodes.Node
    ) -> tuple[nodes.Node | None, ...]:
        """Build graph nodes holding the gradient contribution of each input (None where not differentiable)"""

    def infer_dtype(self, *dtypes: np.dtype) -> np.dtype:
        return np.result_type(*dtypes) if dtypes else np.dtype(np.float64)

    def diff_wrt(self, i: int) -> bool:
        if (arity := self.arity()) != VARIADIC and not 0 <= i < arity:
            raise errors.ArityError(f"{self} has {arity=}, no input {i}")
        return True

    def overwrites_input(self) -> int:
        return -1

    def returns_view(self) -> bool:
        return False

    def write_hash(self, h: Any) -> None:
        h.update(repr(self).encode())

    def hashcode(self) -> int:
        h = hashlib.blake2s(digest_size=4)
        self.write_hash(h)
        return int.from_bytes(h.digest(), "little")

    def __str__(self) -> str:
        return self.__class__.__name__.removesuffix("Op")


def check_arity(op: Op, n_inputs: int) -> None:
    if (arity := op.arity()) != VARIADIC and arity != n_inputs:
        raise errors.ArityError(f"{op} expects {arity} inputs, got {n_inputs}")


### Optional capabilities ###
@runtime_checkable
class UsePreallocDoer(Protocol):
    def use_prealloc_do(self, prealloc: np.ndarray, *inputs: np.ndarray) -> np.ndarray: ...


@runtime_checkable
class UnsafeDoer(Protocol):
    def unsafe_do(self, *inputs: np.ndarray) -> np.ndarray: ...


@runtime_checkable
class DimSizer(Protocol):
    def dim_size(self, axis: int) -> int: ...
