"""
Shape tracking
"""

from __future__ import annotations

import dataclasses
import math
from typing import Iterable, Iterator, Sequence

from tapegrad import errors


@dataclasses.dataclass(slots=True, frozen=True)
class Shape:
    dims: tuple[int, ...]

    def __post_init__(self) -> None:
        if any(d < 0 for d in self.dims):
            raise errors.ShapeError(f"negative extent in {self.dims=}")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Shape) and self.dims == other.dims

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        return f"Shape({', '.join(map(str, self.dims))})"

    def __bool__(self) -> bool:
        return len(self.dims) > 0

    def __len__(self) -> int:
        return self.ndims

    def __iter__(self) -> Iterator[int]:
        return iter(self.dims)

    def __getitem__(self, axis: int) -> int:
        return self.dims[axis]

    def dim_size(self, axis: int) -> int:
        if not 0 <= axis < self.ndims:
            raise errors.ShapeError(f"{axis=} out of range for {self}")
        return self.dims[axis]

    def permute(self, axes: Sequence[int]) -> Shape:
        if sorted(axes) != list(range(self.ndims)):
            raise errors.ShapeError(f"{tuple(axes)} is not a permutation of the axes of {self}")
        return Shape(tuple(self.dims[i] for i in axes))

    def insertaxes(self, *axes: int) -> Shape:
        new_axes = list(self)
        for i in sorted(axes):
            new_axes.insert(i, 1)
        return Shape(tuple(new_axes))

    def dropaxes(self, *axes: int) -> Shape:
        pos_axes = set(self.normalize_dim_ref(*axes))
        return Shape(tuple(d for i, d in enumerate(self) if i not in pos_axes))

    def rpad_to(self, ndims: int) -> Shape:
        return Shape(self.dims + (1,) * max(0, ndims - self.ndims))

    def replace(self, axis: int, extent: int) -> Shape:
        return Shape(self.dims[:axis] + (extent,) + self.dims[axis + 1 :])

    def concat(self, axis: int, *others: Shape) -> Shape:
        """Join along `axis`; every other axis has to agree."""
        if not 0 <= axis < self.ndims:
            raise errors.ShapeError(f"cannot concatenate {self} along {axis=}")
        extent = self.dims[axis]
        for other in others:
            if other.ndims != self.ndims or other.dropaxes(axis) != self.dropaxes(axis):
                raise errors.ShapeError(f"{self} <> {other} mismatch outside of {axis=}")
            extent += other.dims[axis]
        return self.replace(axis, extent)

    def slice_along(self, axis: int, slc: Slice) -> Shape:
        if not 0 <= axis < self.ndims:
            raise errors.ShapeError(f"cannot slice {self} along {axis=}")
        count = len(range(*slc.resolve(self.dims[axis])))
        if count == 0:
            raise errors.ShapeError(f"{slc} selects nothing from {self} along {axis=}")
        return self.dropaxes(axis) if count == 1 else self.replace(axis, count)

    def flat(self) -> Shape:
        return Shape((self.size,))

    def normalize_dim_ref(self, *idxs: int) -> tuple[int, ...]:
        own_len = len(self)
        return tuple(idx % own_len if idx < 0 else idx for idx in idxs)

    @property
    def ndims(self) -> int:
        return len(self.dims)

    @property
    def size(self) -> int:
        return math.prod(self.dims)

    @property
    def is_scalar(self) -> bool:
        return self.ndims == 0

    @property
    def is_vector(self) -> bool:
        return self.ndims == 1


@dataclasses.dataclass(slots=True, frozen=True)
class Slice:
    """A start/end/step selection along a single axis. `end=None` selects exactly `start`."""

    start: int
    end: int | None = None
    step: int = 1

    def resolve(self, extent: int) -> tuple[int, int, int]:
        if self.step < 1:
            raise errors.ShapeError(f"{self.step=} must be positive")
        start = self.start + extent if self.start < 0 else self.start
        end = start + 1 if self.end is None else (self.end + extent if self.end < 0 else self.end)
        if not 0 <= start < end <= extent:
            raise errors.ShapeError(f"{self} out of bounds for {extent=}")
        return start, end, self.step

    def count(self, extent: int) -> int:
        return len(range(*self.resolve(extent)))

    def __str__(self) -> str:
        return f"[{self.start}:{'' if self.end is None else self.end}:{self.step}]"


def as_shape(dims: Shape | Iterable[int] | int) -> Shape:
    match dims:
        case Shape():
            return dims
        case int(extent):
            return Shape((extent,))
        case _:
            return Shape(tuple(int(d) for d in dims))
