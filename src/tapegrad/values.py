"""
Values flowing through a machine: numpy arrays (scalars are 0-d arrays)
and dual values pairing a forward value with its accumulated gradient.
"""

from __future__ import annotations

import dataclasses
from typing import Any

import numpy as np

from tapegrad import errors

NUMERIC_KINDS = frozenset("biuf")


@dataclasses.dataclass(slots=True)
class DualValue:
    value: np.ndarray
    d: np.ndarray | None = None

    def accumulate(self, contribution: np.ndarray) -> None:
        """Add `contribution` into the gradient; the first contribution is copied, never aliased."""
        if self.d is None:
            self.d = np.array(contribution, copy=True)
        else:
            self.d = np.add(self.d, contribution)

    def __repr__(self) -> str:
        return f"DualValue(value={self.value!r}, d={self.d!r})"


def as_value(data: Any, dtype: Any = None) -> np.ndarray:
    value = np.asarray(data, dtype=dtype)
    if value.dtype.kind not in NUMERIC_KINDS:
        raise errors.UnsupportedKindError("value", value.dtype)
    return value


def ensure_ndarray(value: Any, op: object) -> np.ndarray:
    if not isinstance(value, np.ndarray):
        if isinstance(value, (np.generic, int, float, bool)):
            return np.asarray(value)
        raise errors.UnsupportedKindError(op, type(value).__name__)
    return value


def value_to_int(value: Any) -> int:
    """Read an integral count out of a scalar value of any numeric kind."""
    array = np.asarray(value)
    if array.ndim != 0 and array.size != 1:
        raise errors.ShapeError(f"expected a scalar count, got shape {array.shape}")
    if array.dtype.kind not in NUMERIC_KINDS:
        raise errors.UnsupportedKindError("value_to_int", array.dtype)
    scalar = array.reshape(()).item()
    if scalar != int(scalar):
        raise errors.ShapeError(f"{scalar} is not an integral count")
    return int(scalar)
