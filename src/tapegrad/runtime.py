"""
Engine is the runtime a tape machine tags its register values with;
a register holds a `Buffer` that points to the materialized value of a node
"""

from __future__ import annotations

import abc
import dataclasses
from typing import Any, Generic, TypeVar

import numpy as np

from tapegrad import shapes

RefType = TypeVar("RefType")
PyArrayRepresentation = int | float | bool | list["PyArrayRepresentation"]


@dataclasses.dataclass(slots=True)
class Buffer(Generic[RefType]):
    objref: RefType
    engine: Engine[RefType]

    def to_python(self) -> PyArrayRepresentation:
        return self.engine.to_python(self.objref)


class Engine(abc.ABC, Generic[RefType]):
    """Owns the storage of the values a machine computes"""

    @abc.abstractmethod
    def allocate(self, shape: shapes.Shape, dtype: Any) -> RefType:
        """Return uninitialized storage to be filled by a buffer-reusing evaluation"""

    @abc.abstractmethod
    def copy(self, value: Any) -> RefType:
        """Return storage holding a private copy of `value`"""

    @abc.abstractmethod
    def to_python(self, objref: RefType) -> PyArrayRepresentation:
        """Return a python representation of the obj ref (meant for debug purposes)"""

    def wrap(self, objref: RefType) -> Buffer[RefType]:
        return Buffer(objref, self)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


### Numpy as default engine implementation ###
class NumPyEngine(Engine[np.ndarray]):
    def allocate(self, shape: shapes.Shape, dtype: Any) -> np.ndarray:
        return np.empty(shape.dims, dtype=dtype)

    def copy(self, value: Any) -> np.ndarray:
        return np.array(value, copy=True)

    def to_python(self, objref: np.ndarray) -> PyArrayRepresentation:
        return objref.tolist()
