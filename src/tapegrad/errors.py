"""
Exceptions raised by tapegrad
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tapegrad import compiler, nodes


class TapegradError(Exception): ...


class ArityError(TapegradError): ...
class ShapeError(TapegradError): ...
class ShapeMismatchError(ShapeError): ...
class BroadcastError(ShapeError): ...
class PreallocError(TapegradError): ...
class NonDifferentiableError(TapegradError): ...
class GraphError(TapegradError): ...
class BackpropError(TapegradError): ...
class MachineStateError(TapegradError): ...


class UnsupportedKindError(TapegradError, NotImplementedError):
    def __init__(self, op: object, dtype: object) -> None:
        super().__init__(f"{op} not yet implemented for kind {dtype}")
        self.dtype = dtype


class ExecutionError(TapegradError):
    """Failure while the tape machine executes an instruction."""

    def __init__(self, msg: str, instruction: compiler.Instruction, node: nodes.Node) -> None:
        super().__init__(msg)
        self.instruction = instruction
        self.node = node
