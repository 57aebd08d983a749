import contextlib

from tapegrad import callbacks, operations
from tapegrad.broadcast import BroadcastPattern, auto_broadcast_pattern
from tapegrad.compiler import compile_graph
from tapegrad.config import Configuration
from tapegrad.graph import ExprGraph
from tapegrad.machine import MachineState, TapeMachine
from tapegrad.parallel import run_concurrently
from tapegrad.runtime import Engine, NumPyEngine
from tapegrad.shapes import Shape, Slice
from tapegrad.solvers import VanillaSolver
from tapegrad.symdiff import backpropagate, grad

### Default configuration ###
Configuration(engine=NumPyEngine())


__all__ = [
    "BroadcastPattern",
    "Configuration",
    "Engine",
    "ExprGraph",
    "MachineState",
    "NumPyEngine",
    "Shape",
    "Slice",
    "TapeMachine",
    "VanillaSolver",
    "auto_broadcast_pattern",
    "backpropagate",
    "callbacks",
    "compile_graph",
    "grad",
    "operations",
    "run_concurrently",
]

### install extras
with contextlib.suppress(ImportError):
    import logging_callback
