"""
The tape machine executes a compiled program: it owns the register file,
picks an evaluation strategy per instruction and accumulates gradients
into the dual values of the nodes they belong to.
"""

from __future__ import annotations

import collections
import dataclasses
import enum
import logging
import types
from typing import Iterable, Self

import numpy as np

from tapegrad import compiler, config, errors, graph, nodes, runtime
from tapegrad.ops import base

logger = logging.getLogger(__name__)


class MachineState(enum.Enum):
    IDLE = enum.auto()
    RUNNING = enum.auto()
    COMPLETED = enum.auto()
    FAILED = enum.auto()


@dataclasses.dataclass(slots=True, frozen=True)
class DeferredGrad:
    """A gradient contribution for a node that was not bound yet when the contribution was computed."""

    node_id: int
    contribution: np.ndarray


class TapeMachine:
    """
    Executes `graph` (or only what `outputs` depend on).

    bind_dual_values:   True tracks gradients for every node, False for none,
                        an iterable of nodes tracks only those.
    trace:              bind a private copy of every result (or of the `watch`ed ones) to its node.
    prealloc, unsafe:   allow buffer reuse and in-place evaluation.
    """

    def __init__(
        self,
        expr_graph: graph.ExprGraph,
        *outputs: nodes.Node,
        engine: runtime.Engine | None = None,
        bind_dual_values: bool | Iterable[nodes.Node] = True,
        trace: bool = False,
        watch: Iterable[nodes.Node] = (),
        prealloc: bool = True,
        unsafe: bool = True,
    ) -> None:
        self.graph = expr_graph
        self.engine = config.Configuration.engine if engine is None else engine
        self.trace = trace
        watch = tuple(watch)
        self.watch = frozenset(n.id for n in watch)
        self.program = compiler.compile_graph(expr_graph, *outputs, protect=watch, prealloc=prealloc, unsafe=unsafe)
        match bind_dual_values:
            case True:
                self._dual_ids: frozenset[int] | None = None
            case False:
                self._dual_ids = frozenset()
            case tracked:
                self._dual_ids = frozenset(n.id for n in tracked)
        self._registers: list[runtime.Buffer | None] = [None] * len(self.program.registers)
        self._closures: collections.deque[DeferredGrad] = collections.deque()
        self._bound: set[int] = set()
        self.state = MachineState.IDLE

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.graph!r}, {self.state.name}, {len(self.program)} instructions)>"

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self, e_type: type[BaseException] | None, e_value: BaseException | None, e_traceback: types.TracebackType
    ) -> None:
        self.reset()

    ### Execution ###
    def run_all(self) -> None:
        if self.state is MachineState.FAILED:
            raise errors.MachineStateError(f"{self} failed its last pass, reset() it before running again")
        self.state = MachineState.RUNNING
        try:
            self._begin_pass()
            for instruction in self.program.instructions:
                self._step(instruction)
            self._drain_closures()
        except Exception:
            self.state = MachineState.FAILED
            raise
        self.state = MachineState.COMPLETED

    def _step(self, instruction: compiler.Instruction) -> None:
        node = self.graph.node(instruction.node_id)
        try:
            self._execute(instruction, node)
        except Exception as exc:
            logger.error("%s failed on %s: %s", instruction, node, exc)
            raise errors.ExecutionError(f"{instruction} failed on {node}: {exc}", instruction, node) from exc

    def reset(self) -> None:
        """Clear registers, dual values and deferred gradients; the graph is left untouched."""
        self._registers = [None] * len(self.program.registers)
        self._closures.clear()
        self._bound.clear()
        self._destroy_duals()
        self.state = MachineState.IDLE

    def grad(self, node: nodes.Node) -> np.ndarray:
        if self.state is not MachineState.COMPLETED:
            raise errors.MachineStateError(f"gradients are read after a completed pass, {self} is {self.state.name}")
        return node.grad()

    def register_value(self, node: nodes.Node) -> np.ndarray | None:
        buffer = self._registers[self.program.register_of[node.id]]
        return None if buffer is None else buffer.objref

    def _begin_pass(self) -> None:
        self._closures.clear()
        self._bound.clear()
        self._destroy_duals()
        for instruction in self.program.instructions:
            match instruction:
                case compiler.ExecOp(preallocated=True, write_to=reg) if self._registers[reg] is None:
                    register = self.program.registers[reg]
                    self._registers[reg] = self.engine.wrap(self.engine.allocate(register.shape, register.dtype))

    def _destroy_duals(self) -> None:
        for node_id in self.program.register_of:
            self.graph.node(node_id).unbind_dual()

    def _execute(self, instruction: compiler.Instruction, node: nodes.Node) -> None:
        match instruction:
            case compiler.LoadInput(write_to=reg):
                if node.value is None:
                    raise errors.GraphError(f"input {node} is not bound")
                result = self.engine.wrap(self.engine.copy(node.value))
            case compiler.ExecOp(read_from=read_from, write_to=reg):
                result = self.engine.wrap(self._dispatch(instruction, [self._read(r) for r in read_from]))
        self._registers[reg] = result
        self._bind(node, result.objref)
        self._accumulate(node, result.objref)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%-40s %s", instruction, node)
            if node.id in self.watch:
                logger.debug("watched %s = %s", node, result.to_python())
        config.Configuration.on_instruction_exec(instruction, node, result)

    def _read(self, reg: int) -> np.ndarray:
        if (buffer := self._registers[reg]) is None:
            raise errors.GraphError(f"register R{reg} is read before it is written")
        return buffer.objref

    def _dispatch(self, instruction: compiler.ExecOp, inputs: list[np.ndarray]) -> np.ndarray:
        op, dest = instruction.op, self._registers[instruction.write_to]
        if instruction.preallocated and dest is not None and isinstance(op, base.UsePreallocDoer):
            return op.use_prealloc_do(dest.objref, *inputs)
        if dest is not None and isinstance(op, base.UsePreallocDoer):
            try:
                return op.use_prealloc_do(dest.objref, *inputs)
            except (errors.PreallocError, ValueError, TypeError) as exc:
                logger.debug("reusing R%d for %s failed (%s), allocating", instruction.write_to, op, exc)
        if instruction.use_unsafe and isinstance(op, base.UnsafeDoer):
            return op.unsafe_do(*inputs)
        return op.do(*inputs)

    ### Binding ###
    def _tracks(self, node_id: int) -> bool:
        return self._dual_ids is None or node_id in self._dual_ids

    def _bind(self, node: nodes.Node, value: np.ndarray) -> None:
        if not node.is_input:
            if self.trace and (not self.watch or node.id in self.watch):
                node.bind_copy(value)
            else:
                node.bind(value)
        self._bound.add(node.id)

    def _accumulate(self, node: nodes.Node, value: np.ndarray) -> None:
        for target_id in node.deriv_of:
            if target_id not in self.program.register_of or not self._tracks(target_id):
                continue
            if target_id in self._bound:
                self.graph.node(target_id).bind_dual().accumulate(value)
            else:
                self._closures.append(DeferredGrad(target_id, np.array(value, copy=True)))

    def _drain_closures(self) -> None:
        while self._closures:
            deferred = self._closures.popleft()
            target = self.graph.node(deferred.node_id)
            target.bind_dual().accumulate(deferred.contribution)
            logger.debug("applied deferred gradient of %s", target)
