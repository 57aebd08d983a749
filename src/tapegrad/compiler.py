"""
Lowers an expression graph into a linear tape of instructions over registers
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable

import numpy as np

from tapegrad import graph, nodes, shapes
from tapegrad.ops import base

logger = logging.getLogger(__name__)


@dataclasses.dataclass(slots=True, frozen=True)
class Register:
    id: int
    shape: shapes.Shape
    dtype: np.dtype

    def __str__(self) -> str:
        return f"R{self.id}"


@dataclasses.dataclass(slots=True, frozen=True)
class LoadInput:
    """Copy the value bound to an input leaf into its register."""

    node_id: int
    write_to: int

    def __str__(self) -> str:
        return f"load   n{self.node_id} -> R{self.write_to}"


@dataclasses.dataclass(slots=True, frozen=True)
class ExecOp:
    op: base.Op
    node_id: int
    read_from: tuple[int, ...]
    write_to: int
    preallocated: bool = False
    use_unsafe: bool = False

    def __str__(self) -> str:
        flags = "".join(flag for flag, on in (("P", self.preallocated), ("U", self.use_unsafe)) if on)
        reads = ", ".join(f"R{r}" for r in self.read_from)
        return f"{str(self.op):<16}({reads}) -> R{self.write_to} {flags}".rstrip()


Instruction = LoadInput | ExecOp


@dataclasses.dataclass(slots=True)
class Program:
    graph: graph.ExprGraph
    instructions: list[Instruction]
    registers: list[Register]
    register_of: dict[int, int]

    def __len__(self) -> int:
        return len(self.instructions)

    def __str__(self) -> str:
        return "\n".join(f"{i:>4}: {instr}" for i, instr in enumerate(self.instructions))


class _AliasGroups:
    """Union-find over node ids whose values may share storage."""

    def __init__(self) -> None:
        self._parent: dict[int, int] = {}
        self._members: dict[int, set[int]] = {}

    def find(self, node_id: int) -> int:
        parent = self._parent.setdefault(node_id, node_id)
        if parent != node_id:
            parent = self._parent[node_id] = self.find(parent)
        return parent

    def members(self, node_id: int) -> set[int]:
        return self._members.setdefault(self.find(node_id), {node_id})

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            merged = self.members(ra) | self.members(rb)
            self._parent[rb] = ra
            self._members[ra] = merged
            self._members.pop(rb, None)


def compile_graph(
    expr_graph: graph.ExprGraph,
    *outputs: nodes.Node,
    protect: Iterable[nodes.Node] = (),
    prealloc: bool = True,
    unsafe: bool = True,
) -> Program:
    """
    One register per node, instructions in topological order.
    An instruction may overwrite an input in place only when no protected node
    shares that input's storage and nothing reads that storage afterwards.
    """
    order = expr_graph.sorted(*outputs)
    register_of = {node.id: i for i, node in enumerate(order)}
    registers = [Register(i, node.shape, node.dtype) for i, node in enumerate(order)]

    last_read: dict[int, int] = {}
    for idx, node in enumerate(order):
        for child in node.children:
            last_read[child] = idx
    roots = outputs or tuple(n for n in order if n.id not in last_read)
    protected = {n.id for n in order if n.is_input or n.is_constant or n.deriv_of}
    protected |= {n.id for n in (*roots, *protect)}

    aliases = _AliasGroups()
    instructions: list[Instruction] = []
    for idx, node in enumerate(order):
        reg = register_of[node.id]
        if node.op is None:
            instructions.append(LoadInput(node.id, reg))
            continue
        op = node.op
        base.check_arity(op, len(node.children))
        preallocated = prealloc and isinstance(op, base.UsePreallocDoer)
        use_unsafe = False
        if unsafe and not preallocated and isinstance(op, base.UnsafeDoer) and (k := op.overwrites_input()) >= 0:
            group = aliases.members(node.children[k])
            use_unsafe = all(m not in protected and last_read.get(m, -1) <= idx for m in group)
        if use_unsafe:
            aliases.union(node.children[op.overwrites_input()], node.id)
        elif op.returns_view() and node.children:
            aliases.union(node.children[0], node.id)
        instructions.append(
            ExecOp(
                op,
                node.id,
                tuple(register_of[c] for c in node.children),
                reg,
                preallocated=preallocated,
                use_unsafe=use_unsafe,
            )
        )
    program = Program(expr_graph, instructions, registers, register_of)
    logger.debug("compiled %s into %d instructions", expr_graph, len(program))
    return program
