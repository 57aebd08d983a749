import dataclasses

import numpy as np
import pytest

from tapegrad import callbacks, compiler, config, errors, graph, machine, operations, runtime, symdiff
from tapegrad.ops import base

X = np.array([0.5, -1.0, 2.0])


class CountingEngine(runtime.NumPyEngine):
    def __init__(self) -> None:
        self.allocations = 0

    def allocate(self, shape, dtype):
        self.allocations += 1
        return super().allocate(shape, dtype)


class Recorder(callbacks.OnInstructionExecCallBack):
    def __init__(self) -> None:
        self.seen: list[int] = []

    def on_instruction_exec(self, instruction, node, result) -> None:
        self.seen.append(node.id)


def test_run_reset_run_is_idempotent(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    cost = operations.sum(operations.tanh(x) * x)
    symdiff.grad(cost, x)
    m = machine.TapeMachine(g, engine=engine)
    m.run_all()
    first_cost, first_grad = cost.value.copy(), x.grad().copy()
    m.reset()
    m.run_all()
    np.testing.assert_allclose(cost.value, first_cost)
    np.testing.assert_allclose(x.grad(), first_grad)
    m.run_all()
    np.testing.assert_allclose(x.grad(), first_grad)


def test_gradient_for_not_yet_computed_node_is_deferred(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.scalar(value=3.0)
    z = x * (x + 1.0)
    symdiff.grad(z, x)
    # the seed of z is the constant 1.0 used to build z, so it runs before z is bound
    seed = g.node(z.deriv)
    assert seed.is_constant and seed.id < z.id
    m = machine.TapeMachine(g, engine=engine)
    m.run_all()
    np.testing.assert_allclose(z.value, 12.0)
    np.testing.assert_allclose(z.grad(), 1.0)
    np.testing.assert_allclose(x.grad(), 7.0)


def test_preallocated_registers_are_reused() -> None:
    counting = CountingEngine()
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    y = operations.exp(x) * 2.0
    m = machine.TapeMachine(g, y, engine=counting)
    m.run_all()
    buffer = m.register_value(y)
    allocations = counting.allocations
    assert allocations == sum(1 for i in m.program.instructions if getattr(i, "preallocated", False))
    g.let(x, X * 2)
    m.run_all()
    assert m.register_value(y) is buffer
    assert counting.allocations == allocations
    np.testing.assert_allclose(y.value, np.exp(X * 2) * 2.0)


def test_unsafe_evaluation_overwrites_dead_intermediate(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    e = operations.exp(x)
    out = operations.tanh(e)
    m = machine.TapeMachine(g, out, engine=engine, prealloc=False)
    assert [i.use_unsafe for i in m.program.instructions if isinstance(i, compiler.ExecOp)] == [False, True]
    m.run_all()
    np.testing.assert_allclose(out.value, np.tanh(np.exp(X)))
    assert out.value is e.value
    np.testing.assert_allclose(x.value, X)
    m.run_all()
    np.testing.assert_allclose(out.value, np.tanh(np.exp(X)))


def test_watched_nodes_are_not_overwritten(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    e = operations.exp(x)
    out = operations.tanh(e)
    m = machine.TapeMachine(g, out, engine=engine, prealloc=False, watch=[e])
    assert not any(i.use_unsafe for i in m.program.instructions if isinstance(i, compiler.ExecOp))
    m.run_all()
    np.testing.assert_allclose(e.value, np.exp(X))


def test_plain_evaluation(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    out = operations.sigmoid(operations.exp(x))
    m = machine.TapeMachine(g, out, engine=engine, prealloc=False, unsafe=False)
    assert not any(i.use_unsafe or i.preallocated for i in m.program.instructions if isinstance(i, compiler.ExecOp))
    m.run_all()
    np.testing.assert_allclose(out.value, 1 / (1 + np.exp(-np.exp(X))))


def test_trace_binds_private_copies(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    e = operations.exp(x)
    out = operations.square(e)
    m = machine.TapeMachine(g, out, engine=engine, trace=True)
    m.run_all()
    assert not np.shares_memory(e.value, m.register_value(e))
    assert not np.shares_memory(out.value, m.register_value(out))


def test_trace_only_watched(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    e = operations.exp(x)
    out = operations.square(e)
    m = machine.TapeMachine(g, out, engine=engine, trace=True, watch=[e])
    m.run_all()
    assert not np.shares_memory(e.value, m.register_value(e))
    assert out.value is m.register_value(out)


def test_unbound_input_fails_the_pass(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3)
    out = operations.exp(x)
    m = machine.TapeMachine(g, out, engine=engine)
    with pytest.raises(errors.ExecutionError) as excinfo:
        m.run_all()
    assert excinfo.value.node is x
    assert isinstance(excinfo.value.instruction, compiler.LoadInput)
    assert isinstance(excinfo.value.__cause__, errors.GraphError)
    assert m.state is machine.MachineState.FAILED
    with pytest.raises(errors.MachineStateError):
        m.run_all()
    m.reset()
    g.let(x, X)
    m.run_all()
    assert m.state is machine.MachineState.COMPLETED
    np.testing.assert_allclose(out.value, np.exp(X))


@dataclasses.dataclass(slots=True, frozen=True)
class UnimplementedOp(base.Op):
    def arity(self) -> int:
        return 1

    def infer_shape(self, *inputs):
        return inputs[0]

    def do(self, *inputs):
        raise NotImplementedError(f"{self} has no kernel")

    def sym_diff(self, inputs, output, grad):
        raise errors.NonDifferentiableError(f"{self} is not differentiable")


def test_any_op_failure_fails_the_pass(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    out = g.apply_op(UnimplementedOp(), x)
    m = machine.TapeMachine(g, out, engine=engine)
    with pytest.raises(errors.ExecutionError) as excinfo:
        m.run_all()
    assert excinfo.value.node is out
    assert isinstance(excinfo.value.__cause__, NotImplementedError)
    assert m.state is machine.MachineState.FAILED
    with pytest.raises(errors.MachineStateError):
        m.run_all()


def test_grad_requires_completed_pass(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    symdiff.grad(operations.sum(x * x), x)
    m = machine.TapeMachine(g, engine=engine)
    with pytest.raises(errors.MachineStateError):
        m.grad(x)
    m.run_all()
    np.testing.assert_allclose(m.grad(x), 2 * X)


def test_gradients_without_dual_values(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    (dx,) = symdiff.grad(operations.sum(x * x), x)
    machine.TapeMachine(g, engine=engine, bind_dual_values=False).run_all()
    assert x.dual is None
    np.testing.assert_allclose(x.grad(), 2 * X)
    np.testing.assert_allclose(dx.value, 2 * X)


def test_dual_values_for_selected_nodes(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x, y = g.vector(3, value=X), g.vector(3, value=X)
    cost = operations.sum(x * y)
    symdiff.grad(cost, x, y)
    machine.TapeMachine(g, engine=engine, bind_dual_values=[x]).run_all()
    assert x.dual is not None and y.dual is None
    np.testing.assert_allclose(x.dual.d, X)


def test_outputs_restrict_the_program(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    a, b = operations.exp(x), operations.log(x)
    machine.TapeMachine(g, a, engine=engine).run_all()
    assert a.value is not None and b.value is None


def test_gradient_targets_outside_the_program_are_skipped(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    cost = operations.sum(x * 3.0)
    (dx,) = symdiff.grad(cost, x)
    machine.TapeMachine(g, dx, engine=engine).run_all()
    assert cost.value is None
    np.testing.assert_allclose(x.grad(), [3.0, 3.0, 3.0])


def test_context_manager_resets(engine: runtime.Engine) -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    symdiff.grad(operations.sum(x * x), x)
    with machine.TapeMachine(g, engine=engine) as m:
        m.run_all()
        assert x.dual is not None
    assert m.state is machine.MachineState.IDLE
    assert x.dual is None
    np.testing.assert_allclose(x.value, X)


def test_default_engine_comes_from_configuration() -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    assert isinstance(machine.TapeMachine(g, x).engine, runtime.NumPyEngine)
    counting = CountingEngine()
    with config.Configuration(engine=counting):
        assert machine.TapeMachine(g, x).engine is counting


def test_instruction_callbacks() -> None:
    g = graph.ExprGraph()
    x = g.vector(3, value=X)
    out = operations.exp(x) + x
    m = machine.TapeMachine(g, out)
    recorder = Recorder()
    with config.Configuration(recorder):
        m.run_all()
    assert recorder.seen == [n.id for n in g.sorted(out)]
    m.run_all()
    assert len(recorder.seen) == len(m.program)
