import numpy as np
import pytest

from tapegrad import errors, graph, operations, shapes
from tapegrad.ops import base, tensor_ops

TWO = np.asarray(2)


### repeat ###
@pytest.mark.parametrize(
    "dims, along, count, expected",
    [
        ((2, 2), 0, 2, (4, 2)),
        ((2, 2), 1, 2, (2, 4)),
        ((), 0, 2, (2,)),
        ((3,), 1, 4, (3, 4)),
        ((3,), 2, 2, (3, 1, 2)),
    ],
)
def test_repeat_shape(dims, along, count, expected):
    g = graph.ExprGraph()
    x = g.input(dims)
    assert operations.repeat(x, along, count).shape == shapes.Shape(expected)


def test_repeat_values():
    op = tensor_ops.RepeatOp(0, shapes.Shape((2, 2)), 2)
    out = op.do(np.array([[1, 2], [3, 4]]), TWO)
    np.testing.assert_array_equal(out, [[1, 2], [1, 2], [3, 4], [3, 4]])


def test_repeat_along_columns():
    op = tensor_ops.RepeatOp(1, shapes.Shape((2, 2)), 2)
    out = op.do(np.array([[1, 2], [3, 4]]), TWO)
    np.testing.assert_array_equal(out, [[1, 1, 2, 2], [3, 3, 4, 4]])


def test_repeat_scalar():
    op = tensor_ops.RepeatOp(0, shapes.Shape(()), 3)
    np.testing.assert_array_equal(op.do(np.asarray(5.0), np.asarray(3.0)), [5.0, 5.0, 5.0])


def test_repeat_prealloc_writes_in_place():
    op = tensor_ops.RepeatOp(0, shapes.Shape((2, 2)), 2)
    buffer = np.empty((4, 2))
    out = op.use_prealloc_do(buffer, np.array([[1.0, 2.0], [3.0, 4.0]]), TWO)
    assert out is buffer
    np.testing.assert_array_equal(buffer, [[1, 2], [1, 2], [3, 4], [3, 4]])


def test_repeat_prealloc_wrong_buffer():
    op = tensor_ops.RepeatOp(0, shapes.Shape((2, 2)), 2)
    with pytest.raises(errors.PreallocError):
        op.use_prealloc_do(np.empty((2, 4)), np.ones((2, 2)), TWO)


def test_repeat_runtime_count_mismatch():
    op = tensor_ops.RepeatOp(0, shapes.Shape((2,)), 2)
    with pytest.raises(errors.ShapeError):
        op.do(np.ones(2), np.asarray(3))


def test_repeat_count_must_be_static():
    g = graph.ExprGraph()
    x, n = g.input((2,)), g.scalar()
    with pytest.raises(errors.ShapeError):
        operations.repeat(x, 0, n)


def test_repeat_arity():
    op = tensor_ops.RepeatOp(0, shapes.Shape((2,)), 2)
    assert op.arity() == 2
    assert op.diff_wrt(0) and not op.diff_wrt(1)
    with pytest.raises(errors.ArityError):
        op.diff_wrt(2)
    with pytest.raises(errors.ArityError):
        op.do(np.ones(2))


### size / at ###
def test_size_of():
    op = tensor_ops.SizeOp(1, 2, 3)
    out = op.do(np.ones((2, 3), dtype=np.float32))
    assert out.shape == () and out.dtype == np.float32 and out == 3
    assert op.dim_size(1) == 3
    with pytest.raises(errors.ShapeError):
        op.dim_size(0)


def test_size_of_scalar_is_one():
    assert tensor_ops.SizeOp(0, 0, 1).do(np.asarray(7.0)) == 1


def test_size_of_bool_gives_int():
    out = tensor_ops.SizeOp(0, 1, 4).do(np.ones(4, dtype=bool))
    assert out.dtype.kind == "i" and out == 4


def test_size_of_unsupported_kind():
    with pytest.raises(errors.UnsupportedKindError):
        tensor_ops.SizeOp(0, 1, 2).do(np.ones(2, dtype=np.complex128))
    with pytest.raises(NotImplementedError):
        tensor_ops.SizeOp(0, 1, 2).do(np.ones(2, dtype=np.float16))


def test_size_of_axis_out_of_range():
    g = graph.ExprGraph()
    with pytest.raises(errors.ShapeError):
        operations.size_of(g.input((2, 3)), 2)
    with pytest.raises(errors.ShapeError):
        tensor_ops.SizeOp(3, 2, 1).do(np.ones((2, 3)))


def test_size_and_at_not_differentiable():
    for op in (tensor_ops.SizeOp(0, 1, 2), tensor_ops.AtOp((0,), 1)):
        assert not op.diff_wrt(0)
        with pytest.raises(errors.NonDifferentiableError):
            op.sym_diff([], None, None)


def test_at():
    op = tensor_ops.AtOp((1, 0), 2)
    out = op.do(np.array([[1, 2], [3, 4]]))
    assert out.shape == () and out == 3
    with pytest.raises(errors.ShapeError):
        op.infer_shape(shapes.Shape((1, 2)))


### slice ###
def test_slice_drops_axis_on_single_element():
    g = graph.ExprGraph()
    x = g.input((3, 4))
    assert operations.slice_along(x, 0, 1).shape == shapes.Shape((4,))
    assert operations.slice_along(x, 1, shapes.Slice(1, 3)).shape == shapes.Shape((3, 2))


def test_slice_values():
    x = np.arange(12.0).reshape(3, 4)
    out = tensor_ops.SliceOp(1, shapes.Slice(0, 4, 2), 2).do(x)
    np.testing.assert_array_equal(out, x[:, 0:4:2])
    out[0, 0] = 100.0
    assert x[0, 0] == 0.0


def test_slice_scalar_fails():
    g = graph.ExprGraph()
    with pytest.raises(errors.ShapeError):
        operations.slice_along(g.scalar(), 0, 0)
    with pytest.raises(errors.ShapeError):
        tensor_ops.SliceOp(0, shapes.Slice(0), 0).do(np.asarray(1.0))


def test_slice_incr_adds():
    op = tensor_ops.SliceIncrOp(0, shapes.Slice(1), 2)
    out = op.do(np.ones((3, 2)), np.array([5.0, 6.0]))
    np.testing.assert_array_equal(out, [[0, 0], [5, 6], [0, 0]])
    assert not op.diff_wrt(0) and op.diff_wrt(1)


def test_slice_incr_prealloc_zeroes_buffer():
    op = tensor_ops.SliceIncrOp(1, shapes.Slice(0, 2), 2)
    buffer = np.full((2, 3), 9.0)
    op.use_prealloc_do(buffer, np.ones((2, 3)), np.ones((2, 2)))
    np.testing.assert_array_equal(buffer, [[1, 1, 0], [1, 1, 0]])


def test_slice_incr_checks_increment_shape():
    g = graph.ExprGraph()
    x, incr = g.input((3, 2)), g.input((3,))
    with pytest.raises(errors.ShapeError):
        operations.slice_incr(x, incr, 0, 1)


### transpose ###
def test_transpose_round_trip():
    x = np.random.rand(2, 3, 4)
    pattern = (2, 0, 1)
    forward = tensor_ops.TransposeOp(pattern, 3)
    inverse = tensor_ops.TransposeOp(tuple(int(i) for i in np.argsort(pattern)), 3)
    transposed = forward.do(x)
    assert transposed.shape == (4, 2, 3) and transposed.flags.c_contiguous
    np.testing.assert_array_equal(inverse.do(transposed), x)


def test_transpose_errors():
    g = graph.ExprGraph()
    with pytest.raises(errors.ShapeError):
        operations.transpose(g.scalar())
    with pytest.raises(errors.ShapeError):
        operations.transpose(g.input((2, 3)), (0, 0))


def test_transpose_default_reverses_axes():
    g = graph.ExprGraph()
    assert operations.transpose(g.input((2, 3, 4))).shape == shapes.Shape((4, 3, 2))


### concat ###
def test_concat_shape():
    g = graph.ExprGraph()
    a, b, c = g.input((2, 3)), g.input((1, 3)), g.input((4, 3))
    assert operations.concat(0, a, b, c).shape == shapes.Shape((7, 3))


def test_concat_mismatch():
    g = graph.ExprGraph()
    with pytest.raises(errors.ShapeError):
        operations.concat(0, g.input((2, 3)), g.input((2, 4)))


def test_concat_declared_count():
    op = tensor_ops.ConcatOp(0, 1, 2)
    assert op.arity() == base.VARIADIC
    with pytest.raises(errors.ArityError):
        op.do(np.ones(2), np.ones(2), np.ones(2))
    with pytest.raises(errors.ArityError):
        tensor_ops.ConcatOp(0, 1, 0)


def test_concat_single_input_is_passthrough():
    op = tensor_ops.ConcatOp(0, 1, 1)
    x = np.ones(3)
    assert op.do(x) is x
    assert op.returns_view()


def test_concat_values():
    out = tensor_ops.ConcatOp(1, 2, 2).do(np.zeros((2, 1)), np.ones((2, 2)))
    np.testing.assert_array_equal(out, [[0, 1, 1], [0, 1, 1]])


### reshape ###
def test_reshape_size_mismatch():
    with pytest.raises(errors.ShapeMismatchError):
        tensor_ops.ReshapeOp(shapes.Shape((2, 3)), shapes.Shape((4,)))
    op = tensor_ops.ReshapeOp(shapes.Shape((2, 3)), shapes.Shape((6,)))
    with pytest.raises(errors.ShapeMismatchError):
        op.do(np.ones(5))


def test_reshape_view_semantics():
    op = tensor_ops.ReshapeOp(shapes.Shape((2, 3)), shapes.Shape((3, 2)))
    x = np.arange(6.0).reshape(2, 3).copy()
    assert np.shares_memory(op.do(x), x)
    view = x[:, :]
    assert not np.shares_memory(op.do(view), x)
    assert np.shares_memory(op.unsafe_do(view), x)
    assert op.overwrites_input() == 0 and op.returns_view()


def test_reshape_to_same_shape_is_identity():
    g = graph.ExprGraph()
    x = g.input((2, 3))
    assert operations.reshape(x, (2, 3)) is x


### constants and hashing ###
def test_constant_equality_and_hash():
    a = tensor_ops.ConstantOp(np.asarray(1.0))
    b = tensor_ops.ConstantOp(np.asarray(1.0))
    c = tensor_ops.ConstantOp(np.asarray(1.0, dtype=np.float32))
    assert a == b and a.hashcode() == b.hashcode()
    assert a != c


def test_constant_is_read_only_copy():
    source = np.ones(2)
    op = tensor_ops.ConstantOp(source)
    source[0] = 5.0
    np.testing.assert_array_equal(op.do(), [1.0, 1.0])
    out = op.do()
    out[0] = 3.0
    np.testing.assert_array_equal(op.value, [1.0, 1.0])


def test_op_hash_is_content_based():
    assert tensor_ops.SliceOp(0, shapes.Slice(1), 2).hashcode() == tensor_ops.SliceOp(0, shapes.Slice(1), 2).hashcode()
    assert tensor_ops.SliceOp(0, shapes.Slice(1), 2) != tensor_ops.SliceIncrOp(0, shapes.Slice(1), 2)
    assert tensor_ops.TransposeOp((1, 0), 2) == tensor_ops.TransposeOp((1, 0), 2)


def test_check_arity():
    with pytest.raises(errors.ArityError):
        base.check_arity(tensor_ops.TransposeOp((1, 0), 2), 2)
    base.check_arity(tensor_ops.ConcatOp(0, 1, 3), 3)
