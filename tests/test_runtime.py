"""
test the numpy backend
"""

import numpy as np

from tapegrad import runtime, shapes, values


def test_numpy_engine_allocate() -> None:
    engine = runtime.NumPyEngine()
    out = engine.allocate(shapes.Shape((2, 3)), np.float32)
    assert out.shape == (2, 3) and out.dtype == np.float32


def test_numpy_engine_copy_is_private() -> None:
    engine = runtime.NumPyEngine()
    source = np.arange(3)
    copied = engine.copy(source)
    source[0] = 10
    assert copied.tolist() == [0, 1, 2]


def test_buffer_to_python() -> None:
    engine = runtime.NumPyEngine()
    assert engine.wrap(np.array([[1, 2], [3, 4]])).to_python() == [[1, 2], [3, 4]]
    assert engine.wrap(np.asarray(2.5)).to_python() == 2.5


def test_dual_value_accumulates_copies() -> None:
    dual = values.DualValue(np.zeros(2))
    contribution = np.ones(2)
    dual.accumulate(contribution)
    contribution[0] = 5.0
    dual.accumulate(contribution)
    assert dual.d.tolist() == [6.0, 2.0]


def test_value_to_int() -> None:
    assert values.value_to_int(np.asarray(3.0)) == 3
    assert values.value_to_int(np.array([4], dtype=np.int8)) == 4
