from tapegrad.ops.base import VARIADIC, DimSizer, Op, UnsafeDoer, UsePreallocDoer, check_arity
from tapegrad.ops.tensor_ops import (
    AtOp,
    ConcatOp,
    ConstantOp,
    RepeatOp,
    ReshapeOp,
    SizeOp,
    SliceIncrOp,
    SliceOp,
    TransposeOp,
)
from tapegrad.ops.arith import BinKind, ElemBinOp, ElemUnaryOp, MatMulOp, SumOp, UnaryKind

__all__ = [
    "VARIADIC",
    "DimSizer",
    "Op",
    "UnsafeDoer",
    "UsePreallocDoer",
    "check_arity",
    "AtOp",
    "ConcatOp",
    "ConstantOp",
    "RepeatOp",
    "ReshapeOp",
    "SizeOp",
    "SliceIncrOp",
    "SliceOp",
    "TransposeOp",
    "BinKind",
    "ElemBinOp",
    "ElemUnaryOp",
    "MatMulOp",
    "SumOp",
    "UnaryKind",
]
