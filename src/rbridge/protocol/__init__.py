"""Binary channel wire protocol and engine-side bootstrap source."""

from .codec import (
    NA_INTEGER,
    CharacterVector,
    DoubleVector,
    IntegerVector,
    LogicalVector,
    Matrix,
    MatrixValue,
    NotFound,
    RType,
    TaggedValue,
    Unknown,
    WireCodec,
    to_python,
    to_tagged,
)

__all__ = [
    "NA_INTEGER",
    "CharacterVector",
    "DoubleVector",
    "IntegerVector",
    "LogicalVector",
    "Matrix",
    "MatrixValue",
    "NotFound",
    "RType",
    "TaggedValue",
    "Unknown",
    "WireCodec",
    "to_python",
    "to_tagged",
]
