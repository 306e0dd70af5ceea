"""Tagged value codec for the binary channel.

Every value is written as ``[tag: int32][length: int32][payload]`` in the byte
order fixed for the session:

- logical and integer payloads are int32 vectors, ``NA_INTEGER`` marks missing;
- double payloads are float64 vectors followed by ``[naCount][naIndex]*``,
  so NaN and NA stay distinct;
- character payloads are ``[byteLength][bytes]`` per element, a negative
  length marks a missing string and carries no bytes;
- matrices write ``[tag][rows][cols]`` followed by one nested vector holding
  the elements in row-major order;
- unknown values carry ``[byteLength][bytes]`` naming the engine-side class;
  not-found values carry nothing after the tag.
"""

from __future__ import annotations

import math
import numbers
import struct
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Literal, Protocol

from rbridge.errors import ProtocolError, UnsupportedType

NA_INTEGER = -(1 << 31)
MAX_INTEGER = (1 << 31) - 1
MIN_INTEGER = -(1 << 31) + 1
DEFAULT_MAX_LENGTH = 1 << 28


class RType(IntEnum):
    NOT_FOUND = -2
    UNKNOWN = -1
    LOGICAL = 0
    INTEGER = 1
    DOUBLE = 2
    CHARACTER = 3
    MATRIX = 4


class ByteSource(Protocol):
    def read_exact(self, size: int) -> bytes: ...


class ByteSink(Protocol):
    def write(self, data: bytes) -> object: ...


@dataclass(frozen=True)
class LogicalVector:
    values: tuple[bool | None, ...]
    rtype: ClassVar[RType] = RType.LOGICAL


@dataclass(frozen=True)
class IntegerVector:
    values: tuple[int | None, ...]
    rtype: ClassVar[RType] = RType.INTEGER

    def __post_init__(self) -> None:
        for value in self.values:
            if value is not None and not MIN_INTEGER <= value <= MAX_INTEGER:
                raise ValueError(f"integer {value} is outside the engine integer range")


@dataclass(frozen=True)
class DoubleVector:
    values: tuple[float | None, ...]
    rtype: ClassVar[RType] = RType.DOUBLE


@dataclass(frozen=True)
class CharacterVector:
    values: tuple[str | bytes | None, ...]
    rtype: ClassVar[RType] = RType.CHARACTER


Vector = LogicalVector | IntegerVector | DoubleVector | CharacterVector


@dataclass(frozen=True)
class MatrixValue:
    rows: int
    cols: int
    elements: Vector
    rtype: ClassVar[RType] = RType.MATRIX


@dataclass(frozen=True)
class NotFound:
    rtype: ClassVar[RType] = RType.NOT_FOUND


@dataclass(frozen=True)
class Unknown:
    diagnostic: str
    rtype: ClassVar[RType] = RType.UNKNOWN


TaggedValue = Vector | MatrixValue | NotFound | Unknown


@dataclass(frozen=True)
class Matrix:
    """Two-dimensional host value stored row-major."""

    rows: int
    cols: int
    data: tuple[object, ...]

    def __post_init__(self) -> None:
        if self.rows < 0 or self.cols < 0:
            raise ValueError("matrix extents must not be negative")
        if len(self.data) != self.rows * self.cols:
            raise ValueError(f"{self.rows}x{self.cols} matrix needs {self.rows * self.cols} elements, got {len(self.data)}")

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[object]]) -> Matrix:
        width = len(rows[0]) if rows else 0
        if any(len(row) != width for row in rows):
            raise ValueError("matrix rows must have equal length")
        return cls(len(rows), width, tuple(item for row in rows for item in row))

    @property
    def shape(self) -> tuple[int, int]:
        return self.rows, self.cols

    def __getitem__(self, index: tuple[int, int]) -> object:
        row, col = index
        if not (0 <= row < self.rows and 0 <= col < self.cols):
            raise IndexError(f"matrix index {index} out of range for shape {self.shape}")
        return self.data[row * self.cols + col]

    def row(self, index: int) -> list[object]:
        start = index * self.cols
        return list(self.data[start : start + self.cols])

    def rows_list(self) -> list[list[object]]:
        return [self.row(index) for index in range(self.rows)]


class BufferSource:
    """In-memory ``ByteSource`` over a complete encoded value."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0

    def read_exact(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise ProtocolError(f"truncated value: wanted {size} bytes at offset {self._offset}")
        chunk = bytes(self._data[self._offset : end])
        self._offset = end
        return chunk

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset


class WireCodec:
    """Encode and decode tagged values with a fixed byte order."""

    def __init__(self, byte_order: Literal["big", "little"] = "big", max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if byte_order not in ("big", "little"):
            raise ValueError(f"unsupported byte order: {byte_order}")
        self.byte_order = byte_order
        self.max_length = max_length
        self._prefix = ">" if byte_order == "big" else "<"
        self._int = struct.Struct(f"{self._prefix}i")

    def encode(self, value: TaggedValue) -> bytes:
        parts: list[bytes] = []
        self._encode(value, parts)
        return b"".join(parts)

    def write(self, value: TaggedValue, sink: ByteSink) -> None:
        sink.write(self.encode(value))

    def decode(self, data: bytes) -> TaggedValue:
        source = BufferSource(data)
        value = self.read(source)
        if source.remaining:
            raise ProtocolError(f"{source.remaining} trailing bytes after value")
        return value

    def read_int(self, source: ByteSource) -> int:
        return self._int.unpack(source.read_exact(4))[0]

    def read(self, source: ByteSource) -> TaggedValue:
        tag = self.read_int(source)
        try:
            rtype = RType(tag)
        except ValueError:
            raise ProtocolError(f"unknown type tag: {tag}") from None

        if rtype is RType.NOT_FOUND:
            return NotFound()
        if rtype is RType.UNKNOWN:
            size = self._read_length(source, "diagnostic length")
            return Unknown(source.read_exact(size).decode("utf-8", errors="replace"))
        if rtype is RType.MATRIX:
            return self._read_matrix(source)

        length = self._read_length(source, "vector length")
        if rtype is RType.LOGICAL:
            return LogicalVector(tuple(None if v == NA_INTEGER else v != 0 for v in self._unpack_ints(source, length)))
        if rtype is RType.INTEGER:
            return IntegerVector(tuple(None if v == NA_INTEGER else v for v in self._unpack_ints(source, length)))
        if rtype is RType.DOUBLE:
            return self._read_doubles(source, length)
        return self._read_strings(source, length)

    def _encode(self, value: TaggedValue, parts: list[bytes]) -> None:
        pack_int = self._int.pack
        if isinstance(value, MatrixValue):
            parts.append(self._pack_ints([value.rtype, value.rows, value.cols]))
            self._encode(value.elements, parts)
            return
        if isinstance(value, NotFound):
            parts.append(pack_int(value.rtype))
            return
        if isinstance(value, Unknown):
            raw = value.diagnostic.encode("utf-8")
            parts.append(self._pack_ints([value.rtype, len(raw)]))
            parts.append(raw)
            return

        values = value.values
        parts.append(self._pack_ints([value.rtype, len(values)]))
        if isinstance(value, LogicalVector):
            parts.append(self._pack_ints([NA_INTEGER if v is None else int(bool(v)) for v in values]))
        elif isinstance(value, IntegerVector):
            parts.append(self._pack_ints([NA_INTEGER if v is None else int(v) for v in values]))
        elif isinstance(value, DoubleVector):
            missing = [index for index, v in enumerate(values) if v is None]
            floats = [math.nan if v is None else float(v) for v in values]
            parts.append(struct.pack(f"{self._prefix}{len(floats)}d", *floats))
            parts.append(self._pack_ints([len(missing), *missing]))
        else:
            for item in values:
                if item is None:
                    parts.append(pack_int(NA_INTEGER))
                    continue
                raw = item.encode("utf-8") if isinstance(item, str) else bytes(item)
                parts.append(pack_int(len(raw)))
                parts.append(raw)

    def _pack_ints(self, values: Sequence[int]) -> bytes:
        return struct.pack(f"{self._prefix}{len(values)}i", *values)

    def _unpack_ints(self, source: ByteSource, count: int) -> tuple[int, ...]:
        return struct.unpack(f"{self._prefix}{count}i", source.read_exact(4 * count))

    def _read_length(self, source: ByteSource, what: str) -> int:
        value = self.read_int(source)
        if value < 0 or value > self.max_length:
            raise ProtocolError(f"declared {what} {value} outside 0..{self.max_length}")
        return value

    def _read_matrix(self, source: ByteSource) -> MatrixValue | Unknown:
        rows = self._read_length(source, "matrix rows")
        cols = self._read_length(source, "matrix columns")
        if rows * cols > self.max_length:
            raise ProtocolError(f"declared matrix {rows}x{cols} exceeds {self.max_length} elements")
        elements = self.read(source)
        if isinstance(elements, Unknown):
            return elements
        if isinstance(elements, (MatrixValue, NotFound)):
            raise ProtocolError(f"matrix elements cannot be {elements.rtype.name}")
        if len(elements.values) != rows * cols:
            raise ProtocolError(f"matrix {rows}x{cols} carried {len(elements.values)} elements")
        return MatrixValue(rows, cols, elements)

    def _read_doubles(self, source: ByteSource, length: int) -> DoubleVector:
        values: list[float | None] = list(struct.unpack(f"{self._prefix}{length}d", source.read_exact(8 * length)))
        missing = self._read_length(source, "NA count")
        if missing > length:
            raise ProtocolError(f"NA count {missing} exceeds vector length {length}")
        for index in self._unpack_ints(source, missing):
            if not 0 <= index < length:
                raise ProtocolError(f"NA index {index} out of range for length {length}")
            values[index] = None
        return DoubleVector(tuple(values))

    def _read_strings(self, source: ByteSource, length: int) -> CharacterVector:
        values: list[str | None] = []
        for _ in range(length):
            size = self.read_int(source)
            if size < 0:
                values.append(None)
                continue
            if size > self.max_length:
                raise ProtocolError(f"declared string length {size} exceeds {self.max_length}")
            values.append(source.read_exact(size).decode("utf-8", errors="replace"))
        return CharacterVector(tuple(values))


def _is_logical(value: object) -> bool:
    return value is None or isinstance(value, bool)


def _is_engine_integer(value: object) -> bool:
    return value is None or (isinstance(value, numbers.Integral) and MIN_INTEGER <= value <= MAX_INTEGER)


def _is_real(value: object) -> bool:
    return value is None or isinstance(value, numbers.Real)


def _is_text(value: object) -> bool:
    return value is None or isinstance(value, (str, bytes))


def vector_for(items: Sequence[object]) -> Vector:
    """Pick the narrowest engine vector type able to hold ``items``."""
    if all(_is_logical(item) for item in items):
        return LogicalVector(tuple(items))  # type: ignore[arg-type]
    if all(_is_engine_integer(item) for item in items):
        return IntegerVector(tuple(None if item is None else int(item) for item in items))  # type: ignore[call-overload]
    if all(_is_real(item) for item in items):
        return DoubleVector(tuple(None if item is None else float(item) for item in items))  # type: ignore[arg-type]
    if all(_is_text(item) for item in items):
        return CharacterVector(tuple(items))  # type: ignore[arg-type]
    kinds = sorted({type(item).__name__ for item in items})
    raise UnsupportedType(f"host value of type {', '.join(kinds)}")


def to_tagged(value: object) -> TaggedValue:
    """Convert a host value into the tagged value sent to the engine."""
    if isinstance(value, Matrix):
        return MatrixValue(value.rows, value.cols, vector_for(value.data))
    if isinstance(value, Mapping):
        raise UnsupportedType(f"host value of type {type(value).__name__}")
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return vector_for([value])
    return vector_for(list(value))


def to_python(value: TaggedValue, *, singleton: bool = False) -> object:
    """Convert a decoded engine value into host objects.

    ``NotFound`` becomes ``None``; ``Unknown`` raises ``UnsupportedType``.
    Unless ``singleton`` is set, a non-text vector of length one is unwrapped;
    character vectors always come back as lists.
    """
    if isinstance(value, NotFound):
        return None
    if isinstance(value, Unknown):
        raise UnsupportedType(value.diagnostic)
    if isinstance(value, MatrixValue):
        return Matrix(value.rows, value.cols, tuple(value.elements.values))
    items = list(value.values)
    if not singleton and len(items) == 1 and not isinstance(value, CharacterVector):
        return items[0]
    return items
