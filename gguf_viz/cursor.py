"""
Binary cursor over an in-memory slice of a GGUF file.
"""

from __future__ import annotations

import struct
from typing import Any

from gguf.constants import GGUFValueType


class InsufficientDataError(Exception):
    """The buffer ended before the requested value; a larger slice is needed."""


class GGUFFormatError(ValueError):
    """The file is not a valid GGUF file (bad magic, version, type tag, ...)."""


# little-endian struct formats for the fixed-width scalar types
_SCALAR_FORMATS: dict[GGUFValueType, struct.Struct] = {
    GGUFValueType.UINT8: struct.Struct("<B"),
    GGUFValueType.INT8: struct.Struct("<b"),
    GGUFValueType.UINT16: struct.Struct("<H"),
    GGUFValueType.INT16: struct.Struct("<h"),
    GGUFValueType.UINT32: struct.Struct("<I"),
    GGUFValueType.INT32: struct.Struct("<i"),
    GGUFValueType.FLOAT32: struct.Struct("<f"),
    GGUFValueType.UINT64: struct.Struct("<Q"),
    GGUFValueType.INT64: struct.Struct("<q"),
    GGUFValueType.FLOAT64: struct.Struct("<d"),
    GGUFValueType.BOOL: struct.Struct("<B"),
}


class BinaryCursor:
    """
    Sequential little-endian reader over a fixed buffer.

    Every read checks the remaining length first and raises
    :class:`InsufficientDataError` instead of reading past the end.
    """

    def __init__(self, buffer: bytes | bytearray | memoryview, offset: int = 0):
        self.buffer = memoryview(buffer).cast("B")
        self.offset = offset

    def __len__(self) -> int:
        return len(self.buffer)

    @property
    def remaining(self) -> int:
        return len(self.buffer) - self.offset

    def _need(self, n: int) -> None:
        if n < 0 or self.offset + n > len(self.buffer):
            raise InsufficientDataError(
                f"need {n} bytes at offset {self.offset}, buffer holds {len(self.buffer)}"
            )

    def _unpack(self, fmt: struct.Struct) -> Any:
        self._need(fmt.size)
        (value,) = fmt.unpack_from(self.buffer, self.offset)
        self.offset += fmt.size
        return value

    def read_u8(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.UINT8])

    def read_i8(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.INT8])

    def read_u16(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.UINT16])

    def read_i16(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.INT16])

    def read_u32(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.UINT32])

    def read_i32(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.INT32])

    def read_u64(self) -> int:
        # Python ints are arbitrary precision, offsets past 2**53 stay exact
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.UINT64])

    def read_i64(self) -> int:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.INT64])

    def read_f32(self) -> float:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.FLOAT32])

    def read_f64(self) -> float:
        return self._unpack(_SCALAR_FORMATS[GGUFValueType.FLOAT64])

    def read_bool(self) -> bool:
        return self.read_u8() != 0

    def read_string(self) -> str:
        length = self.read_u64()
        self._need(length)
        raw = self.buffer[self.offset:self.offset + length]
        self.offset += length
        return bytes(raw).decode("utf-8", errors="replace")

    def read_value(self, value_type: int) -> Any:
        """
        Read one metadata value of the given type tag.

        Arrays carry their own element type and length and are decoded
        recursively, so nested arrays come back as nested lists.

        Raises:
            GGUFFormatError: the tag is not a known GGUF value type
            InsufficientDataError: the buffer ended inside the value
        """
        vtype = as_value_type(value_type)
        if vtype == GGUFValueType.STRING:
            return self.read_string()
        if vtype == GGUFValueType.ARRAY:
            element_type = as_value_type(self.read_u32())
            length = self.read_u64()
            return [self.read_value(element_type) for _ in range(length)]
        value = self._unpack(_SCALAR_FORMATS[vtype])
        if vtype == GGUFValueType.BOOL:
            return value != 0
        return value


def as_value_type(tag: int) -> GGUFValueType:
    try:
        return GGUFValueType(tag)
    except ValueError:
        raise GGUFFormatError(
            f"Unknown GGUF metadata value type: {tag} (expected 0..{int(max(GGUFValueType))})"
        ) from None
