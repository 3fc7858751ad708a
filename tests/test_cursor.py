"""
Tests for the binary cursor.
"""

import struct

import pytest
from gguf.constants import GGUFValueType

from gguf_viz.cursor import BinaryCursor, GGUFFormatError, InsufficientDataError


class TestScalarReads:
    """Typed little-endian reads"""

    def test_integers_and_floats(self):
        buf = struct.pack("<BbHhIiQqfd", 250, -3, 65000, -1234, 4_000_000_000, -7, 2**40, -(2**40), 1.5, -0.25)
        cursor = BinaryCursor(buf)

        assert cursor.read_u8() == 250
        assert cursor.read_i8() == -3
        assert cursor.read_u16() == 65000
        assert cursor.read_i16() == -1234
        assert cursor.read_u32() == 4_000_000_000
        assert cursor.read_i32() == -7
        assert cursor.read_u64() == 2**40
        assert cursor.read_i64() == -(2**40)
        assert cursor.read_f32() == 1.5
        assert cursor.read_f64() == -0.25
        assert cursor.remaining == 0

    def test_u64_is_lossless_above_2_53(self):
        values = [2**53 + 1, 2**64 - 1]
        cursor = BinaryCursor(struct.pack("<2Q", *values))

        assert [cursor.read_u64(), cursor.read_u64()] == values

    def test_bool_is_any_nonzero_byte(self):
        cursor = BinaryCursor(bytes([0, 1, 7]))

        assert [cursor.read_bool(), cursor.read_bool(), cursor.read_bool()] == [False, True, True]

    def test_string(self):
        raw = "héllo".encode("utf-8")
        cursor = BinaryCursor(struct.pack("<Q", len(raw)) + raw)

        assert cursor.read_string() == "héllo"
        assert cursor.offset == 8 + len(raw)

    def test_starts_at_offset(self):
        cursor = BinaryCursor(struct.pack("<II", 1, 2), offset=4)

        assert cursor.read_u32() == 2


class TestBounds:
    """Reads past the end signal instead of reading out of bounds"""

    def test_short_read_raises_and_keeps_position(self):
        cursor = BinaryCursor(b"\x01\x02\x03")

        with pytest.raises(InsufficientDataError):
            cursor.read_u32()
        assert cursor.offset == 0
        assert cursor.read_u16() == 0x0201

    def test_string_longer_than_buffer(self):
        cursor = BinaryCursor(struct.pack("<Q", 100) + b"abc")

        with pytest.raises(InsufficientDataError):
            cursor.read_string()

    def test_empty_buffer(self):
        with pytest.raises(InsufficientDataError):
            BinaryCursor(b"").read_u8()


class TestReadValue:
    """Metadata value grammar"""

    def test_scalar_tags(self):
        buf = struct.pack("<i", -5) + struct.pack("<f", 0.5)
        cursor = BinaryCursor(buf)

        assert cursor.read_value(GGUFValueType.INT32) == -5
        assert cursor.read_value(GGUFValueType.FLOAT32) == 0.5

    def test_bool_value(self):
        assert BinaryCursor(b"\x01").read_value(GGUFValueType.BOOL) is True

    def test_string_array(self):
        buf = struct.pack("<IQ", GGUFValueType.STRING, 2)
        for s in (b"a", b"bc"):
            buf += struct.pack("<Q", len(s)) + s

        assert BinaryCursor(buf).read_value(GGUFValueType.ARRAY) == ["a", "bc"]

    def test_nested_array(self):
        inner = [struct.pack("<IQ", GGUFValueType.UINT8, 2) + bytes([1, 2]),
                 struct.pack("<IQ", GGUFValueType.UINT8, 1) + bytes([3])]
        buf = struct.pack("<IQ", GGUFValueType.ARRAY, 2) + b"".join(inner)

        assert BinaryCursor(buf).read_value(GGUFValueType.ARRAY) == [[1, 2], [3]]

    def test_unknown_tag(self):
        with pytest.raises(GGUFFormatError, match="Unknown GGUF metadata value type: 42"):
            BinaryCursor(b"\x00" * 8).read_value(42)

    def test_unknown_element_tag_in_empty_array(self):
        buf = struct.pack("<IQ", 99, 0)

        with pytest.raises(GGUFFormatError, match="99"):
            BinaryCursor(buf).read_value(GGUFValueType.ARRAY)

    def test_truncated_array(self):
        buf = struct.pack("<IQ", GGUFValueType.UINT32, 4) + struct.pack("<I", 1)

        with pytest.raises(InsufficientDataError):
            BinaryCursor(buf).read_value(GGUFValueType.ARRAY)
