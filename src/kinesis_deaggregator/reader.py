# src/kinesis_deaggregator/reader.py

"""
A forward-only cursor over an immutable byte buffer.

The reader understands just enough of the protobuf wire format to walk the
KPL aggregate body: fixed-length slices, base-128 varints, length-delimited
fields and field tags. Every read is bounds-checked; nothing ever seeks
backward.
"""

from .exceptions import MalformedVarintError, TruncatedInputError

# A 64-bit value needs at most ten 7-bit groups.
MAX_VARINT_BYTES = 10

# Protobuf wire types.
WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5


class BinaryReader:
    """Sequential, bounds-checked reader over a ``bytes``-like buffer."""

    __slots__ = ("_buffer", "_offset", "_end")

    def __init__(self, buffer: bytes | memoryview):
        self._buffer = memoryview(buffer)
        self._offset = 0
        self._end = len(self._buffer)

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return self._end - self._offset

    @property
    def at_end(self) -> bool:
        return self._offset >= self._end

    def read_fixed(self, n: int) -> bytes:
        """Returns exactly ``n`` bytes or raises ``TruncatedInputError``."""
        if n < 0 or n > self.remaining:
            raise TruncatedInputError(
                requested=n, remaining=self.remaining, offset=self._offset
            )
        start = self._offset
        self._offset += n
        return self._buffer[start : self._offset].tobytes()

    def read_varint(self) -> int:
        """Decodes an unsigned base-128 varint, least significant group first."""
        start = self._offset
        result = 0
        for i in range(MAX_VARINT_BYTES):
            if self._offset >= self._end:
                raise MalformedVarintError(
                    offset=start, reason="input exhausted before varint terminated"
                )
            byte = self._buffer[self._offset]
            self._offset += 1
            if i == MAX_VARINT_BYTES - 1 and byte > 0x01:
                raise MalformedVarintError(
                    offset=start, reason="varint exceeds 64 bits"
                )
            result |= (byte & 0x7F) << (7 * i)
            if not byte & 0x80:
                return result
        raise MalformedVarintError(
            offset=start,
            reason=f"continuation bit still set after {MAX_VARINT_BYTES} bytes",
        )

    def read_length_delimited(self) -> bytes:
        length = self.read_varint()
        return self.read_fixed(length)

    def read_tag(self) -> tuple[int, int]:
        """Reads a field key and splits it into (field_number, wire_type)."""
        key = self.read_varint()
        return key >> 3, key & 0x07

    def skip_field(self, wire_type: int) -> None:
        """Consumes the value of a field this reader's caller does not know."""
        if wire_type == WIRE_VARINT:
            self.read_varint()
        elif wire_type == WIRE_FIXED64:
            self.read_fixed(8)
        elif wire_type == WIRE_LENGTH_DELIMITED:
            self.read_length_delimited()
        elif wire_type == WIRE_FIXED32:
            self.read_fixed(4)
        else:
            raise ValueError(f"Unsupported wire type {wire_type}")
