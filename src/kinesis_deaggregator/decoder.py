# src/kinesis_deaggregator/decoder.py

"""
Decoder for the KPL aggregated record container.

Wire layout of an aggregated Kinesis record payload::

    offset 0       : magic marker  F3 89 9A C2
    offset 4       : AggregatedRecord protobuf message
    offset len-16  : MD5 digest of the AggregatedRecord message

The embedded message follows ``kpl.proto``::

    message AggregatedRecord {
        repeated string partition_key_table     = 1;
        repeated string explicit_hash_key_table = 2;
        repeated Record records                 = 3;
    }
    message Record {
        required uint64 partition_key_index     = 1;
        optional uint64 explicit_hash_key_index = 2;
        required bytes  data                    = 3;
        repeated Tag    tags                    = 4;
    }
    message Tag {
        required string key   = 1;
        optional string value = 2;
    }

A payload that is too short, lacks the magic marker, or fails the checksum is
classified as ``NotAggregated`` and handed on as a plain record. Only a body
that passed those checks and still cannot be parsed is an error.
"""

import enum
import logging
from dataclasses import dataclass

from . import checksum
from .exceptions import BinaryFormatError, CorruptAggregateError
from .reader import WIRE_LENGTH_DELIMITED, WIRE_VARINT, BinaryReader

logger = logging.getLogger(__name__)

MAGIC = b"\xf3\x89\x9a\xc2"
DIGEST_SIZE = checksum.DIGEST_SIZE
MIN_AGGREGATE_SIZE = len(MAGIC) + DIGEST_SIZE


class NotAggregatedReason(str, enum.Enum):
    TOO_SHORT = "too_short"
    NO_MAGIC = "no_magic"
    CHECKSUM_MISMATCH = "checksum_mismatch"


@dataclass(frozen=True, slots=True)
class NotAggregated:
    """Classification for a payload that should be treated as one literal record."""

    reason: NotAggregatedReason


@dataclass(frozen=True, slots=True)
class Tag:
    key: str
    value: str | None = None


@dataclass(frozen=True, slots=True)
class SubRecord:
    """One logical record packed inside an aggregate."""

    partition_key_index: int
    explicit_hash_key_index: int | None
    data: bytes
    tags: tuple[Tag, ...] = ()


@dataclass(frozen=True, slots=True)
class AggregateBody:
    """Parsed ``AggregatedRecord`` message: two key tables and the sub-records."""

    partition_key_table: tuple[str, ...]
    explicit_hash_key_table: tuple[str, ...]
    records: tuple[SubRecord, ...]


@dataclass(frozen=True, slots=True)
class AggregateContainer:
    magic: bytes
    body: bytes
    checksum: bytes
    aggregate: AggregateBody


# --- Body Parsing ---
def _expect_wire_type(actual: int, expected: int, field_name: str) -> None:
    if actual != expected:
        raise CorruptAggregateError(
            f"field '{field_name}' has wire type {actual}, expected {expected}"
        )


def _decode_string(raw: bytes, field_name: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptAggregateError(
            f"field '{field_name}' is not valid UTF-8"
        ) from e


def _parse_tag(message: bytes) -> Tag:
    reader = BinaryReader(message)
    key: str | None = None
    value: str | None = None
    while not reader.at_end:
        field_number, wire_type = reader.read_tag()
        if field_number == 1:
            _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "tag.key")
            key = _decode_string(reader.read_length_delimited(), "tag.key")
        elif field_number == 2:
            _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "tag.value")
            value = _decode_string(reader.read_length_delimited(), "tag.value")
        else:
            reader.skip_field(wire_type)
    if key is None:
        raise CorruptAggregateError("tag is missing its required key")
    return Tag(key=key, value=value)


def _parse_sub_record(message: bytes, position: int) -> SubRecord:
    """Parses the sub-record at *position*; every failure carries that position."""
    try:
        return _read_sub_record(message, position)
    except CorruptAggregateError as e:
        e.context.setdefault("sub_sequence_number", position)
        raise
    except BinaryFormatError as e:
        raise CorruptAggregateError(
            e.message, context={**e.context, "sub_sequence_number": position}
        ) from e
    except ValueError as e:
        raise CorruptAggregateError(
            str(e), context={"sub_sequence_number": position}
        ) from e


def _read_sub_record(message: bytes, position: int) -> SubRecord:
    reader = BinaryReader(message)
    partition_key_index: int | None = None
    explicit_hash_key_index: int | None = None
    data: bytes | None = None
    tags: list[Tag] = []

    while not reader.at_end:
        field_number, wire_type = reader.read_tag()
        if field_number == 1:
            _expect_wire_type(wire_type, WIRE_VARINT, "partition_key_index")
            partition_key_index = reader.read_varint()
        elif field_number == 2:
            _expect_wire_type(wire_type, WIRE_VARINT, "explicit_hash_key_index")
            explicit_hash_key_index = reader.read_varint()
        elif field_number == 3:
            _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "data")
            data = reader.read_length_delimited()
        elif field_number == 4:
            _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "tags")
            tags.append(_parse_tag(reader.read_length_delimited()))
        elif field_number == 0:
            raise CorruptAggregateError("record contains invalid field number 0")
        else:
            reader.skip_field(wire_type)

    if partition_key_index is None:
        raise CorruptAggregateError(
            "record is missing required partition_key_index",
            context={"sub_sequence_number": position},
        )
    if data is None:
        raise CorruptAggregateError(
            "record is missing required data",
            context={"sub_sequence_number": position},
        )
    return SubRecord(
        partition_key_index=partition_key_index,
        explicit_hash_key_index=explicit_hash_key_index,
        data=data,
        tags=tuple(tags),
    )


def parse_body(body: bytes) -> AggregateBody:
    """
    Parses an ``AggregatedRecord`` message.

    Fields are dispatched on their tag number, so table entries and records
    may appear in any order; unknown fields are skipped. Any framing problem
    is raised as ``CorruptAggregateError``.
    """
    reader = BinaryReader(body)
    partition_keys: list[str] = []
    explicit_hash_keys: list[str] = []
    records: list[SubRecord] = []

    try:
        while not reader.at_end:
            field_number, wire_type = reader.read_tag()
            if field_number == 1:
                _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "partition_key_table")
                partition_keys.append(
                    _decode_string(reader.read_length_delimited(), "partition_key_table")
                )
            elif field_number == 2:
                _expect_wire_type(
                    wire_type, WIRE_LENGTH_DELIMITED, "explicit_hash_key_table"
                )
                explicit_hash_keys.append(
                    _decode_string(
                        reader.read_length_delimited(), "explicit_hash_key_table"
                    )
                )
            elif field_number == 3:
                _expect_wire_type(wire_type, WIRE_LENGTH_DELIMITED, "records")
                records.append(
                    _parse_sub_record(reader.read_length_delimited(), len(records))
                )
            elif field_number == 0:
                raise CorruptAggregateError("message contains invalid field number 0")
            else:
                reader.skip_field(wire_type)
    except BinaryFormatError as e:
        raise CorruptAggregateError(e.message, context=e.context) from e
    except ValueError as e:
        raise CorruptAggregateError(str(e)) from e

    return AggregateBody(
        partition_key_table=tuple(partition_keys),
        explicit_hash_key_table=tuple(explicit_hash_keys),
        records=tuple(records),
    )


# --- Container Decoding ---
def decode(
    payload: bytes, compute_checksum: bool = True
) -> AggregateContainer | NotAggregated:
    """
    Recognizes and parses a KPL aggregate.

    Returns ``NotAggregated`` for anything that is not a genuine aggregate,
    including a payload that merely starts with the magic bytes by chance.
    Raises ``CorruptAggregateError`` when the container checks out but the
    body does not parse.
    """
    if len(payload) < MIN_AGGREGATE_SIZE:
        return NotAggregated(NotAggregatedReason.TOO_SHORT)
    if payload[: len(MAGIC)] != MAGIC:
        return NotAggregated(NotAggregatedReason.NO_MAGIC)

    body = bytes(payload[len(MAGIC) : -DIGEST_SIZE])
    trailer = bytes(payload[-DIGEST_SIZE:])

    if compute_checksum and not checksum.verify(body, trailer):
        logger.debug(
            "Magic marker present but checksum mismatched. Treating as a plain record.",
            extra={"payload_size": len(payload)},
        )
        return NotAggregated(NotAggregatedReason.CHECKSUM_MISMATCH)

    return AggregateContainer(
        magic=MAGIC, body=body, checksum=trailer, aggregate=parse_body(body)
    )
