"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import base64
import hashlib
import os
import types
import uuid

import pytest

# The Lambda adapter reads its configuration and builds its Powertools
# utilities at import time, so the environment must be in place first.
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "kinesis-deaggregator-test")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "KinesisDeaggregatorTest")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")

from kinesis_deaggregator.decoder import MAGIC  # noqa: E402
from kinesis_deaggregator.schemas import RawRecord  # noqa: E402

SEQUENCE_NUMBER = "49590338271490256608559692538361571095921575989136588801"


# ---------- Test-only KPL encoder ---------- #
def encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def varint_field(field_number: int, value: int) -> bytes:
    return _key(field_number, 0) + encode_varint(value)


def bytes_field(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, 2) + encode_varint(len(payload)) + payload


def encode_sub_record(
    pk: int, data: bytes, ehk: int | None = None, tags: tuple = ()
) -> bytes:
    message = varint_field(1, pk)
    if ehk is not None:
        message += varint_field(2, ehk)
    message += bytes_field(3, data)
    for key, value in tags:
        tag = bytes_field(1, key.encode())
        if value is not None:
            tag += bytes_field(2, value.encode())
        message += bytes_field(4, tag)
    return message


def encode_body(
    partition_keys: list[str],
    records: list[dict],
    explicit_hash_keys: list[str] | None = None,
) -> bytes:
    body = b"".join(bytes_field(1, pk.encode()) for pk in partition_keys)
    body += b"".join(bytes_field(2, ehk.encode()) for ehk in explicit_hash_keys or [])
    for record in records:
        body += bytes_field(
            3,
            encode_sub_record(
                record["pk"],
                record["data"],
                ehk=record.get("ehk"),
                tags=tuple(record.get("tags", ())),
            ),
        )
    return body


def wrap_body(body: bytes) -> bytes:
    return MAGIC + body + hashlib.md5(body).digest()


@pytest.fixture
def make_aggregate():
    """Builds a complete KPL aggregate payload."""

    def _make(
        partition_keys: list[str],
        records: list[dict],
        explicit_hash_keys: list[str] | None = None,
    ) -> bytes:
        return wrap_body(encode_body(partition_keys, records, explicit_hash_keys))

    return _make


@pytest.fixture
def kpl():
    """Low-level access to the test encoder for hand-built bodies."""
    return types.SimpleNamespace(
        varint=encode_varint,
        varint_field=varint_field,
        bytes_field=bytes_field,
        sub_record=encode_sub_record,
        body=encode_body,
        wrap=wrap_body,
    )


@pytest.fixture
def envelope() -> dict:
    return {
        "eventID": f"shardId-000000000000:{SEQUENCE_NUMBER}",
        "eventSourceARN": "arn:aws:kinesis:eu-west-1:000000000000:stream/dummy",
        "kinesisSchemaVersion": "1.0",
        "awsRegion": "eu-west-1",
    }


@pytest.fixture
def make_raw_record(envelope):
    def _make(
        data: bytes,
        sequence_number: str = SEQUENCE_NUMBER,
        partition_key: str = "outer-pk",
        **kwargs,
    ) -> RawRecord:
        kwargs.setdefault("envelope", envelope)
        return RawRecord(
            data=data,
            partition_key=partition_key,
            sequence_number=sequence_number,
            **kwargs,
        )

    return _make


# ---------- Minimal, realistic dummy events ---------- #
@pytest.fixture
def make_kinesis_event_record():
    """One record as a Kinesis event source mapping delivers it to Lambda."""

    def _make(data: bytes, sequence_number: str = SEQUENCE_NUMBER, **kinesis) -> dict:
        block = {
            "kinesisSchemaVersion": "1.0",
            "partitionKey": "outer-pk",
            "sequenceNumber": sequence_number,
            "data": base64.b64encode(data).decode("ascii"),
            "approximateArrivalTimestamp": 1545084650.987,
        }
        block.update(kinesis)
        return {
            "kinesis": block,
            "eventSource": "aws:kinesis",
            "eventVersion": "1.0",
            "eventID": f"shardId-000000000006:{sequence_number}",
            "eventName": "aws:kinesis:record",
            "invokeIdentityArn": "arn:aws:iam::000000000000:role/lambda-role",
            "awsRegion": "eu-west-1",
            "eventSourceARN": "arn:aws:kinesis:eu-west-1:000000000000:stream/dummy",
        }

    return _make


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="kinesis-deaggregator",
        function_version="$LATEST",
        memory_limit_in_mb=128,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:dummy",
        get_remaining_time_in_millis=lambda: 30000,
    )
