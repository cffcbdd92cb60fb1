# src/kinesis_deaggregator/assembler.py

"""Builds output ``UserRecord`` objects from a raw record and its decoded body."""

from typing import Iterator

from .decoder import AggregateBody
from .exceptions import IndexOutOfRangeError
from .resolver import resolve
from .schemas import RawRecord, UserRecord


def passthrough(raw: RawRecord) -> UserRecord:
    """Reinterprets a non-aggregated raw record as a single user record."""
    return UserRecord(
        partition_key=raw.partition_key,
        explicit_hash_key=raw.explicit_hash_key,
        data=raw.data,
        sequence_number=raw.sequence_number,
        sub_sequence_number=0,
        aggregated=False,
        approximate_arrival_timestamp=raw.approximate_arrival_timestamp,
        envelope=dict(raw.envelope),
    )


def assemble(raw: RawRecord, body: AggregateBody) -> Iterator[UserRecord]:
    """
    Yields one user record per sub-record of *body*, in table order.

    Records are produced one at a time; a sub-record with a bad table index
    raises ``IndexOutOfRangeError`` tagged with its position after all
    earlier sub-records have been yielded.
    """
    for position, sub_record in enumerate(body.records):
        try:
            partition_key, explicit_hash_key = resolve(sub_record, body)
        except IndexOutOfRangeError as e:
            raise e.attach(raw.sequence_number, position)

        yield UserRecord(
            partition_key=partition_key,
            explicit_hash_key=explicit_hash_key,
            data=sub_record.data,
            sequence_number=raw.sequence_number,
            sub_sequence_number=position,
            aggregated=True,
            approximate_arrival_timestamp=raw.approximate_arrival_timestamp,
            envelope=dict(raw.envelope),
        )
