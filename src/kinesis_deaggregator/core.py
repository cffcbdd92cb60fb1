# src/kinesis_deaggregator/core.py

"""
Traversal engine for deaggregating Kinesis records.

This module turns a sequence of raw stream records into the user records a
KPL producer originally submitted. Each raw record is classified by the
decoder; genuine aggregates are expanded into one user record per
sub-record, anything else passes through unchanged as a single record.

Four traversal modes share the same pipeline:

* ``deaggregate_records`` -- eager; fails the whole call on the first
  corrupt raw record.
* ``deaggregate_records_tolerant`` -- eager; collects failures alongside
  the records that were produced.
* ``iter_deaggregate_records`` -- lazy; a failing raw record raises at the
  point it is reached and the stream resumes with the next raw record.
* ``deaggregate_with_callbacks`` -- cooperative; per-record and
  end-of-raw-record callbacks.

All modes produce the same user records in the same order.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping

from .assembler import assemble, passthrough
from .config import AppConfig
from .decoder import AggregateBody, NotAggregated, decode
from .exceptions import CorruptAggregateError, RecordDecodeError, get_error_context
from .schemas import KinesisEventRecordDict, RawRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FailedRecord:
    """
    Synthesized description of where a raw record's expansion stopped.

    ``sub_sequence_number`` is the position of the failing sub-record, or
    ``None`` when the aggregate body could not be parsed at all.
    """

    partition_key: str
    explicit_hash_key: str | None
    sequence_number: str
    sub_sequence_number: int | None
    approximate_arrival_timestamp: float | None
    envelope: Mapping[str, Any]
    data: bytes

    @classmethod
    def from_error(cls, raw: RawRecord, error: RecordDecodeError) -> "FailedRecord":
        return cls(
            partition_key=raw.partition_key,
            explicit_hash_key=raw.explicit_hash_key,
            sequence_number=raw.sequence_number,
            sub_sequence_number=error.sub_sequence_number,
            approximate_arrival_timestamp=raw.approximate_arrival_timestamp,
            envelope=MappingProxyType(dict(raw.envelope)),
            data=raw.data,
        )


@dataclass(frozen=True, slots=True)
class RecordOutcome:
    """What happened to one raw record once its expansion finished."""

    raw_record: RawRecord
    aggregated: bool
    emitted: int
    error: RecordDecodeError | None = None
    failed_record: FailedRecord | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class DeaggregationResult:
    records: list[UserRecord] = field(default_factory=list)
    failures: list[RecordOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class UserRecordStream:
    """
    Lazy, forward-only stream of user records.

    Each ``next()`` does just enough work to produce the next user record.
    When a raw record turns out to be corrupt, ``next()`` raises its
    ``RecordDecodeError``; the stream stays usable and the following
    ``next()`` continues with the next raw record. A ``for`` loop ends at
    the first such error, so use ``records()`` to keep going past them.
    The stream cannot be restarted.
    """

    def __init__(self, deaggregator: "Deaggregator", raw_records: Iterable[RawRecord]):
        self._deaggregator = deaggregator
        self._raw_records = iter(raw_records)
        self._current: Iterator[UserRecord] | None = None

    def __iter__(self) -> "UserRecordStream":
        return self

    def __next__(self) -> UserRecord:
        while True:
            if self._current is None:
                raw = next(self._raw_records)
                self._current = self._deaggregator.expand(raw)
            try:
                return next(self._current)
            except StopIteration:
                self._current = None
            except RecordDecodeError:
                self._current = None
                raise

    def records(
        self, on_error: Callable[[RecordDecodeError], None] | None = None
    ) -> Iterator[UserRecord]:
        """
        Yields the remaining user records, skipping corrupt raw records.

        Each skipped error is handed to *on_error*; it has already been
        logged by the engine.
        """
        while True:
            try:
                yield next(self)
            except StopIteration:
                return
            except RecordDecodeError as e:
                if on_error is not None:
                    on_error(e)


class Deaggregator:
    """Expands raw Kinesis records into user records."""

    def __init__(self, config: AppConfig | None = None):
        self.config = config or AppConfig()
        self._debug = self.config.is_debug

    # --- Single Record Pipeline ---
    def _decode_body(self, raw: RawRecord) -> AggregateBody | None:
        """Returns the parsed aggregate body, or None for a plain record."""
        try:
            container = decode(raw.data, compute_checksum=self.config.compute_checksums)
        except CorruptAggregateError as e:
            raise e.attach(raw.sequence_number)

        if isinstance(container, NotAggregated):
            if self._debug:
                logger.debug(
                    "Record is not aggregated. Passing through.",
                    extra={
                        "sequence_number": raw.sequence_number,
                        "reason": container.reason.value,
                    },
                )
            return None

        if self._debug:
            logger.debug(
                "Decoded aggregated record.",
                extra={
                    "sequence_number": raw.sequence_number,
                    "sub_records": len(container.aggregate.records),
                    "partition_keys": len(container.aggregate.partition_key_table),
                    "explicit_hash_keys": len(
                        container.aggregate.explicit_hash_key_table
                    ),
                },
            )
        return container.aggregate

    def expand(self, raw: RawRecord) -> Iterator[UserRecord]:
        """
        Lazily yields the user records derived from one raw record.

        Raises ``RecordDecodeError`` (tagged with the raw record's sequence
        number) at the point the expansion fails.
        """
        try:
            body = self._decode_body(raw)
            if body is None:
                yield passthrough(raw)
            else:
                yield from assemble(raw, body)
        except RecordDecodeError as e:
            logger.warning(
                f"Failed to deaggregate record: {e}",
                extra={"error": get_error_context(e)},
            )
            raise

    # --- Traversal Modes ---
    def deaggregate_record(self, raw: RawRecord) -> list[UserRecord]:
        return list(self.expand(raw))

    def deaggregate_records(self, raw_records: Iterable[RawRecord]) -> list[UserRecord]:
        """
        Expands every raw record, in order, into one flat list.

        The first corrupt raw record aborts the call; the raised error carries
        its sequence number so the caller can decide to skip or stop.
        """
        user_records: list[UserRecord] = []
        for raw in raw_records:
            user_records.extend(self.expand(raw))
        return user_records

    def deaggregate_records_tolerant(
        self, raw_records: Iterable[RawRecord]
    ) -> DeaggregationResult:
        """
        Like ``deaggregate_records`` but never raises for a corrupt raw record.

        Records produced before a failure inside an aggregate are kept, so the
        output matches what the lazy stream would have yielded.
        """
        result = DeaggregationResult()

        def _on_complete(outcome: RecordOutcome) -> None:
            if not outcome.succeeded:
                result.failures.append(outcome)

        self.deaggregate_with_callbacks(raw_records, result.records.append, _on_complete)
        return result

    def iter_deaggregate_records(
        self, raw_records: Iterable[RawRecord]
    ) -> UserRecordStream:
        return UserRecordStream(self, raw_records)

    def deaggregate_with_callbacks(
        self,
        raw_records: Iterable[RawRecord],
        on_user_record: Callable[[UserRecord], None],
        on_record_complete: Callable[[RecordOutcome], None] | None = None,
    ) -> None:
        """
        Drives the expansion, calling *on_user_record* once per user record.

        *on_record_complete* runs once per raw record after its sub-records
        are exhausted or an error ended the expansion early. Later raw
        records are processed regardless. Exceptions raised by the callbacks
        themselves propagate to the caller.
        """
        for raw in raw_records:
            emitted = 0
            error: RecordDecodeError | None = None
            try:
                body = self._decode_body(raw)
            except RecordDecodeError as e:
                body = None
                error = e
            # Decode errors only arise for payloads that passed the container checks.
            aggregated = body is not None or error is not None

            if error is None:
                user_records = (
                    assemble(raw, body) if body is not None else iter((passthrough(raw),))
                )
                while True:
                    try:
                        user_record = next(user_records)
                    except StopIteration:
                        break
                    except RecordDecodeError as e:
                        error = e
                        break
                    on_user_record(user_record)
                    emitted += 1

            if error is not None:
                logger.warning(
                    f"Failed to deaggregate record: {error}",
                    extra={"error": get_error_context(error)},
                )

            if on_record_complete is not None:
                on_record_complete(
                    RecordOutcome(
                        raw_record=raw,
                        aggregated=aggregated,
                        emitted=emitted,
                        error=error,
                        failed_record=(
                            FailedRecord.from_error(raw, error) if error else None
                        ),
                    )
                )


# --- Module-Level Conveniences ---
def deaggregate_records(
    raw_records: Iterable[RawRecord], config: AppConfig | None = None
) -> list[UserRecord]:
    return Deaggregator(config).deaggregate_records(raw_records)


def iter_deaggregate_records(
    raw_records: Iterable[RawRecord], config: AppConfig | None = None
) -> UserRecordStream:
    return Deaggregator(config).iter_deaggregate_records(raw_records)


def deaggregate_lambda_records(
    event_records: Iterable[dict[str, Any]], config: AppConfig | None = None
) -> list[KinesisEventRecordDict]:
    """
    Deaggregates Lambda Kinesis event records and returns them in the same
    event shape, each carrying ``subSequenceNumber`` and ``aggregated``.
    """
    raw_records = [RawRecord.from_lambda_record(r) for r in event_records]
    return [
        user_record.to_lambda_record()
        for user_record in deaggregate_records(raw_records, config)
    ]
