# tests/unit/test_core.py

import base64

import pytest

from kinesis_deaggregator.config import AppConfig
from kinesis_deaggregator.core import (
    Deaggregator,
    DeaggregationResult,
    RecordOutcome,
    UserRecordStream,
    deaggregate_lambda_records,
    deaggregate_records,
    iter_deaggregate_records,
)
from kinesis_deaggregator.decoder import MAGIC
from kinesis_deaggregator.exceptions import (
    CorruptAggregateError,
    IndexOutOfRangeError,
    RecordDecodeError,
)
from kinesis_deaggregator.schemas import UserRecord

SEQ_1 = "49590338271490256608559692538361571095921575989136588801"
SEQ_2 = "49590338271490256608559692538361571095921575989136588802"
SEQ_3 = "49590338271490256608559692538361571095921575989136588803"


@pytest.fixture
def deaggregator() -> Deaggregator:
    return Deaggregator(AppConfig())


@pytest.fixture
def two_record_aggregate(make_aggregate) -> bytes:
    return make_aggregate(["pk1", "pk2"], [{"pk": 0, "data": b"A"}, {"pk": 1, "data": b"B"}])


@pytest.fixture
def bad_index_aggregate(make_aggregate) -> bytes:
    # The second sub-record points one past the end of the partition key table.
    return make_aggregate(
        ["pk1", "pk2"],
        [{"pk": 0, "data": b"ok"}, {"pk": 2, "data": b"bad"}, {"pk": 1, "data": b"never"}],
    )


@pytest.fixture
def corrupt_aggregate(kpl) -> bytes:
    return kpl.wrap(b"\x0a\x05ab")


@pytest.fixture
def mixed_batch(make_raw_record, two_record_aggregate, make_aggregate):
    return [
        make_raw_record(two_record_aggregate, sequence_number=SEQ_1),
        make_raw_record(b"hello", sequence_number=SEQ_2),
        make_raw_record(
            make_aggregate(
                ["x"],
                [{"pk": 0, "data": b"C", "ehk": 0}],
                explicit_hash_keys=["340282366920938463463374607431768211455"],
            ),
            sequence_number=SEQ_3,
        ),
    ]


# --- Bulk Mode ---


def test_expands_aggregate_in_table_order(deaggregator, make_raw_record, two_record_aggregate):
    raw = make_raw_record(two_record_aggregate, sequence_number=SEQ_1)

    records = deaggregator.deaggregate_records([raw])

    assert len(records) == 2
    first, second = records
    assert (first.partition_key, first.sub_sequence_number, first.aggregated) == ("pk1", 0, True)
    assert (first.data, first.sequence_number) == (b"A", SEQ_1)
    assert (second.partition_key, second.sub_sequence_number, second.aggregated) == ("pk2", 1, True)
    assert (second.data, second.sequence_number) == (b"B", SEQ_1)


def test_plain_record_passes_through(deaggregator, make_raw_record):
    raw = make_raw_record(b"hello", explicit_hash_key="42", approximate_arrival_timestamp=3.0)

    (record,) = deaggregator.deaggregate_records([raw])

    assert record == UserRecord(
        partition_key=raw.partition_key,
        explicit_hash_key="42",
        data=b"hello",
        sequence_number=raw.sequence_number,
        sub_sequence_number=0,
        aggregated=False,
        approximate_arrival_timestamp=3.0,
        envelope=raw.envelope,
    )


def test_checksum_mismatch_passes_through_unchanged(deaggregator, make_raw_record, two_record_aggregate):
    payload = two_record_aggregate[:-1] + bytes([two_record_aggregate[-1] ^ 0xFF])

    (record,) = deaggregator.deaggregate_records([make_raw_record(payload)])

    assert record.data == payload
    assert record.aggregated is False


def test_checksum_check_disabled(make_raw_record, kpl):
    payload = MAGIC + kpl.body(["pk"], [{"pk": 0, "data": b"x"}]) + b"\x00" * 16
    deaggregator = Deaggregator(AppConfig(compute_checksums=False))

    (record,) = deaggregator.deaggregate_records([make_raw_record(payload)])

    assert record.aggregated is True
    assert record.data == b"x"


def test_output_length_matches_sub_record_count(deaggregator, make_raw_record, make_aggregate):
    records = [{"pk": i % 3, "data": str(i).encode()} for i in range(50)]
    raw = make_raw_record(make_aggregate(["a", "b", "c"], records))

    output = deaggregator.deaggregate_records([raw])

    assert len(output) == 50
    assert [r.data for r in output] == [str(i).encode() for i in range(50)]
    assert [r.sub_sequence_number for r in output] == list(range(50))


def test_empty_aggregate_yields_nothing(deaggregator, make_raw_record, kpl):
    assert deaggregator.deaggregate_records([make_raw_record(kpl.wrap(b""))]) == []


def test_bulk_concatenates_in_input_order(deaggregator, mixed_batch):
    records = deaggregator.deaggregate_records(mixed_batch)

    assert [(r.sequence_number, r.sub_sequence_number, r.data) for r in records] == [
        (SEQ_1, 0, b"A"),
        (SEQ_1, 1, b"B"),
        (SEQ_2, 0, b"hello"),
        (SEQ_3, 0, b"C"),
    ]
    assert records[3].explicit_hash_key == "340282366920938463463374607431768211455"


def test_bulk_fails_on_index_error_with_context(deaggregator, make_raw_record, bad_index_aggregate):
    batch = [
        make_raw_record(b"fine", sequence_number=SEQ_1),
        make_raw_record(bad_index_aggregate, sequence_number=SEQ_2),
    ]

    with pytest.raises(IndexOutOfRangeError) as exc_info:
        deaggregator.deaggregate_records(batch)

    assert exc_info.value.sequence_number == SEQ_2
    assert exc_info.value.sub_sequence_number == 1


def test_bulk_fails_on_corrupt_body(deaggregator, make_raw_record, corrupt_aggregate):
    with pytest.raises(CorruptAggregateError) as exc_info:
        deaggregator.deaggregate_records([make_raw_record(corrupt_aggregate, sequence_number=SEQ_3)])

    assert exc_info.value.sequence_number == SEQ_3
    assert exc_info.value.to_dict()["context"]["sequence_number"] == SEQ_3


def test_sibling_decodes_on_its_own(deaggregator, make_raw_record, bad_index_aggregate, two_record_aggregate):
    assert len(deaggregator.deaggregate_record(make_raw_record(two_record_aggregate))) == 2
    with pytest.raises(IndexOutOfRangeError):
        deaggregator.deaggregate_record(make_raw_record(bad_index_aggregate))


def test_redecoding_gives_equal_output(deaggregator, mixed_batch):
    assert deaggregator.deaggregate_records(mixed_batch) == deaggregator.deaggregate_records(
        mixed_batch
    )


def test_module_level_bulk(mixed_batch):
    assert len(deaggregate_records(mixed_batch)) == 4


# --- Tolerant Bulk Mode ---


def test_tolerant_collects_failures(deaggregator, make_raw_record, bad_index_aggregate, corrupt_aggregate):
    batch = [
        make_raw_record(bad_index_aggregate, sequence_number=SEQ_1),
        make_raw_record(corrupt_aggregate, sequence_number=SEQ_2),
        make_raw_record(b"plain", sequence_number=SEQ_3),
    ]

    result = deaggregator.deaggregate_records_tolerant(batch)

    assert isinstance(result, DeaggregationResult)
    assert not result.ok
    # The sub-record before the bad index is kept, then the sibling records.
    assert [(r.sequence_number, r.data) for r in result.records] == [
        (SEQ_1, b"ok"),
        (SEQ_3, b"plain"),
    ]
    assert [f.raw_record.sequence_number for f in result.failures] == [SEQ_1, SEQ_2]
    assert isinstance(result.failures[0].error, IndexOutOfRangeError)
    assert isinstance(result.failures[1].error, CorruptAggregateError)


def test_tolerant_ok_for_clean_batch(deaggregator, mixed_batch):
    result = deaggregator.deaggregate_records_tolerant(mixed_batch)
    assert result.ok
    assert result.records == deaggregator.deaggregate_records(mixed_batch)


# --- Lazy Mode ---


def test_lazy_matches_bulk(deaggregator, mixed_batch):
    assert list(deaggregator.iter_deaggregate_records(mixed_batch)) == (
        deaggregator.deaggregate_records(mixed_batch)
    )


def test_lazy_pulls_raw_records_on_demand(deaggregator, make_raw_record, two_record_aggregate):
    pulled = []

    def _source():
        for seq in (SEQ_1, SEQ_2):
            pulled.append(seq)
            yield make_raw_record(two_record_aggregate, sequence_number=seq)

    stream = deaggregator.iter_deaggregate_records(_source())
    assert pulled == []

    next(stream)
    next(stream)
    assert pulled == [SEQ_1]

    assert next(stream).sequence_number == SEQ_2
    assert pulled == [SEQ_1, SEQ_2]


def test_lazy_error_is_scoped_to_raw_record(deaggregator, make_raw_record, bad_index_aggregate, corrupt_aggregate):
    stream = deaggregator.iter_deaggregate_records(
        [
            make_raw_record(bad_index_aggregate, sequence_number=SEQ_1),
            make_raw_record(corrupt_aggregate, sequence_number=SEQ_2),
            make_raw_record(b"plain", sequence_number=SEQ_3),
        ]
    )

    assert next(stream).data == b"ok"
    with pytest.raises(IndexOutOfRangeError) as first_error:
        next(stream)
    assert first_error.value.sequence_number == SEQ_1

    with pytest.raises(CorruptAggregateError) as second_error:
        next(stream)
    assert second_error.value.sequence_number == SEQ_2

    assert next(stream).data == b"plain"
    with pytest.raises(StopIteration):
        next(stream)


def test_lazy_stream_is_not_restartable(deaggregator, mixed_batch):
    stream = deaggregator.iter_deaggregate_records(mixed_batch)
    assert iter(stream) is stream
    assert len(list(stream)) == 4
    assert list(stream) == []
    with pytest.raises(StopIteration):
        next(stream)


def test_records_skips_failures(deaggregator, make_raw_record, corrupt_aggregate, two_record_aggregate):
    errors: list[RecordDecodeError] = []
    stream = deaggregator.iter_deaggregate_records(
        [
            make_raw_record(corrupt_aggregate, sequence_number=SEQ_1),
            make_raw_record(two_record_aggregate, sequence_number=SEQ_2),
        ]
    )

    records = list(stream.records(on_error=errors.append))

    assert [r.data for r in records] == [b"A", b"B"]
    assert [e.sequence_number for e in errors] == [SEQ_1]


def test_module_level_lazy(mixed_batch):
    stream = iter_deaggregate_records(mixed_batch)
    assert isinstance(stream, UserRecordStream)
    assert len(list(stream)) == 4


# --- Callback Mode ---


def test_callbacks_report_each_raw_record(deaggregator, mixed_batch):
    seen: list[UserRecord] = []
    outcomes: list[RecordOutcome] = []

    deaggregator.deaggregate_with_callbacks(mixed_batch, seen.append, outcomes.append)

    assert seen == deaggregator.deaggregate_records(mixed_batch)
    assert [(o.raw_record.sequence_number, o.aggregated, o.emitted) for o in outcomes] == [
        (SEQ_1, True, 2),
        (SEQ_2, False, 1),
        (SEQ_3, True, 1),
    ]
    assert all(o.succeeded and o.failed_record is None for o in outcomes)


def test_callbacks_describe_failing_sub_record(deaggregator, make_raw_record, bad_index_aggregate, envelope):
    seen: list[UserRecord] = []
    outcomes: list[RecordOutcome] = []
    batch = [
        make_raw_record(bad_index_aggregate, sequence_number=SEQ_1),
        make_raw_record(b"after", sequence_number=SEQ_2),
    ]

    deaggregator.deaggregate_with_callbacks(batch, seen.append, outcomes.append)

    assert [r.data for r in seen] == [b"ok", b"after"]
    failed = outcomes[0]
    assert not failed.succeeded
    assert failed.emitted == 1
    assert failed.aggregated is True
    assert isinstance(failed.error, IndexOutOfRangeError)
    assert failed.failed_record.sequence_number == SEQ_1
    assert failed.failed_record.sub_sequence_number == 1
    assert failed.failed_record.envelope == envelope
    assert failed.failed_record.data == bad_index_aggregate
    assert outcomes[1].succeeded


def test_callbacks_corrupt_body_has_no_position(deaggregator, make_raw_record, corrupt_aggregate):
    outcomes: list[RecordOutcome] = []
    deaggregator.deaggregate_with_callbacks(
        [make_raw_record(corrupt_aggregate)], lambda r: None, outcomes.append
    )

    (outcome,) = outcomes
    assert outcome.emitted == 0
    assert isinstance(outcome.error, CorruptAggregateError)
    assert outcome.failed_record.sub_sequence_number is None


def test_callback_exceptions_propagate(deaggregator, make_raw_record):
    def _boom(record):
        raise RuntimeError("downstream failed")

    with pytest.raises(RuntimeError):
        deaggregator.deaggregate_with_callbacks([make_raw_record(b"x")], _boom)


def test_callback_decode_errors_are_not_mistaken_for_corrupt_records(
    deaggregator, make_raw_record
):
    outcomes: list[RecordOutcome] = []

    def _downstream(record):
        raise IndexOutOfRangeError("downstream_table", 1, 0)

    with pytest.raises(IndexOutOfRangeError) as exc_info:
        deaggregator.deaggregate_with_callbacks(
            [make_raw_record(b"plain", sequence_number=SEQ_1)], _downstream, outcomes.append
        )

    assert exc_info.value.context["table"] == "downstream_table"
    assert outcomes == []


def test_callback_decode_errors_propagate_from_aggregates(
    deaggregator, make_raw_record, two_record_aggregate
):
    seen: list[UserRecord] = []

    def _fail_on_second(record):
        if record.sub_sequence_number == 1:
            raise CorruptAggregateError("rejected downstream")
        seen.append(record)

    with pytest.raises(CorruptAggregateError, match="rejected downstream"):
        deaggregator.deaggregate_with_callbacks(
            [make_raw_record(two_record_aggregate, sequence_number=SEQ_1)], _fail_on_second
        )

    assert [r.data for r in seen] == [b"A"]


def test_callbacks_plain_record_is_not_aggregated(deaggregator, make_raw_record):
    outcomes: list[RecordOutcome] = []
    deaggregator.deaggregate_with_callbacks(
        [make_raw_record(b"plain")], lambda r: None, outcomes.append
    )

    (outcome,) = outcomes
    assert outcome.aggregated is False
    assert outcome.emitted == 1
    assert outcome.succeeded


# --- Lambda Record Convenience ---


def test_deaggregate_lambda_records(make_kinesis_event_record, two_record_aggregate):
    event_records = [
        make_kinesis_event_record(two_record_aggregate, sequence_number=SEQ_1),
        make_kinesis_event_record(b"plain", sequence_number=SEQ_2),
    ]

    output = deaggregate_lambda_records(event_records)

    assert len(output) == 3
    first = output[0]
    assert first["eventID"] == event_records[0]["eventID"]
    assert first["eventSourceARN"] == event_records[0]["eventSourceARN"]
    assert first["kinesis"]["partitionKey"] == "pk1"
    assert first["kinesis"]["subSequenceNumber"] == 0
    assert first["kinesis"]["aggregated"] is True
    assert first["kinesis"]["kinesisSchemaVersion"] == "1.0"
    assert base64.b64decode(first["kinesis"]["data"]) == b"A"
    assert output[1]["kinesis"]["subSequenceNumber"] == 1
    assert output[2]["kinesis"]["aggregated"] is False
    assert output[2]["kinesis"]["partitionKey"] == "outer-pk"
    assert base64.b64decode(output[2]["kinesis"]["data"]) == b"plain"
