"""
The Lambda Adapter for the Kinesis Deaggregator.

This module is the entry point for an AWS Lambda function attached to a
Kinesis event source mapping. It is responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer and
    Metrics).
2.  Parsing and validating incoming Kinesis event records.
3.  Deaggregating each record into the user records the KPL producer
    originally submitted, and handing every user record to a processor.
4.  Implementing partial batch failure handling keyed by sequence number.

``make_handler`` builds a handler around any processor; ``handler`` is the
default one, which logs each user record.
"""

from collections import Counter
from typing import Any, Callable, cast

import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch.types import (
    PartialItemFailureResponse,
    PartialItemFailures,
)
from aws_lambda_powertools.utilities.typing import LambdaContext

from .config import get_config
from .core import Deaggregator, RecordOutcome
from .exceptions import DeaggregatorError, get_error_context, is_retryable_error
from .schemas import KinesisEventRecord, RawRecord, UserRecord

RecordProcessor = Callable[[UserRecord], None]

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(namespace=CONFIG.metrics_namespace, service=CONFIG.service_name)

deaggregator = Deaggregator(CONFIG)


def build_partial_failure_response(
    failed_sequence_numbers: list[str],
) -> PartialItemFailureResponse:
    """
    Given the sequence numbers of failed Kinesis records, return the
    structure that the Lambda partial batch response API expects.
    """
    failures = [
        cast(PartialItemFailures, {"itemIdentifier": seq})
        for seq in dict.fromkeys(failed_sequence_numbers)
    ]
    return cast(PartialItemFailureResponse, {"batchItemFailures": failures})


def process_user_record(user_record: UserRecord) -> None:
    """Default processor: logs a summary of each user record."""
    logger.info(
        "Received user record",
        extra={
            "partition_key": user_record.partition_key,
            "explicit_hash_key": user_record.explicit_hash_key,
            "sequence_number": user_record.sequence_number,
            "sub_sequence_number": user_record.sub_sequence_number,
            "aggregated": user_record.aggregated,
            "data_size": len(user_record.data),
        },
    )


def _parse_event_records(
    event_records: list[dict[str, Any]], counters: Counter
) -> tuple[list[RawRecord], list[str]]:
    """Validates event records; returns raw records and the sequence numbers that failed."""
    raw_records: list[RawRecord] = []
    failed: list[str] = []
    for record in event_records:
        try:
            raw_records.append(KinesisEventRecord.model_validate(record).to_raw_record())
        except pydantic.ValidationError as e:
            counters["InvalidKinesisRecords"] += 1
            kinesis = record.get("kinesis") if isinstance(record, dict) else None
            sequence_number = (
                kinesis.get("sequenceNumber") if isinstance(kinesis, dict) else None
            )
            logger.warning(
                "Invalid Kinesis record failed validation.",
                extra={
                    "sequence_number": sequence_number,
                    "validation_errors": e.errors(include_url=False),
                },
            )
            if sequence_number:
                failed.append(sequence_number)
    return raw_records, failed


def _process_raw_records(
    raw_records: list[RawRecord], processor: RecordProcessor, counters: Counter
) -> list[str]:
    """Deaggregates and processes each raw record; returns the sequence numbers to retry."""
    failed: list[str] = []

    def _on_record_complete(outcome: RecordOutcome) -> None:
        counters["UserRecords"] += outcome.emitted
        if outcome.aggregated:
            counters["AggregatedRecords"] += 1
        if outcome.error is not None:
            counters["CorruptRecords"] += 1
            if CONFIG.fail_on_corrupt_records:
                failed.append(outcome.raw_record.sequence_number)

    for raw in raw_records:
        try:
            deaggregator.deaggregate_with_callbacks([raw], processor, _on_record_complete)
        except DeaggregatorError as e:
            retryable = is_retryable_error(e)
            counters[
                "RetryableProcessingErrors" if retryable else "NonRetryableProcessingErrors"
            ] += 1
            log_level = logger.warning if retryable else logger.error
            log_level(
                f"Application error while processing record: {e}",
                extra={"sequence_number": raw.sequence_number, "error": get_error_context(e)},
            )
            if retryable:
                failed.append(raw.sequence_number)
        except Exception as e:
            counters["UnexpectedRecordErrors"] += 1
            logger.exception(
                "Unexpected error processing Kinesis record.",
                extra={
                    "sequence_number": raw.sequence_number,
                    "error_type": type(e).__name__,
                },
            )
            failed.append(raw.sequence_number)
    return failed


def make_handler(
    processor: RecordProcessor,
) -> Callable[[dict, LambdaContext], PartialItemFailureResponse]:
    """Builds a Lambda handler that feeds every user record to *processor*."""

    @logger.inject_lambda_context()
    @tracer.capture_lambda_handler
    @metrics.log_metrics(capture_cold_start_metric=True)
    def _handler(event: dict, context: LambdaContext) -> PartialItemFailureResponse:
        metrics.add_dimension("environment", CONFIG.environment)

        event_records: list[dict] = event.get("Records", [])
        if not event_records:
            logger.warning("Event did not contain any Kinesis records. Exiting gracefully.")
            return {"batchItemFailures": []}

        logger.info(
            "Starting Kinesis batch processing",
            extra={
                "kinesis_records": len(event_records),
                "request_id": context.aws_request_id,
            },
        )

        counters: Counter = Counter()
        raw_records, failed = _parse_event_records(event_records, counters)
        counters["RawRecords"] += len(raw_records)
        failed.extend(_process_raw_records(raw_records, processor, counters))

        for name, value in counters.items():
            metrics.add_metric(name=name, unit=MetricUnit.Count, value=value)

        logger.info(
            "Kinesis batch processing completed",
            extra={**counters, "failed_records": len(failed)},
        )
        return build_partial_failure_response(failed)

    return _handler


handler = make_handler(process_user_record)
