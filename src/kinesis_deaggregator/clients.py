# src/kinesis_deaggregator/clients.py

"""
Client wrapper for reading raw records from Kinesis Data Streams.

The wrapper provides a clean, abstracted interface over a raw boto3 Kinesis
client: it turns ``GetRecords`` responses into ``RawRecord`` objects ready
for the deaggregation engine and maps botocore failures onto the service's
exception hierarchy.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .core import Deaggregator
from .exceptions import (
    ExpiredIteratorError,
    KinesisAccessDeniedError,
    KinesisError,
    KinesisThrottlingError,
    KinesisTimeoutError,
    StreamNotFoundError,
)
from .schemas import RawRecord, UserRecord

if TYPE_CHECKING:
    from mypy_boto3_kinesis.client import KinesisClient as KinesisClientType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GetRecordsPage:
    records: list[RawRecord]
    next_shard_iterator: str | None
    millis_behind_latest: int | None


class KinesisClient:
    """
    A wrapper for Kinesis read operations.
    """

    def __init__(self, kinesis_client: "KinesisClientType", stream_arn: str | None = None):
        """
        Initializes the KinesisClient.

        Args:
            kinesis_client: A typed boto3 Kinesis client.
            stream_arn: Optional stream ARN, recorded in every raw record's
                envelope as ``eventSourceARN``.
        """
        self._client = kinesis_client
        self._stream_arn = stream_arn

    @classmethod
    def from_boto3(cls, stream_arn: str | None = None, **client_kwargs: Any) -> "KinesisClient":
        """Builds the wrapper over a new boto3 Kinesis client (region, endpoint, config via kwargs)."""
        return cls(boto3.client("kinesis", **client_kwargs), stream_arn=stream_arn)

    def get_records(self, shard_iterator: str, limit: int | None = None) -> GetRecordsPage:
        """
        Fetches one page of records from a shard.
        Raises specific Kinesis exceptions based on the error type.
        """
        params: dict[str, Any] = {"ShardIterator": shard_iterator}
        if limit is not None:
            params["Limit"] = limit
        if self._stream_arn:
            params["StreamARN"] = self._stream_arn

        try:
            response = self._client.get_records(**params)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            context = {
                "aws_error_code": error_code,
                "aws_error_message": error_message,
            }

            # Map boto3 error codes to our specific exception types
            if error_code in [
                "ProvisionedThroughputExceededException",
                "LimitExceededException",
                "ThrottlingException",
            ]:
                raise KinesisThrottlingError("GetRecords", context=context) from e
            elif error_code == "ExpiredIteratorException":
                raise ExpiredIteratorError(context=context) from e
            elif error_code == "ResourceNotFoundException":
                raise StreamNotFoundError("GetRecords", context=context) from e
            elif error_code in [
                "AccessDeniedException",
                "KMSAccessDeniedException",
                "KMSDisabledException",
                "KMSNotFoundException",
            ]:
                raise KinesisAccessDeniedError("GetRecords", context=context) from e
            else:
                raise KinesisError(
                    f"Kinesis client error: {error_message}",
                    error_code="KINESIS_CLIENT_ERROR",
                    context=context,
                ) from e
        except ReadTimeoutError as e:
            raise KinesisTimeoutError(
                "GetRecords",
                error_code="KINESIS_READ_TIMEOUT",
                context={"timeout_error": str(e)},
            ) from e
        except EndpointConnectionError as e:
            raise KinesisTimeoutError(
                "GetRecords",
                error_code="KINESIS_CONNECTION_ERROR",
                context={"connection_error": str(e)},
            ) from e

        envelope: dict[str, Any] = {}
        if self._stream_arn:
            envelope["eventSourceARN"] = self._stream_arn
        records = [
            RawRecord.from_get_records_item(item, **envelope)
            for item in response.get("Records", [])
        ]
        logger.debug(
            "Fetched records from shard",
            extra={
                "record_count": len(records),
                "millis_behind_latest": response.get("MillisBehindLatest"),
            },
        )
        return GetRecordsPage(
            records=records,
            next_shard_iterator=response.get("NextShardIterator"),
            millis_behind_latest=response.get("MillisBehindLatest"),
        )

    def iter_user_records(
        self,
        shard_iterator: str,
        deaggregator: Deaggregator,
        limit: int | None = None,
        max_pages: int | None = None,
    ) -> Iterator[UserRecord]:
        """
        Reads pages from a shard and yields deaggregated user records.

        Stops when the shard is closed, when a page comes back empty while
        caught up with the tip of the stream, or after *max_pages* pages.
        Corrupt raw records raise from the underlying stream.
        """
        pages = 0
        iterator: str | None = shard_iterator
        while iterator is not None:
            page = self.get_records(iterator, limit=limit)
            pages += 1
            yield from deaggregator.iter_deaggregate_records(page.records)

            iterator = page.next_shard_iterator
            if not page.records and page.millis_behind_latest == 0:
                break
            if max_pages is not None and pages >= max_pages:
                break
