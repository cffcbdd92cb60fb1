# In src/kinesis_deaggregator/schemas.py

import base64
import binascii
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, NotRequired, TypedDict

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .exceptions import InvalidKinesisEventError

# Envelope keys that live inside the "kinesis" block of a Lambda event record
# rather than at its top level.
_KINESIS_BLOCK_ENVELOPE_KEYS = ("kinesisSchemaVersion",)

# --- Static Type Hinting (for mypy and IDEs) ---


class KinesisDataDict(TypedDict):
    kinesisSchemaVersion: NotRequired[str]
    partitionKey: str
    sequenceNumber: str
    data: str
    approximateArrivalTimestamp: NotRequired[float]
    explicitHashKey: NotRequired[str]
    subSequenceNumber: NotRequired[int]
    aggregated: NotRequired[bool]


class KinesisEventRecordDict(TypedDict, total=False):
    """
    A TypedDict representing the structure of a single Kinesis record as
    delivered to a Lambda function by an event source mapping.
    """

    kinesis: KinesisDataDict
    eventSource: str
    eventVersion: str
    eventID: str
    eventName: str
    invokeIdentityArn: str
    awsRegion: str
    eventSourceARN: str


# --- Core Boundary Records ---


class _EnvelopeRecord(BaseModel):
    """Frozen record whose ``envelope`` is exposed as a read-only mapping."""

    model_config = ConfigDict(frozen=True)

    envelope: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("envelope", mode="after")
    @classmethod
    def freeze_envelope(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @field_serializer("envelope")
    def serialize_envelope(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)


class RawRecord(_EnvelopeRecord):
    """
    One stream record as read from Kinesis, before deaggregation.

    ``envelope`` holds pass-through metadata (event id, source ARN, schema
    version, region, ...) that is copied unchanged onto every derived
    ``UserRecord``.
    """

    data: bytes
    partition_key: str
    explicit_hash_key: str | None = None
    sequence_number: str
    sub_sequence_number: int = 0
    approximate_arrival_timestamp: float | None = None

    @classmethod
    def from_lambda_record(cls, record: dict[str, Any]) -> "RawRecord":
        """
        Parses and validates a Lambda Kinesis event record.

        Raises:
            InvalidKinesisEventError: If the record does not have the Lambda
                Kinesis event shape.
        """
        try:
            return KinesisEventRecord.model_validate(record).to_raw_record()
        except pydantic.ValidationError as e:
            kinesis = record.get("kinesis") if isinstance(record, dict) else None
            if not isinstance(kinesis, dict):
                kinesis = {}
            raise InvalidKinesisEventError(
                "Kinesis event record failed validation",
                context={
                    "sequence_number": kinesis.get("sequenceNumber"),
                    "validation_errors": e.errors(include_url=False),
                },
            ) from e

    @classmethod
    def from_get_records_item(
        cls, item: dict[str, Any], **envelope: Any
    ) -> "RawRecord":
        """
        Maps one entry of a ``GetRecords`` response. The SDK has already
        decoded ``Data`` to bytes and ``ApproximateArrivalTimestamp`` to a
        datetime.
        """
        arrival = item.get("ApproximateArrivalTimestamp")
        if isinstance(arrival, datetime):
            arrival = arrival.timestamp()
        if item.get("EncryptionType"):
            envelope.setdefault("encryptionType", item["EncryptionType"])
        return cls(
            data=item["Data"],
            partition_key=item["PartitionKey"],
            explicit_hash_key=item.get("ExplicitHashKey"),
            sequence_number=item["SequenceNumber"],
            approximate_arrival_timestamp=arrival,
            envelope=envelope,
        )


class UserRecord(_EnvelopeRecord):
    """One logical record as originally submitted by a producer."""

    partition_key: str
    explicit_hash_key: str | None = None
    data: bytes
    sequence_number: str
    sub_sequence_number: int = 0
    aggregated: bool = False
    approximate_arrival_timestamp: float | None = None

    def to_lambda_record(self) -> KinesisEventRecordDict:
        """Renders the record in the shape of a Lambda Kinesis event record."""
        top_level = dict(self.envelope)
        kinesis: dict[str, Any] = {
            key: top_level.pop(key)
            for key in _KINESIS_BLOCK_ENVELOPE_KEYS
            if key in top_level
        }
        kinesis.update(
            {
                "partitionKey": self.partition_key,
                "sequenceNumber": self.sequence_number,
                "subSequenceNumber": self.sub_sequence_number,
                "aggregated": self.aggregated,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        )
        if self.explicit_hash_key is not None:
            kinesis["explicitHashKey"] = self.explicit_hash_key
        if self.approximate_arrival_timestamp is not None:
            kinesis["approximateArrivalTimestamp"] = self.approximate_arrival_timestamp
        top_level["kinesis"] = kinesis
        return top_level  # type: ignore[return-value]


# --- Runtime Validation of Lambda Events (using Pydantic) ---


class KinesisDataModel(BaseModel):
    kinesis_schema_version: str | None = Field(None, alias="kinesisSchemaVersion")
    partition_key: str = Field(..., alias="partitionKey")
    sequence_number: str = Field(..., min_length=1, alias="sequenceNumber")
    data: bytes
    approximate_arrival_timestamp: float | None = Field(
        None, alias="approximateArrivalTimestamp"
    )
    explicit_hash_key: str | None = Field(None, alias="explicitHashKey")

    @field_validator("data", mode="before")
    @classmethod
    def decode_base64_data(cls, value: Any) -> bytes:
        if not isinstance(value, str):
            raise ValueError("data must be a base64-encoded string")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"data is not valid base64: {e}")


class KinesisEventRecord(BaseModel):
    """
    Pydantic model for runtime parsing and validation of a Lambda Kinesis
    event record. Unknown top-level keys are kept and travel in the envelope.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    kinesis: KinesisDataModel
    event_source: str | None = Field(None, alias="eventSource")
    event_version: str | None = Field(None, alias="eventVersion")
    event_id: str | None = Field(None, alias="eventID")
    event_name: str | None = Field(None, alias="eventName")
    invoke_identity_arn: str | None = Field(None, alias="invokeIdentityArn")
    aws_region: str | None = Field(None, alias="awsRegion")
    event_source_arn: str | None = Field(None, alias="eventSourceARN")

    def to_raw_record(self) -> RawRecord:
        envelope = self.model_dump(by_alias=True, exclude={"kinesis"}, exclude_none=True)
        if self.kinesis.kinesis_schema_version is not None:
            envelope["kinesisSchemaVersion"] = self.kinesis.kinesis_schema_version
        return RawRecord(
            data=self.kinesis.data,
            partition_key=self.kinesis.partition_key,
            explicit_hash_key=self.kinesis.explicit_hash_key,
            sequence_number=self.kinesis.sequence_number,
            approximate_arrival_timestamp=self.kinesis.approximate_arrival_timestamp,
            envelope=envelope,
        )
