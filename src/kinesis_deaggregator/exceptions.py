# src/kinesis_deaggregator/exceptions.py

"""
Shared custom exceptions for the Kinesis Deaggregator.

Centralizing exception definitions in a separate module prevents circular
import errors between the reader, decoder, engine and adapter modules that
need to raise or catch them.

Exception Hierarchy:
- DeaggregatorError (base)
  - RetryableError (can be retried)
    - KinesisThrottlingError
    - KinesisTimeoutError
  - NonRetryableError (should not be retried)
    - BinaryFormatError
      - TruncatedInputError
      - MalformedVarintError
    - RecordDecodeError (scoped to one raw record)
      - CorruptAggregateError
      - IndexOutOfRangeError
    - ValidationError
      - InvalidKinesisEventError
    - KinesisAccessDeniedError
    - StreamNotFoundError
    - ExpiredIteratorError
    - ConfigurationError
"""

from typing import Any, Dict, Optional


class DeaggregatorError(Exception):
    """Base exception for all Kinesis Deaggregator errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(DeaggregatorError):
    """Base class for errors that can be retried."""
    pass


class NonRetryableError(DeaggregatorError):
    """Base class for errors that should not be retried."""
    pass


# === Binary Framing Errors ===

class BinaryFormatError(NonRetryableError):
    """Base class for structural errors raised by the binary reader."""
    pass


class TruncatedInputError(BinaryFormatError):
    """Raised when fewer bytes remain in the buffer than a read requires."""

    def __init__(self, requested: int, remaining: int, offset: int, **kwargs):
        message = (
            f"Truncated input: requested {requested} bytes at offset {offset}, "
            f"only {remaining} remaining"
        )
        context = {"requested": requested, "remaining": remaining, "offset": offset}
        super().__init__(message, error_code="TRUNCATED_INPUT", context=context, **kwargs)


class MalformedVarintError(BinaryFormatError):
    """Raised when a varint is unterminated or runs past the end of the buffer."""

    def __init__(self, offset: int, reason: str, **kwargs):
        message = f"Malformed varint at offset {offset}: {reason}"
        context = {"offset": offset, "reason": reason}
        super().__init__(message, error_code="MALFORMED_VARINT", context=context, **kwargs)


# === Record Decode Errors ===

class RecordDecodeError(NonRetryableError):
    """
    Base class for errors scoped to a single raw record.

    The traversal engine attaches the offending record's sequence number (and,
    where known, the failing sub-record position) before the error reaches
    the caller.
    """

    @property
    def sequence_number(self) -> Optional[str]:
        return self.context.get("sequence_number")

    @property
    def sub_sequence_number(self) -> Optional[int]:
        return self.context.get("sub_sequence_number")

    def attach(
        self, sequence_number: str, sub_sequence_number: Optional[int] = None
    ) -> "RecordDecodeError":
        """Records where in the input this error happened; returns self for `raise`."""
        self.context["sequence_number"] = sequence_number
        if sub_sequence_number is not None:
            self.context["sub_sequence_number"] = sub_sequence_number
        return self


class CorruptAggregateError(RecordDecodeError):
    """Raised when a checksum-valid aggregate has a malformed body."""

    def __init__(self, reason: str, **kwargs):
        message = f"Corrupt aggregate record: {reason}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context["reason"] = reason
        super().__init__(message, error_code="CORRUPT_AGGREGATE", context=context, **kwargs)


class IndexOutOfRangeError(RecordDecodeError):
    """Raised when a sub-record references a key table entry that does not exist."""

    def __init__(self, table: str, index: int, table_size: int, **kwargs):
        message = f"{table} index {index} out of range for table of size {table_size}"
        context = {"table": table, "index": index, "table_size": table_size}
        super().__init__(message, error_code="INDEX_OUT_OF_RANGE", context=context, **kwargs)


# === Validation Errors ===

class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class InvalidKinesisEventError(ValidationError):
    """Raised when a Kinesis event record does not have the expected structure."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_KINESIS_EVENT"
        super().__init__(message, **kwargs)


# === Kinesis Service Errors ===

class KinesisError(DeaggregatorError):
    """Base class for Kinesis API errors."""
    pass


class KinesisThrottlingError(KinesisError, RetryableError):
    """Raised when Kinesis read throughput is exceeded."""

    def __init__(self, operation: str, **kwargs):
        message = f"Kinesis operation throttled: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context["operation"] = operation
        super().__init__(message, error_code="KINESIS_THROTTLING", context=context, **kwargs)


class KinesisTimeoutError(KinesisError, RetryableError):
    """Raised when a Kinesis call times out or cannot reach the endpoint."""

    def __init__(self, operation: str, **kwargs):
        message = f"Kinesis operation timed out: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context["operation"] = operation
        kwargs.setdefault("error_code", "KINESIS_TIMEOUT")
        super().__init__(message, context=context, **kwargs)


class KinesisAccessDeniedError(KinesisError, NonRetryableError):
    """Raised when the caller may not read the stream or decrypt its records."""

    def __init__(self, operation: str, **kwargs):
        message = f"Access denied for Kinesis operation: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context["operation"] = operation
        super().__init__(message, error_code="KINESIS_ACCESS_DENIED", context=context, **kwargs)


class StreamNotFoundError(KinesisError, NonRetryableError):
    """Raised when the stream or shard behind an iterator does not exist."""

    def __init__(self, operation: str, **kwargs):
        message = f"Kinesis stream not found during: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context["operation"] = operation
        super().__init__(message, error_code="STREAM_NOT_FOUND", context=context, **kwargs)


class ExpiredIteratorError(KinesisError, NonRetryableError):
    """Raised when a shard iterator has expired and must be re-acquired."""

    def __init__(self, **kwargs):
        super().__init__(
            "Shard iterator has expired", error_code="EXPIRED_ITERATOR", **kwargs
        )


# === Configuration Errors ===

class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===

def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, DeaggregatorError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
