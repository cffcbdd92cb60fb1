import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes", "on")
_FALSY = ("false", "0", "no", "off")


def _parse_bool(name: str, default: str) -> bool:
    raw = os.getenv(name, default).strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean flag, not '{raw}'")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    Configuration for the deaggregation engine and its Lambda adapter.

    Instances are passed explicitly to ``Deaggregator``; the defaults match
    the values ``load_from_env`` falls back to.
    """

    service_name: str = "kinesis-deaggregator"
    environment: str = "dev"
    log_level: str = "INFO"
    metrics_namespace: str = "KinesisDeaggregator"

    # --- Decoding Behaviour ---
    compute_checksums: bool = True
    fail_on_corrupt_records: bool = False

    @property
    def is_debug(self) -> bool:
        return self.log_level == "DEBUG"

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            service_name = os.getenv("SERVICE_NAME", "kinesis-deaggregator").strip()
            if not service_name:
                raise ValueError("SERVICE_NAME must not be empty.")

            environment = os.getenv("ENVIRONMENT", "dev").strip()
            if not environment:
                raise ValueError("ENVIRONMENT must not be empty.")

            metrics_namespace = os.getenv(
                "METRICS_NAMESPACE", "KinesisDeaggregator"
            ).strip()
            if not metrics_namespace:
                raise ValueError("METRICS_NAMESPACE must not be empty.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            compute_checksums = _parse_bool("COMPUTE_CHECKSUMS", "true")
            fail_on_corrupt_records = _parse_bool("FAIL_ON_CORRUPT_RECORDS", "false")

        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            service_name=service_name,
            environment=environment,
            log_level=log_level,
            metrics_namespace=metrics_namespace,
            compute_checksums=compute_checksums,
            fail_on_corrupt_records=fail_on_corrupt_records,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
