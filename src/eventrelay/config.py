"""
Configuration for the outbox relay components.

Every configuration object is a frozen dataclass validated on creation.
``from_env`` builds one from environment variables so a deployment can
tune the relay without code changes.

Example:
    >>> from eventrelay.config import ProcessorConfig
    >>>
    >>> config = ProcessorConfig(poll_interval=0.5, batch_size=50)
    >>> config = ProcessorConfig.from_env()  # EVENTRELAY_POLL_INTERVAL, ...

Environment variables (prefix ``EVENTRELAY_``):
    MAX_ATTEMPTS, RETRY_INITIAL_DELAY, RETRY_MAX_DELAY, RETRY_JITTER,
    POLL_INTERVAL, BATCH_SIZE, CLAIM_TTL, PUBLISH_TIMEOUT, STORE_RETRY_DELAY,
    SHUTDOWN_TIMEOUT, BACKLOG_REFRESH_INTERVAL,
    PUBLISHED_RETENTION, INBOX_RETENTION, HOUSEKEEPING_INTERVAL,
    MAX_CONCURRENCY, MAX_REDELIVERIES
"""

import os
from dataclasses import dataclass, field
from typing import Any

from eventrelay.exceptions import ConfigurationError

DEFAULT_ENV_PREFIX = "EVENTRELAY_"


def _env(prefix: str, name: str, cast: type, default: Any) -> Any:
    raw = os.environ.get(f"{prefix}{name}")
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {prefix}{name}: {raw!r}") from e


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry and backoff settings of the outbox processor.

    The delay before retry ``n`` is
    ``min(max_delay, initial_delay * exponential_base ** (n - 1))``
    scaled by a random factor in ``[1 - jitter, 1 + jitter]``.

    Attributes:
        max_attempts: Retries scheduled before a message is dead-lettered
        initial_delay: Base delay in seconds
        max_delay: Cap applied before jitter, in seconds
        exponential_base: Growth factor of the delay
        jitter: Relative spread of the random factor (0.25 = +/-25%)
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 300.0
    exponential_base: float = 2.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 0:
            raise ConfigurationError(
                f"max_attempts must be >= 0, got {self.max_attempts}. "
                "Use 0 to dead-letter on the first failure."
            )
        if self.initial_delay <= 0:
            raise ConfigurationError(f"initial_delay must be positive, got {self.initial_delay}.")
        if self.max_delay < self.initial_delay:
            raise ConfigurationError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )
        if self.exponential_base <= 1.0:
            raise ConfigurationError(
                f"exponential_base must be > 1.0, got {self.exponential_base}."
            )
        if not 0.0 <= self.jitter < 1.0:
            raise ConfigurationError(f"jitter must be in [0.0, 1.0), got {self.jitter}.")

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> "RetryConfig":
        return cls(
            max_attempts=_env(prefix, "MAX_ATTEMPTS", int, 5),
            initial_delay=_env(prefix, "RETRY_INITIAL_DELAY", float, 1.0),
            max_delay=_env(prefix, "RETRY_MAX_DELAY", float, 300.0),
            jitter=_env(prefix, "RETRY_JITTER", float, 0.25),
        )


@dataclass(frozen=True)
class ProcessorConfig:
    """
    Configuration for the outbox processor loop.

    Attributes:
        poll_interval: Seconds between cycles when no wake-up arrives
        batch_size: Maximum messages claimed per cycle
        claim_ttl: Seconds after which an unfinished claim may be reclaimed
        publish_timeout: Upper bound for a single transport publish
        store_retry_delay: Pause after a cycle aborted by a store outage
        shutdown_timeout: Time allowed for the in-flight publish at stop()
        backlog_refresh_interval: Seconds between backlog gauge refreshes
        retry: Retry and backoff settings
    """

    poll_interval: float = 1.0
    batch_size: int = 100
    claim_ttl: float = 30.0
    publish_timeout: float = 10.0
    store_retry_delay: float = 5.0
    shutdown_timeout: float = 30.0
    backlog_refresh_interval: float = 15.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.poll_interval <= 0:
            raise ConfigurationError(
                f"poll_interval must be positive, got {self.poll_interval}. "
                "Use a value like 1.0 (default) seconds."
            )
        if self.batch_size < 1:
            raise ConfigurationError(
                f"batch_size must be positive, got {self.batch_size}. "
                "Use a value like 100 (default)."
            )
        if self.publish_timeout <= 0:
            raise ConfigurationError(
                f"publish_timeout must be positive, got {self.publish_timeout}."
            )
        if self.claim_ttl <= self.publish_timeout:
            raise ConfigurationError(
                f"claim_ttl ({self.claim_ttl}) must be greater than "
                f"publish_timeout ({self.publish_timeout}) so a claimed batch can publish "
                "at least one message."
            )
        if self.store_retry_delay <= 0:
            raise ConfigurationError(
                f"store_retry_delay must be positive, got {self.store_retry_delay}."
            )
        if self.shutdown_timeout <= 0:
            raise ConfigurationError(
                f"shutdown_timeout must be positive, got {self.shutdown_timeout}."
            )
        if self.backlog_refresh_interval <= 0:
            raise ConfigurationError(
                f"backlog_refresh_interval must be positive, got {self.backlog_refresh_interval}."
            )

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> "ProcessorConfig":
        return cls(
            poll_interval=_env(prefix, "POLL_INTERVAL", float, 1.0),
            batch_size=_env(prefix, "BATCH_SIZE", int, 100),
            claim_ttl=_env(prefix, "CLAIM_TTL", float, 30.0),
            publish_timeout=_env(prefix, "PUBLISH_TIMEOUT", float, 10.0),
            store_retry_delay=_env(prefix, "STORE_RETRY_DELAY", float, 5.0),
            shutdown_timeout=_env(prefix, "SHUTDOWN_TIMEOUT", float, 30.0),
            backlog_refresh_interval=_env(prefix, "BACKLOG_REFRESH_INTERVAL", float, 15.0),
            retry=RetryConfig.from_env(prefix),
        )


@dataclass(frozen=True)
class HousekeepingConfig:
    """
    Retention settings for the cleanup job.

    Attributes:
        published_retention: Seconds a published outbox row is kept
        inbox_retention: Seconds an inbox record is kept; must exceed the
            longest redelivery window of the transport
        interval: Seconds between cleanup runs
    """

    published_retention: float = 7 * 24 * 3600.0
    inbox_retention: float = 14 * 24 * 3600.0
    interval: float = 3600.0

    def __post_init__(self) -> None:
        for name in ("published_retention", "inbox_retention", "interval"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}.")

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> "HousekeepingConfig":
        return cls(
            published_retention=_env(prefix, "PUBLISHED_RETENTION", float, 7 * 24 * 3600.0),
            inbox_retention=_env(prefix, "INBOX_RETENTION", float, 14 * 24 * 3600.0),
            interval=_env(prefix, "HOUSEKEEPING_INTERVAL", float, 3600.0),
        )


@dataclass(frozen=True)
class DispatcherConfig:
    """
    Configuration for consumer-side dispatch.

    Attributes:
        max_concurrency: Messages handled in parallel across ordering keys
        max_redeliveries: Deliveries the in-memory transport attempts before
            giving up on a message
    """

    max_concurrency: int = 10
    max_redeliveries: int = 10

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigurationError(
                f"max_concurrency must be positive, got {self.max_concurrency}."
            )
        if self.max_redeliveries < 0:
            raise ConfigurationError(
                f"max_redeliveries must be >= 0, got {self.max_redeliveries}."
            )

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> "DispatcherConfig":
        return cls(
            max_concurrency=_env(prefix, "MAX_CONCURRENCY", int, 10),
            max_redeliveries=_env(prefix, "MAX_REDELIVERIES", int, 10),
        )


__all__ = [
    "DEFAULT_ENV_PREFIX",
    "RetryConfig",
    "ProcessorConfig",
    "HousekeepingConfig",
    "DispatcherConfig",
]
