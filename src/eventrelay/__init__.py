"""
eventrelay - Transactional outbox and idempotent inbox for Python services.

This library provides:
- Outbox writer appending messages inside business transactions
- Outbox processor relaying messages with retry, backoff and dead-lettering
- Dead-letter store with replay and backlog inspection
- Inbox-backed idempotent consumer dispatch with per-key ordering
- In-memory, SQLite (aiosqlite) and PostgreSQL (SQLAlchemy async) backends
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("eventrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Administration
from eventrelay.admin import BacklogReport, OutboxAdmin, ReplayResult

# Configuration
from eventrelay.config import (
    DispatcherConfig,
    HousekeepingConfig,
    ProcessorConfig,
    RetryConfig,
)

# Consumer side
from eventrelay.consumer import (
    DispatchOutcome,
    HandlerContext,
    IdempotentDispatcher,
    MessageConsumer,
    OrderedWorkerPool,
)
from eventrelay.correlation import CorrelationContext

# Exceptions
from eventrelay.exceptions import (
    ClaimLostError,
    ConcurrentClaimConflict,
    ConfigurationError,
    DeadLetterNotFoundError,
    DeserializationError,
    DuplicateInboxError,
    EventRelayError,
    PermanentError,
    PublishError,
    SchemaViolationError,
    SerializationError,
    StoreUnavailableError,
    TransientPublishError,
    UnknownMessageTypeError,
)
from eventrelay.housekeeping import HousekeepingJob, HousekeepingResult

# Messages
from eventrelay.messages import (
    MessageRegistry,
    ReceivedMessage,
    default_registry,
    register_message,
)

# Observability
from eventrelay.observability import RelayMetrics

# Producer side
from eventrelay.outbox import (
    ClaimCoordinator,
    CycleResult,
    OutboxProcessor,
    OutboxWriter,
    RetryDecision,
    RetryScheduler,
    calculate_backoff,
)

# Repositories
from eventrelay.repositories import (
    DeadLetterFilter,
    DeadLetterRecord,
    InboxRecord,
    MessageState,
    OutboxMessage,
    OutboxStats,
)

# Stores
from eventrelay.stores import (
    InMemoryDatabase,
    PostgreSQLDatabase,
    SQLiteDatabase,
    TransactionManager,
    get_schema,
)
from eventrelay.stores.factory import RelayStores, open_stores, stores_for

# Transport
from eventrelay.transport import Ack, InMemoryTransport, Transport

__all__ = [
    "__version__",
    # Administration
    "BacklogReport",
    "OutboxAdmin",
    "ReplayResult",
    # Configuration
    "DispatcherConfig",
    "HousekeepingConfig",
    "ProcessorConfig",
    "RetryConfig",
    # Consumer side
    "DispatchOutcome",
    "HandlerContext",
    "IdempotentDispatcher",
    "MessageConsumer",
    "OrderedWorkerPool",
    "CorrelationContext",
    # Exceptions
    "ClaimLostError",
    "ConcurrentClaimConflict",
    "ConfigurationError",
    "DeadLetterNotFoundError",
    "DeserializationError",
    "DuplicateInboxError",
    "EventRelayError",
    "PermanentError",
    "PublishError",
    "SchemaViolationError",
    "SerializationError",
    "StoreUnavailableError",
    "TransientPublishError",
    "UnknownMessageTypeError",
    # Housekeeping
    "HousekeepingJob",
    "HousekeepingResult",
    # Messages
    "MessageRegistry",
    "ReceivedMessage",
    "default_registry",
    "register_message",
    # Observability
    "RelayMetrics",
    # Producer side
    "ClaimCoordinator",
    "CycleResult",
    "OutboxProcessor",
    "OutboxWriter",
    "RetryDecision",
    "RetryScheduler",
    "calculate_backoff",
    # Repositories
    "DeadLetterFilter",
    "DeadLetterRecord",
    "InboxRecord",
    "MessageState",
    "OutboxMessage",
    "OutboxStats",
    # Stores
    "InMemoryDatabase",
    "PostgreSQLDatabase",
    "RelayStores",
    "SQLiteDatabase",
    "TransactionManager",
    "get_schema",
    "open_stores",
    "stores_for",
    # Transport
    "Ack",
    "InMemoryTransport",
    "Transport",
]
