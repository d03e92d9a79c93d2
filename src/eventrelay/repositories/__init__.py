"""
Repositories for the outbox, dead-letter and inbox tables.

Every repository has in-memory, SQLite and PostgreSQL implementations.
Their methods take the transaction object of their backend as first
argument; see ``eventrelay.stores``.
"""

from eventrelay.repositories.dlq import (
    DeadLetterFilter,
    DeadLetterRecord,
    DeadLetterRepository,
    InMemoryDeadLetterRepository,
    PostgreSQLDeadLetterRepository,
    SQLiteDeadLetterRepository,
)
from eventrelay.repositories.inbox import (
    InboxRecord,
    InboxRepository,
    InMemoryInboxRepository,
    PostgreSQLInboxRepository,
    SQLiteInboxRepository,
)
from eventrelay.repositories.outbox import (
    InMemoryOutboxRepository,
    MessageState,
    OutboxMessage,
    OutboxRepository,
    OutboxStats,
    PostgreSQLOutboxRepository,
    SQLiteOutboxRepository,
)

__all__ = [
    # Outbox
    "MessageState",
    "OutboxMessage",
    "OutboxStats",
    "OutboxRepository",
    "InMemoryOutboxRepository",
    "SQLiteOutboxRepository",
    "PostgreSQLOutboxRepository",
    # Dead letters
    "DeadLetterRecord",
    "DeadLetterFilter",
    "DeadLetterRepository",
    "InMemoryDeadLetterRepository",
    "SQLiteDeadLetterRepository",
    "PostgreSQLDeadLetterRepository",
    # Inbox
    "InboxRecord",
    "InboxRepository",
    "InMemoryInboxRepository",
    "SQLiteInboxRepository",
    "PostgreSQLInboxRepository",
]
