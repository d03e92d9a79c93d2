"""
SQL schema for the outbox, inbox and dead-letter tables.

Tables:
    - outbox_messages: Transactional outbox rows and their delivery state
    - inbox_records: Processed-message markers for idempotent consumers
    - dead_letters: Messages that failed permanently or ran out of retries

Supported backends:
    - postgresql
    - sqlite

Usage:
    from eventrelay.stores.schema import get_schema, get_schema_statements

    # SQLite accepts the whole script
    await connection.executescript(get_schema("sqlite"))

    # asyncpg executes one statement at a time
    async with engine.begin() as conn:
        for statement in get_schema_statements("postgresql"):
            await conn.execute(text(statement))
"""

from pathlib import Path
from typing import Literal

BackendName = Literal["postgresql", "sqlite"]

TABLES = ("outbox_messages", "inbox_records", "dead_letters")

_SCHEMAS_DIR = Path(__file__).parent / "schemas"


def list_backends() -> list[str]:
    """Backends a schema is shipped for."""
    return sorted(path.stem for path in _SCHEMAS_DIR.glob("*.sql"))


def get_schema(backend: BackendName = "postgresql") -> str:
    """
    Load the SQL schema for a backend.

    Raises:
        ValueError: If no schema exists for the backend
    """
    path = _SCHEMAS_DIR / f"{backend}.sql"
    if not path.exists():
        raise ValueError(
            f"No schema for backend '{backend}'. Available backends: {list_backends()}"
        )
    return path.read_text()


def get_schema_statements(backend: BackendName = "postgresql") -> list[str]:
    """Split the schema into individual statements, dropping comments."""
    lines = [
        line for line in get_schema(backend).splitlines() if not line.lstrip().startswith("--")
    ]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


__all__ = [
    "BackendName",
    "TABLES",
    "get_schema",
    "get_schema_statements",
    "list_backends",
]
