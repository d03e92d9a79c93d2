"""
Integration tests for eventrelay.

The PostgreSQL tests need a real database, provisioned through
testcontainers. They are skipped automatically when testcontainers or
Docker is not available. The SQLite tests only need a temporary directory.

Run integration tests:
    pytest tests/integration/ -v

Run only PostgreSQL tests:
    pytest tests/integration/ -v -m postgres

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
