"""
Shared pytest fixtures for the eventrelay tests.

This module provides:
- Message fixtures (registry, order_placed)
- Time fixtures (clock)
- Store fixtures (memory_stores, sqlite_stores)
- Component fixtures (writer, transport, processor_config)
- OpenTelemetry metrics fixtures (metric_reader, meter_provider)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from eventrelay.config import ProcessorConfig, RetryConfig
from eventrelay.messages.registry import MessageRegistry
from eventrelay.outbox.writer import OutboxWriter
from eventrelay.stores.factory import RelayStores, open_stores, stores_for
from eventrelay.stores.in_memory import InMemoryDatabase
from eventrelay.transport.memory import InMemoryTransport
from tests.fixtures import FakeClock, OrderPlaced, make_registry

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# =============================================================================
# Message and Time Fixtures
# =============================================================================


@pytest.fixture
def registry() -> MessageRegistry:
    """Registry holding the test message models."""
    return make_registry()


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at 2024-01-01 12:00 UTC until advanced."""
    return FakeClock()


@pytest.fixture
def order_placed() -> OrderPlaced:
    return OrderPlaced(order_id=uuid4(), sku="SKU-1", quantity=2, amount=19.9)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def memory_stores() -> RelayStores:
    """In-memory database with its repositories, tracing disabled."""
    return stores_for(InMemoryDatabase(), enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_stores(tmp_path: Path) -> AsyncGenerator[RelayStores, None]:
    """SQLite database file in a temporary directory with the schema applied."""
    stores = await open_stores(f"sqlite:///{tmp_path / 'relay.db'}", enable_tracing=False)
    await stores.initialize()
    yield stores
    await stores.close()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def writer(memory_stores: RelayStores, registry: MessageRegistry, clock: FakeClock) -> OutboxWriter:
    return OutboxWriter(memory_stores.outbox, registry=registry, clock=clock, enable_tracing=False)


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport(enable_tracing=False)


@pytest.fixture
def processor_config() -> ProcessorConfig:
    """
    Fast processor settings for tests.

    Retry delays are 1, 2, 4, 8, 16 seconds when jitter is neutralized
    with ``rng=lambda: 0.5``.
    """
    return ProcessorConfig(
        poll_interval=0.01,
        batch_size=10,
        claim_ttl=30.0,
        publish_timeout=1.0,
        store_retry_delay=0.01,
        shutdown_timeout=2.0,
        retry=RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=300.0),
    )


# =============================================================================
# OpenTelemetry Metrics Fixtures
# =============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    return MeterProvider(metric_readers=[metric_reader])
