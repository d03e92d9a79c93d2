"""
Outbox processor: relays claimed outbox messages to the transport.

Per message: ``pending -> claimed -> published``, or ``claimed -> pending``
for a retry, or ``claimed -> dead_lettered``. Each transition is one
transaction conditioned on this instance still owning the claim; a lost
claim is logged and skipped.

Messages of a batch are published one after another under one claim
expiry. A publish only starts while at least ``publish_timeout`` of the
claim remains; otherwise the rest of the batch is released to Pending, so
no publish can run past the claim and overlap another instance's claim.

A crash between a successful publish and ``mark_published`` leaves the
claim to expire, after which the message is published again. Consumers
absorb the duplicate through their inbox.

Example:
    >>> processor = OutboxProcessor(
    ...     stores.database,
    ...     stores.outbox,
    ...     stores.dead_letters,
    ...     transport,
    ...     registry=registry,
    ...     config=ProcessorConfig.from_env(),
    ... )
    >>> await processor.start()
    >>> ...
    >>> await processor.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from eventrelay.clock import Clock, utc_now
from eventrelay.config import ProcessorConfig
from eventrelay.exceptions import ClaimLostError, StoreUnavailableError
from eventrelay.messages.envelope import build_metadata
from eventrelay.messages.registry import MessageRegistry, default_registry
from eventrelay.observability import RelayMetrics, SpanKindEnum, Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_ATTEMPT,
    ATTR_CLAIM_OWNER,
    ATTR_CORRELATION_ID,
    ATTR_ERROR_TYPE,
    ATTR_MESSAGE_COUNT,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
)
from eventrelay.outbox.claims import ClaimCoordinator
from eventrelay.outbox.retry import ErrorClassifier, RetryDecision, RetryScheduler
from eventrelay.repositories.dlq import DeadLetterRecord, DeadLetterRepository
from eventrelay.repositories.outbox import OutboxMessage, OutboxRepository
from eventrelay.stores.interface import TransactionManager
from eventrelay.transport.interface import Transport

logger = logging.getLogger(__name__)


def default_instance_id() -> str:
    """Identifier unique to this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass(frozen=True)
class CycleResult:
    """
    Outcome of one processing cycle.

    Attributes:
        claimed: Messages claimed at the start of the cycle
        published: Messages published and marked Published
        retried: Messages rescheduled for a later attempt
        dead_lettered: Messages moved to the dead-letter store
        released: Claimed messages returned to Pending at shutdown or when too
            little of the claim was left to start another publish
        lost: Messages whose claim was taken over before completion
        duration_ms: Wall time of the cycle
    """

    claimed: int = 0
    published: int = 0
    retried: int = 0
    dead_lettered: int = 0
    released: int = 0
    lost: int = 0
    duration_ms: float = 0.0


class _Outcome:
    PUBLISHED = "published"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    LOST = "lost"


class OutboxProcessor:
    """
    Polls the outbox and publishes due messages.

    Args:
        database: Transaction manager of the outbox backend
        outbox: Outbox repository of the same backend
        dead_letters: Dead-letter repository of the same backend
        transport: Transport messages are published to
        registry: Registry used to check that payloads decode
        config: Processor configuration
        classifier: Retryable-error predicate; defaults to
            ``default_error_classifier``
        metrics: Relay metrics; a no-op instance is created if omitted
        clock: Time source
        instance_id: Claim owner name of this instance
        rng: Random source for backoff jitter
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        database: TransactionManager,
        outbox: OutboxRepository,
        dead_letters: DeadLetterRepository,
        transport: Transport,
        *,
        registry: MessageRegistry | None = None,
        config: ProcessorConfig | None = None,
        classifier: ErrorClassifier | None = None,
        metrics: RelayMetrics | None = None,
        clock: Clock | None = None,
        instance_id: str | None = None,
        rng: Callable[[], float] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._outbox = outbox
        self._dead_letters = dead_letters
        self._transport = transport
        self._registry = registry or default_registry
        self._config = config or ProcessorConfig()
        self._metrics = metrics or RelayMetrics(enable_metrics=False)
        self._clock = clock or utc_now
        self._instance_id = instance_id or default_instance_id()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._scheduler = RetryScheduler(
            self._config.retry,
            classifier=classifier,
            rng=rng or random.random,
        )
        self._claims = ClaimCoordinator(
            database, outbox, self._instance_id, self._config.claim_ttl
        )

        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task[None] | None = None
        self._last_backlog_refresh: float | None = None
        self._totals = {
            "cycles": 0,
            "failed_cycles": 0,
            "published": 0,
            "retried": 0,
            "dead_lettered": 0,
            "released": 0,
            "lost": 0,
        }

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def metrics(self) -> RelayMetrics:
        return self._metrics

    def get_stats(self) -> dict[str, int]:
        """Totals accumulated since this processor was created."""
        return dict(self._totals)

    # -------------------------------------------------------------------------
    # Single cycle
    # -------------------------------------------------------------------------

    async def run_once(self) -> CycleResult:
        """
        Claim one batch and process it.

        Raises:
            StoreUnavailableError: If the outbox cannot be reached; the
                cycle is abandoned and its claims expire on their own
        """
        started = time.perf_counter()
        with self._tracer.span(
            "eventrelay.processor.cycle",
            {ATTR_CLAIM_OWNER: self._instance_id},
        ) as span:
            batch = await self._claims.claim_batch(self._config.batch_size, self._clock())
            counts = dict.fromkeys(
                (_Outcome.PUBLISHED, _Outcome.RETRIED, _Outcome.DEAD_LETTERED, _Outcome.LOST),
                0,
            )
            released = 0

            for index, message in enumerate(batch):
                if self._stopping:
                    remaining = [m.id for m in batch[index:]]
                    released = await self._claims.release(remaining)
                    break
                if self._claim_remaining(message) < self._config.publish_timeout:
                    # A publish started now could outlive the claim
                    remaining = [m.id for m in batch[index:]]
                    released = await self._claims.release(remaining)
                    counts[_Outcome.LOST] += len(remaining) - released
                    self._log_claim_deadline(len(remaining), released)
                    break
                try:
                    outcome = await self._process(message)
                except ClaimLostError as e:
                    self._log_lost_claim(message, e)
                    outcome = _Outcome.LOST
                counts[outcome] += 1

            if span is not None:
                span.set_attribute(ATTR_MESSAGE_COUNT, len(batch))

        result = CycleResult(
            claimed=len(batch),
            published=counts[_Outcome.PUBLISHED],
            retried=counts[_Outcome.RETRIED],
            dead_lettered=counts[_Outcome.DEAD_LETTERED],
            released=released,
            lost=counts[_Outcome.LOST],
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        self._totals["cycles"] += 1
        for key in ("published", "retried", "dead_lettered", "released", "lost"):
            self._totals[key] += getattr(result, key)

        if result.claimed:
            logger.info(
                f"Outbox cycle: {result.published} published, {result.retried} retried, "
                f"{result.dead_lettered} dead-lettered",
                extra={"owner": self._instance_id, **_result_extra(result)},
            )
        return result

    async def _process(self, message: OutboxMessage) -> str:
        with self._tracer.span_with_kind(
            "eventrelay.processor.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_MESSAGE_ID: str(message.id),
                ATTR_MESSAGE_TYPE: message.message_type,
                ATTR_ATTEMPT: message.attempts,
                ATTR_CORRELATION_ID: str(message.correlation_id),
            },
        ) as span:
            try:
                # Unknown types and malformed payloads raise PermanentError here
                self._registry.decode(message.message_type, message.payload)
                with self._metrics.time_publish() as timer:
                    await asyncio.wait_for(
                        self._transport.publish(
                            message.message_type,
                            message.payload,
                            build_metadata(message),
                        ),
                        timeout=self._config.publish_timeout,
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if span is not None:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                    span.record_exception(e)
                return await self._handle_failure(message, e)

        return await self._complete(message, timer.duration_ms)

    async def _complete(self, message: OutboxMessage, publish_ms: float) -> str:
        now = self._clock()
        async with self._database.transaction() as txn:
            marked = await self._outbox.mark_published(txn, message.id, self._instance_id, now)

        if not marked:
            raise ClaimLostError(message.id, self._instance_id)

        latency_ms = (now - message.created_at).total_seconds() * 1000
        self._metrics.record_published(message.message_type, publish_ms, latency_ms)
        logger.debug(
            f"Published {message.message_type} {message.id}",
            extra={
                "message_id": str(message.id),
                "message_type": message.message_type,
                "attempts": message.attempts,
                "publish_ms": publish_ms,
            },
        )
        return _Outcome.PUBLISHED

    async def _handle_failure(self, message: OutboxMessage, error: Exception) -> str:
        decision = self._scheduler.decide(message.attempts, error)
        error_text = f"{type(error).__name__}: {error}"
        if decision.retry:
            return await self._reschedule(message, decision, error, error_text)
        return await self._dead_letter(message, decision, error, error_text)

    async def _reschedule(
        self,
        message: OutboxMessage,
        decision: RetryDecision,
        error: Exception,
        error_text: str,
    ) -> str:
        next_attempt_at = self._clock() + timedelta(seconds=decision.delay or 0.0)
        async with self._database.transaction() as txn:
            rescheduled = await self._outbox.reschedule(
                txn,
                message.id,
                self._instance_id,
                decision.attempts,
                next_attempt_at,
                error_text,
            )

        if not rescheduled:
            raise ClaimLostError(message.id, self._instance_id)

        self._metrics.record_retried(message.message_type, type(error).__name__)
        logger.warning(
            f"Publish of {message.message_type} {message.id} failed, "
            f"{decision.reason} in {decision.delay:.2f}s: {error}",
            extra={
                "message_id": str(message.id),
                "message_type": message.message_type,
                "attempts": decision.attempts,
                "delay": decision.delay,
                "error": error_text,
            },
        )
        return _Outcome.RETRIED

    async def _dead_letter(
        self,
        message: OutboxMessage,
        decision: RetryDecision,
        error: Exception,
        error_text: str,
    ) -> str:
        now = self._clock()
        async with self._database.transaction() as txn:
            updated = await self._outbox.mark_dead_lettered(
                txn, message.id, self._instance_id, decision.attempts, error_text
            )
            if updated is not None:
                await self._dead_letters.insert(
                    txn, DeadLetterRecord.from_message(updated, error_text, now)
                )

        if updated is None:
            raise ClaimLostError(message.id, self._instance_id)

        self._metrics.record_dead_lettered(message.message_type, type(error).__name__)
        logger.error(
            f"Dead-lettered {message.message_type} {message.id} ({decision.reason}): {error}",
            extra={
                "message_id": str(message.id),
                "message_type": message.message_type,
                "attempts": decision.attempts,
                "error": error_text,
            },
        )
        return _Outcome.DEAD_LETTERED

    def _claim_remaining(self, message: OutboxMessage) -> float:
        """Seconds left on this instance's claim of ``message``."""
        if message.claim_expires_at is None:
            return self._config.claim_ttl
        return (message.claim_expires_at - self._clock()).total_seconds()

    def _log_claim_deadline(self, remaining: int, released: int) -> None:
        logger.warning(
            f"Claim deadline reached with {remaining} message(s) unpublished; "
            f"released {released}, {remaining - released} taken over",
            extra={"owner": self._instance_id, "count": remaining, "released": released},
        )

    def _log_lost_claim(self, message: OutboxMessage, error: ClaimLostError) -> None:
        logger.warning(
            f"{error}; another instance will finish {message.message_type} {message.id}",
            extra={
                "message_id": str(message.id),
                "message_type": message.message_type,
                "owner": self._instance_id,
            },
        )

    # -------------------------------------------------------------------------
    # Backlog gauge
    # -------------------------------------------------------------------------

    async def refresh_backlog(self) -> int:
        """Read the pending count and publish it to the backlog gauge."""
        async with self._database.transaction() as txn:
            stats = await self._outbox.get_stats(txn)
        self._metrics.record_backlog(stats.pending_count)
        self._last_backlog_refresh = time.monotonic()
        return stats.pending_count

    def _backlog_due(self) -> bool:
        if self._last_backlog_refresh is None:
            return True
        elapsed = time.monotonic() - self._last_backlog_refresh
        return elapsed >= self._config.backlog_refresh_interval

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def notify(self) -> None:
        """Wake the loop before the poll interval elapses (new messages exist)."""
        self._wakeup.set()

    async def start(self) -> None:
        """Start the background loop; a no-op if already running."""
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"outbox-processor-{self._instance_id}")
        logger.info(
            f"Outbox processor {self._instance_id} started",
            extra={
                "owner": self._instance_id,
                "poll_interval": self._config.poll_interval,
                "batch_size": self._config.batch_size,
            },
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop the loop.

        The message currently being published is finished and marked; the
        rest of the claimed batch is released to Pending. If that takes
        longer than ``timeout`` (default ``shutdown_timeout``) the loop is
        cancelled and its remaining claims expire after ``claim_ttl``.
        """
        if self._task is None:
            return
        self._stopping = True
        self._wakeup.set()
        timeout = timeout if timeout is not None else self._config.shutdown_timeout

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            logger.warning(
                f"Outbox processor {self._instance_id} did not stop within {timeout}s, cancelling",
                extra={"owner": self._instance_id, "timeout": timeout},
            )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None

        logger.info(
            f"Outbox processor {self._instance_id} stopped",
            extra={"owner": self._instance_id, **self._totals},
        )

    async def _run(self) -> None:
        while not self._stopping:
            try:
                if self._backlog_due():
                    await self.refresh_backlog()
                result = await self.run_once()
            except StoreUnavailableError as e:
                self._totals["failed_cycles"] += 1
                self._metrics.record_cycle_failed(type(e).__name__)
                logger.error(
                    f"Outbox store unavailable, retrying in {self._config.store_retry_delay}s: {e}",
                    extra={"owner": self._instance_id, "error": str(e)},
                )
                await self._sleep(self._config.store_retry_delay)
                continue
            except Exception as e:
                self._totals["failed_cycles"] += 1
                self._metrics.record_cycle_failed(type(e).__name__)
                logger.exception(
                    f"Unexpected error in outbox cycle: {e}",
                    extra={"owner": self._instance_id, "error": str(e)},
                )
                await self._sleep(self._config.store_retry_delay)
                continue

            if result.claimed >= self._config.batch_size or result.released:
                # Full or cut-short batch: more work is likely waiting
                continue
            await self._sleep(self._config.poll_interval)

    async def _sleep(self, seconds: float) -> None:
        if self._stopping:
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except TimeoutError:
            pass
        self._wakeup.clear()


def _result_extra(result: CycleResult) -> dict[str, float]:
    return {
        "claimed": result.claimed,
        "published": result.published,
        "retried": result.retried,
        "dead_lettered": result.dead_lettered,
        "released": result.released,
        "lost": result.lost,
        "duration_ms": result.duration_ms,
    }


__all__ = ["CycleResult", "OutboxProcessor", "default_instance_id"]
