"""
OEE Monitor - Hybrid Persistence Gateway

Single persistence entry point for the application. Every call goes to the
primary store first, bounded by a timeout. An outage of the primary (error or
timeout) is logged, counted and answered by exactly one attempt on the local
fallback store. Domain answers from a store (not found, validation) are
returned to the caller as-is and never trigger the fallback.

A circuit breaker skips the primary after repeated failures and lets a single
trial call through once the cooldown has elapsed.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from oee_monitor.monitoring.application_metrics import ApplicationMetrics, application_metrics
from oee_monitor.persistence.base import DocumentQuery, DocumentStore
from oee_monitor.utils.exceptions import (
    DOMAIN_ERRORS,
    NotFoundError,
    StoreUnavailableError,
    TerminalStoreError,
)

logger = structlog.get_logger()

StoreCall = Callable[[DocumentStore], Awaitable[Any]]


class CircuitState(str, Enum):
    """Circuit breaker state enumeration."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    ``failure_threshold`` consecutive failures open the circuit. After
    ``cooldown_seconds`` one trial call is allowed (half-open); its outcome
    closes or re-opens the circuit. A threshold of 0 disables the breaker.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def enabled(self) -> bool:
        return self.failure_threshold > 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def allow_primary(self) -> bool:
        """Whether the next call may go to the primary store."""
        if not self.enabled:
            return True

        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
            return True
        return False

    def release_trial(self) -> None:
        """Give up a half-open trial that ended without an outcome."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit closed, primary store recovered")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        self._trial_in_flight = False
        if not self.enabled:
            return
        if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit opened, skipping primary store",
                    consecutive_failures=self._consecutive_failures,
                    cooldown_seconds=self.cooldown_seconds
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()


class HybridPersistenceGateway:
    """Primary-first persistence with a single local fallback attempt.

    When both stores fail the caller gets a TerminalStoreError carrying the
    fallback's exception as ``fallback_error`` and ``__cause__``. The primary's
    error is only kept as a string in ``details``.
    """

    def __init__(
        self,
        primary: DocumentStore,
        fallback: DocumentStore,
        primary_timeout: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
        replicate_writes: bool = True,
        metrics: Optional[ApplicationMetrics] = None
    ):
        self.primary = primary
        self.fallback = fallback
        self.primary_timeout = primary_timeout
        self.breaker = breaker or CircuitBreaker()
        self.replicate_writes = replicate_writes
        self.metrics = metrics or application_metrics
        self._seeded = False
        self._last_primary_error: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        primary: DocumentStore,
        fallback: DocumentStore,
        settings,
        metrics: Optional[ApplicationMetrics] = None
    ) -> "HybridPersistenceGateway":
        return cls(
            primary=primary,
            fallback=fallback,
            primary_timeout=settings.PRIMARY_TIMEOUT_SECONDS,
            breaker=CircuitBreaker(
                failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
                cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS
            ),
            replicate_writes=settings.FALLBACK_REPLICATE_WRITES,
            metrics=metrics
        )

    # Public operations

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        return await self._execute(collection, "get", lambda store: store.get(collection, doc_id))

    async def list(self, collection: str, query: Optional[DocumentQuery] = None) -> List[Dict[str, Any]]:
        query = query or DocumentQuery()
        return await self._execute(collection, "list", lambda store: store.list(collection, query))

    async def count(self, collection: str, query: Optional[DocumentQuery] = None) -> int:
        query = query or DocumentQuery()
        return await self._execute(collection, "count", lambda store: store.count(collection, query))

    async def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        return await self._execute(
            collection, "create",
            lambda store: store.create(collection, document),
            replicate=lambda result: self.fallback.put(collection, result)
        )

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self._execute(
            collection, "update",
            lambda store: store.update(collection, doc_id, changes),
            replicate=lambda result: self.fallback.put(collection, result)
        )

    async def delete(self, collection: str, doc_id: str) -> None:
        return await self._execute(
            collection, "delete",
            lambda store: store.delete(collection, doc_id),
            replicate=lambda _: self._replicate_delete(collection, doc_id)
        )

    async def seed_fallback(self, snapshot: Dict[str, List[Dict[str, Any]]]) -> int:
        """
        Load a snapshot into the fallback store. Runs once per gateway.

        Seeding is best-effort: errors are logged and the number of documents
        seeded so far is returned.
        """
        if self._seeded:
            logger.info("Fallback store already seeded")
            return 0

        seeded = 0
        try:
            for collection, documents in (snapshot or {}).items():
                for document in documents or []:
                    await self.fallback.put(collection, document)
                    seeded += 1
            logger.info("Fallback store seeded", documents=seeded)
        except Exception as e:
            logger.warning("Fallback seeding failed", error=str(e), seeded=seeded)
        self._seeded = True
        return seeded

    def status(self) -> Dict[str, Any]:
        """Gateway state for health reporting."""
        return {
            "primary": self.primary.name,
            "fallback": self.fallback.name,
            "circuit_state": self.breaker.state.value,
            "consecutive_failures": self.breaker.consecutive_failures,
            "last_primary_error": self._last_primary_error,
            "fallback_seeded": self._seeded,
        }

    # Internals

    async def _execute(
        self,
        collection: str,
        operation: str,
        call: StoreCall,
        replicate: Optional[Callable[[Any], Awaitable[Any]]] = None
    ) -> Any:
        primary_error: Optional[StoreUnavailableError] = None

        if self.breaker.allow_primary():
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(call(self.primary), timeout=self.primary_timeout)
            except DOMAIN_ERRORS:
                self.breaker.record_success()
                raise
            except Exception as e:
                primary_error = self._primary_failed(collection, operation, e)
            except BaseException:
                # Cancelled: neither a success nor an outage of the primary
                self.breaker.release_trial()
                raise
            else:
                self.breaker.record_success()
                self.metrics.record_circuit_state(self.breaker.state.value)
                self.metrics.primary_call_duration.labels(operation=operation).observe(
                    time.perf_counter() - started
                )
                if replicate is not None and self.replicate_writes:
                    await self._replicate(collection, operation, replicate, result)
                return result
        else:
            logger.debug(
                "Circuit open, using fallback store",
                collection=collection,
                operation=operation
            )

        self.metrics.fallback_calls_total.labels(collection=collection, operation=operation).inc()
        try:
            result = await call(self.fallback)
        except DOMAIN_ERRORS:
            raise
        except Exception as e:
            self.metrics.terminal_failures_total.labels(collection=collection, operation=operation).inc()
            logger.error(
                "Fallback store failed",
                collection=collection,
                operation=operation,
                error=str(e),
                primary_error=primary_error.message if primary_error else None
            )
            details = {"primary_error": primary_error.message} if primary_error else {}
            raise TerminalStoreError(collection, operation, e, details) from e

        logger.warning(
            "Served from fallback store",
            collection=collection,
            operation=operation
        )
        return result

    def _primary_failed(self, collection: str, operation: str, error: Exception) -> StoreUnavailableError:
        if isinstance(error, asyncio.TimeoutError):
            message = f"timed out after {self.primary_timeout}s"
        else:
            message = str(error) or type(error).__name__
        unavailable = StoreUnavailableError(self.primary.name, operation, message)

        self._last_primary_error = unavailable.message
        self.breaker.record_failure()
        self.metrics.primary_failures_total.labels(collection=collection, operation=operation).inc()
        self.metrics.record_circuit_state(self.breaker.state.value)
        logger.warning(
            "Primary store unavailable, falling back",
            collection=collection,
            operation=operation,
            error=message,
            error_type=type(error).__name__
        )
        return unavailable

    async def _replicate(self, collection: str, operation: str, replicate, result: Any) -> None:
        try:
            await replicate(result)
        except Exception as e:
            self.metrics.replication_failures_total.labels(collection=collection, operation=operation).inc()
            logger.warning(
                "Fallback replication failed",
                collection=collection,
                operation=operation,
                error=str(e)
            )

    async def _replicate_delete(self, collection: str, doc_id: str) -> None:
        try:
            await self.fallback.delete(collection, doc_id)
        except NotFoundError:
            pass
