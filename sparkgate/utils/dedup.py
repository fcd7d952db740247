"""
SparkGate -- Creation deduplication cache with in-flight coalescing.

Clients (LLM hosts in particular) retry tool calls aggressively.  For a
side-effecting operation such as "create persona" every retry would create
another object, so calls are keyed by an idempotency key and:

* a *completed* result younger than ``ttl`` is replayed without calling out;
* an *in-flight* call is joined: the caller waits on the same shared
  future and sees exactly the same result or exception;
* otherwise the caller receives a :class:`DedupLease` and becomes the sole
  executor for the key.

``begin()`` never awaits, so the pending record is in place before the
executor reaches its first suspension point; a second caller scheduled in
between always observes it.  A failed (or timed-out, or cancelled) call
removes the record, so the next caller may retry immediately.

Usage::

    cache = DedupCache(ttl=10.0)
    spark_id = await cache.run(key, lambda: client.create_spark(payload))

or explicitly::

    outcome = cache.begin(key)
    if isinstance(outcome, DedupHit):
        return outcome.result
    if isinstance(outcome, DedupPending):
        return await outcome.wait()
    try:
        result = await create()
    except Exception as exc:
        outcome.fail(exc)
        raise
    outcome.commit(result)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar, Union

if TYPE_CHECKING:
    from sparkgate.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationAbandoned(Exception):
    """Delivered to coalesced waiters when the executing task was cancelled."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"In-flight operation for key {key[:12]}... was abandoned")


# --------------------------------------------------------------------------- #
# Records
# --------------------------------------------------------------------------- #


@dataclass
class _InFlight:
    future: asyncio.Future
    started_at: float


@dataclass
class _Completed:
    result: Any
    completed_at: float


# --------------------------------------------------------------------------- #
# begin() outcomes
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class DedupHit(Generic[T]):
    """A fresh completed result; nothing to execute."""

    key: str
    result: T
    age: float


class DedupPending(Generic[T]):
    """Handle on another caller's in-flight operation."""

    def __init__(self, key: str, future: asyncio.Future) -> None:
        self.key = key
        self._future = future

    async def wait(self) -> T:
        # Shield: one waiter being cancelled must not cancel the shared result.
        return await asyncio.shield(self._future)

    def __await__(self):
        return self.wait().__await__()


class DedupLease(Generic[T]):
    """Exclusive right to execute the operation for ``key``.

    Exactly one of :meth:`commit`, :meth:`fail` or :meth:`abandon` should be
    called; later calls are ignored.
    """

    def __init__(self, cache: DedupCache, key: str, record: _InFlight) -> None:
        self.key = key
        self._cache = cache
        self._record = record

    @property
    def settled(self) -> bool:
        return self._record.future.done()

    def commit(self, result: T) -> None:
        if self.settled:
            return
        self._cache._settle(self.key, self._record, _Completed(result, self._cache._clock()))
        self._record.future.set_result(result)

    def fail(self, exc: BaseException) -> None:
        if self.settled:
            return
        self._cache._settle(self.key, self._record, None)
        future = self._record.future
        future.set_exception(exc)
        # Mark retrieved; with no waiters asyncio would log it as unhandled.
        future.exception()
        if self._cache._metrics is not None:
            self._cache._metrics.record_dedup("failed")

    def abandon(self) -> None:
        self.fail(OperationAbandoned(self.key))


DedupOutcome = Union[DedupHit, DedupPending, DedupLease]


# --------------------------------------------------------------------------- #
# Cache
# --------------------------------------------------------------------------- #


class DedupCache:
    """In-process dedup records keyed by idempotency key.

    Not shared across processes; two gateway instances may each execute
    the same key once.

    Parameters
    ----------
    ttl:
        Freshness window for completed results, in seconds.
    clock:
        Monotonic time source.  Injected for tests.
    """

    def __init__(
        self,
        ttl: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._metrics = metrics
        self._records: dict[str, Union[_InFlight, _Completed]] = {}

        # Observability counters
        self.total_hits: int = 0
        self.total_coalesced: int = 0
        self.total_executed: int = 0

    # -- internals ---------------------------------------------------------- #

    def _settle(
        self, key: str, record: _InFlight, replacement: _Completed | None,
    ) -> None:
        # Only touch the slot if it still holds this lease's record.
        if self._records.get(key) is not record:
            return
        if replacement is None:
            del self._records[key]
        else:
            self._records[key] = replacement

    def _emit(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_dedup(outcome)

    # -- public API --------------------------------------------------------- #

    def begin(self, key: str) -> DedupOutcome:
        """Classify *key* and, when free, claim it.  Never suspends."""
        now = self._clock()
        record = self._records.get(key)

        if isinstance(record, _Completed):
            age = now - record.completed_at
            if age < self.ttl:
                self.total_hits += 1
                self._emit("hit")
                logger.debug("dedup.hit", extra={"key": key[:12], "age": round(age, 3)})
                return DedupHit(key=key, result=record.result, age=age)
            del self._records[key]

        elif isinstance(record, _InFlight):
            self.total_coalesced += 1
            self._emit("coalesced")
            logger.debug("dedup.coalesced", extra={"key": key[:12]})
            return DedupPending(key, record.future)

        in_flight = _InFlight(
            future=asyncio.get_running_loop().create_future(),
            started_at=now,
        )
        self._records[key] = in_flight
        self.total_executed += 1
        self._emit("miss")
        return DedupLease(self, key, in_flight)

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute *operation* at most once per key within the freshness window."""
        outcome = self.begin(key)
        if isinstance(outcome, DedupHit):
            return outcome.result
        if isinstance(outcome, DedupPending):
            return await outcome.wait()

        try:
            result = await operation()
        except Exception as exc:
            outcome.fail(exc)
            raise
        except BaseException:
            outcome.abandon()
            raise
        outcome.commit(result)
        return result

    def in_flight(self, key: str) -> bool:
        return isinstance(self._records.get(key), _InFlight)

    def sweep(self) -> int:
        """Drop completed records older than twice the TTL.  In-flight records stay."""
        cutoff = self._clock() - self.ttl * 2
        stale = [
            key for key, record in self._records.items()
            if isinstance(record, _Completed) and record.completed_at < cutoff
        ]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("dedup.swept", extra={"removed": len(stale)})
        return len(stale)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        in_flight = sum(isinstance(r, _InFlight) for r in self._records.values())
        return (
            f"DedupCache(ttl={self.ttl}, records={len(self._records)}, "
            f"in_flight={in_flight})"
        )
