"""
Batch execution with request deduplication and bounded concurrency.

This module provides:
- DuplicateGroup describing a canonical request and its duplicate positions
- BatchExecutor, which runs the unique requests of a batch under a per-batch
  semaphore and an executor-wide priority gate, shares in-flight results
  through a claim-check table, and fans outcomes back out in input order
"""

import asyncio
import copy
import dataclasses
import heapq
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from ..events import EventBus, EventType
from .errors import RequestTimeoutError
from .types import BatchOutcome, GenerationRequest, Priority

RequestExecutor = Callable[[GenerationRequest], Awaitable[bytes]]

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20
LATENCY_SMOOTHING = 0.1


@dataclass
class DuplicateGroup:
    """A unique request hash with the input positions that share it."""

    hash: str
    canonical_index: int
    duplicate_indices: List[int] = field(default_factory=list)


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def deduplicate_requests(requests: Sequence[GenerationRequest]) -> List[DuplicateGroup]:
    """Partition requests into groups keyed by their dedup hash, in first-seen order."""
    groups: Dict[str, DuplicateGroup] = {}
    for position, request in enumerate(requests):
        request_hash = request.dedup_hash()
        group = groups.get(request_hash)
        if group is None:
            groups[request_hash] = DuplicateGroup(hash=request_hash, canonical_index=position)
        else:
            group.duplicate_indices.append(position)
    return list(groups.values())


def calculate_eta(completed: int, total: int, started: float) -> Optional[Dict[str, float]]:
    """Estimate the remaining time of a batch from the average completion time so far."""
    if completed <= 0:
        return None
    elapsed = time.monotonic() - started
    per_request = elapsed / completed
    return {
        "eta_seconds": (total - completed) * per_request,
        "avg_seconds_per_request": per_request,
    }


class PriorityGate:
    """Counting gate shared by every batch; waiters are served high, medium, then low, FIFO within a level."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.active = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._sequence = itertools.count()

    async def acquire(self, priority: Priority = Priority.MEDIUM) -> None:
        if self.active < self.capacity and not self._waiters:
            self.active += 1
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (priority.rank, next(self._sequence), future))
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                self.release()
            raise

    def release(self) -> None:
        self.active = max(0, self.active - 1)
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self.active < self.capacity:
            _, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self.active += 1
            future.set_result(None)

    def resize(self, capacity: int) -> None:
        self.capacity = capacity
        self._wake()

    @property
    def waiting(self) -> int:
        return sum(1 for _, _, future in self._waiters if not future.done())


class BatchExecutor:
    """
    Deduplicating, concurrency-bounded executor for generation requests.

    Requests with the same dedup hash are executed once: within a batch the
    duplicates receive copies of the canonical outcome, and across batches
    (or single submissions) a request whose hash is already in flight awaits
    the shared claim-check future instead of calling upstream again.
    """

    def __init__(
        self,
        executor: Optional[RequestExecutor] = None,
        events: Optional[EventBus] = None,
        max_concurrency: int = 5,
        request_timeout: float = 120.0,
    ):
        self._executor = executor
        self._events = events
        self.max_concurrency = clamp_concurrency(max_concurrency)
        self.request_timeout = request_timeout
        self._gate = PriorityGate(self.max_concurrency)
        self._pending: Dict[str, asyncio.Future] = {}
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_requests": 0,
            "deduplicated_requests": 0,
            "completed_batches": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "average_latency_ms": 0.0,
        }

    def set_request_executor(self, executor: RequestExecutor) -> None:
        self._executor = executor

    def set_max_concurrency(self, concurrency: int) -> int:
        self.max_concurrency = clamp_concurrency(concurrency)
        self._gate.resize(self.max_concurrency)
        logger.info(f"Batch executor concurrency set to: {self.max_concurrency}")
        return self.max_concurrency

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _update_latency(self, latency_ms: float) -> None:
        current = self._stats["average_latency_ms"]
        if current == 0:
            self._stats["average_latency_ms"] = latency_ms
        else:
            self._stats["average_latency_ms"] = current * (1 - LATENCY_SMOOTHING) + latency_ms * LATENCY_SMOOTHING

    def _expire(self, request_hash: str, future: asyncio.Future) -> None:
        if future.done():
            return
        logger.warning(f"Pending request {request_hash[:12]} timed out after {self.request_timeout}s")
        future.set_exception(RequestTimeoutError(f"Pending request timed out after {self.request_timeout}s"))
        if self._pending.get(request_hash) is future:
            del self._pending[request_hash]

    async def _join_pending(self, future: asyncio.Future) -> BatchOutcome:
        started = time.monotonic()
        self._stats["deduplicated_requests"] += 1
        try:
            outcome = await asyncio.shield(future)
        except Exception as e:
            return BatchOutcome(error=e, latency_ms=(time.monotonic() - started) * 1000, deduplicated=True)
        return dataclasses.replace(outcome, payload=copy.deepcopy(outcome.payload), deduplicated=True)

    async def _execute(self, request: GenerationRequest, request_hash: str) -> BatchOutcome:
        """Run one request upstream, publishing its outcome through the claim-check table."""
        if self._executor is None:
            raise RuntimeError("No request executor configured")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._pending[request_hash] = future
        timer = loop.call_later(self.request_timeout, self._expire, request_hash, future)

        started = time.monotonic()
        try:
            payload = await self._executor(request)
            outcome = BatchOutcome(payload=payload, latency_ms=(time.monotonic() - started) * 1000)
        except Exception as e:
            logger.error(f"Batch request {request.category}#{request.index} failed: {e}")
            outcome = BatchOutcome(error=e, latency_ms=(time.monotonic() - started) * 1000)
        finally:
            timer.cancel()
            if self._pending.get(request_hash) is future:
                del self._pending[request_hash]

        if not future.done():
            future.set_result(outcome)
        self._update_latency(outcome.latency_ms)
        if outcome.success:
            self._stats["successful_requests"] += 1
        else:
            self._stats["failed_requests"] += 1
        return outcome

    async def _run(
        self,
        request: GenerationRequest,
        request_hash: str,
        priority: Priority,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> BatchOutcome:
        existing = self._pending.get(request_hash)
        if existing is not None:
            return await self._join_pending(existing)

        if semaphore is not None:
            await semaphore.acquire()
        try:
            await self._gate.acquire(priority)
            try:
                # Another caller may have claimed the hash while we waited for a slot.
                existing = self._pending.get(request_hash)
                if existing is not None:
                    return await self._join_pending(existing)
                return await self._execute(request, request_hash)
            finally:
                self._gate.release()
        finally:
            if semaphore is not None:
                semaphore.release()

    async def submit(
        self, request: GenerationRequest, priority: Union[Priority, str] = Priority.MEDIUM
    ) -> BatchOutcome:
        """Run a single request through the claim-check table and priority gate."""
        self._stats["total_requests"] += 1
        return await self._run(request, request.dedup_hash(), Priority(priority))

    async def execute_batch(
        self,
        requests: Sequence[GenerationRequest],
        max_concurrency: Optional[int] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> List[BatchOutcome]:
        """
        Execute a batch, returning one outcome per input position.

        Args:
            requests: Requests to execute; duplicates are executed once.
            max_concurrency: Concurrent unique requests for this batch (clamped to [1, 20]).
            priority: "high", "medium" or "low" for the executor-wide gate.

        Returns:
            BatchOutcome list in the same order and length as ``requests``.
        """
        priority = Priority(priority)
        concurrency = clamp_concurrency(max_concurrency or self.max_concurrency)
        batch_id = f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        groups = deduplicate_requests(requests)
        total = len(requests)
        deduplicated = total - len(groups)

        logger.info(
            f"Starting batch {batch_id} with {total} requests "
            f"({len(groups)} unique), concurrency: {concurrency}"
        )
        self._emit(
            EventType.BATCH_STARTED,
            batch_id=batch_id,
            total_requests=total,
            unique_requests=len(groups),
            deduplicated_count=deduplicated,
        )

        started = time.monotonic()
        semaphore = asyncio.Semaphore(concurrency)
        completed = 0

        async def run_group(group: DuplicateGroup) -> BatchOutcome:
            nonlocal completed
            outcome = await self._run(requests[group.canonical_index], group.hash, priority, semaphore)
            completed += 1
            self._emit(
                EventType.BATCH_PROGRESS,
                batch_id=batch_id,
                completed=completed,
                total=len(groups),
                latency_ms=outcome.latency_ms,
                success=outcome.success,
                eta=calculate_eta(completed, len(groups), started),
            )
            return outcome

        outcomes = await asyncio.gather(*(run_group(group) for group in groups))

        results: List[Optional[BatchOutcome]] = [None] * total
        for group, outcome in zip(groups, outcomes):
            results[group.canonical_index] = outcome
            for position in group.duplicate_indices:
                results[position] = dataclasses.replace(
                    outcome, payload=copy.deepcopy(outcome.payload), deduplicated=True
                )

        duration_ms = (time.monotonic() - started) * 1000
        successes = sum(1 for outcome in results if outcome is not None and outcome.success)
        latencies = [outcome.latency_ms for outcome in outcomes]

        self._stats["completed_batches"] += 1
        self._stats["total_requests"] += total
        self._stats["deduplicated_requests"] += deduplicated

        logger.info(f"Batch {batch_id} completed in {duration_ms:.0f}ms ({successes}/{total} succeeded)")
        self._emit(
            EventType.BATCH_COMPLETED,
            batch_id=batch_id,
            total_requests=total,
            deduplicated_count=deduplicated,
            average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            successes=successes,
            duration_ms=duration_ms,
        )
        return results

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["total_requests"]
        return {
            **self._stats,
            "pending_requests": len(self._pending),
            "queued_requests": self._gate.waiting,
            "active_requests": self._gate.active,
            "deduplication_rate": (self._stats["deduplicated_requests"] / total) * 100 if total else 0.0,
        }

    def get_configuration(self) -> Dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "request_timeout": self.request_timeout,
            "priority_levels": [p.value for p in Priority],
            "stats": self.get_stats(),
        }

    def reset(self) -> None:
        """Reject outstanding claim-check waiters and clear statistics."""
        for request_hash, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(RequestTimeoutError("Batch executor reset"))
        self._pending.clear()
        self._stats = self._empty_stats()

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **data)


__all__ = [
    "BatchExecutor",
    "DuplicateGroup",
    "PriorityGate",
    "RequestExecutor",
    "calculate_eta",
    "clamp_concurrency",
    "deduplicate_requests",
]
