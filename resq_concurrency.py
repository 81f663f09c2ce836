"""
RapidResQ Concurrency Coordinator
=================================
Shared-state coordination for concurrent command processing.

  ContendedLock   mutual exclusion around the parser, counts contended waits,
                  fails with ConcurrencyError after a bounded wait
  BoundedQueue    fixed-capacity FIFO of pending emergencies, reject-on-full
  AtomicCounter   compare-and-swap counter used to mint emergency ids
  RequestTracker  in-flight request count and concurrency peak

Only the statistics and the counters are shared between requests. Tokens,
parse trees, ASTs and diagnostics are request-local.
"""

from __future__ import annotations

import random
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Deque, Iterator, List, Optional, Protocol, Tuple

import structlog

from resq_config import CoordinatorSettings, load_settings
from resq_parser import CommandParser, ParseResult

log = structlog.get_logger()


class ConcurrencyError(Exception):
    """A shared resource could not be acquired in time."""


# ==========================================
# Mutual exclusion
# ==========================================

class ContendedLock:
    """
    A real lock with contention accounting.
    The counting happens around the acquisition, not inside the critical
    section it protects.
    """

    def __init__(self, timeout: float = 5.0, name: str = "parser"):
        self.name = name
        self.timeout = timeout
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.acquisitions = 0
        self.contentions = 0
        self.timeouts = 0

    def acquire(self, timeout: Optional[float] = None) -> None:
        if not self._lock.acquire(blocking=False):
            with self._stats_lock:
                self.contentions += 1
            wait = self.timeout if timeout is None else timeout
            if not self._lock.acquire(timeout=wait):
                with self._stats_lock:
                    self.timeouts += 1
                log.warning("lock_timeout", lock=self.name, waited_s=wait)
                raise ConcurrencyError(f"Timed out after {wait}s waiting for the {self.name} lock")
        with self._stats_lock:
            self.acquisitions += 1

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def held(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Scoped acquisition; released on every exit path."""
        self.acquire(timeout)
        try:
            yield
        finally:
            self.release()


# ==========================================
# Shared counter
# ==========================================

class AtomicCounter:
    """
    Monotonic counter whose increment is a compare-and-swap retry loop.
    A failed swap means another thread won the race; it is counted and the
    increment is retried, so no update is ever lost.
    """

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()
        self.failed_swaps = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def compare_and_set(self, expected: int, new: int) -> bool:
        with self._lock:
            if self._value != expected:
                self.failed_swaps += 1
                return False
            self._value = new
            return True

    def increment(self, delta: int = 1) -> int:
        """Add delta and return the new value."""
        while True:
            current = self.value
            if self.compare_and_set(current, current + delta):
                return current + delta


# ==========================================
# Bounded queue
# ==========================================

@dataclass(frozen=True)
class QueueEntry:
    id: int
    message: str
    enqueued_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnqueueResult:
    success: bool
    queue_size: int
    reason: Optional[str] = None
    entry: Optional[QueueEntry] = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "queue_size": self.queue_size}
        if self.reason:
            data["reason"] = self.reason
        if self.entry:
            data["entry_id"] = self.entry.id
        return data


QUEUE_FULL = "Queue full"


class BoundedQueue:
    """Fixed-capacity FIFO. `enqueue` never blocks: it rejects once full."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: Deque[QueueEntry] = deque()
        self._lock = threading.Lock()
        self._next_id = 0
        self.overflows = 0

    def enqueue(self, message: str) -> EnqueueResult:
        with self._lock:
            if len(self._items) >= self.capacity:
                self.overflows += 1
                return EnqueueResult(False, len(self._items), reason=QUEUE_FULL)
            self._next_id += 1
            entry = QueueEntry(self._next_id, message, datetime.now(timezone.utc).isoformat())
            self._items.append(entry)
            return EnqueueResult(True, len(self._items), entry=entry)

    def dequeue(self) -> Optional[QueueEntry]:
        with self._lock:
            return self._items.popleft() if self._items else None

    def drain(self) -> List[QueueEntry]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def snapshot(self) -> List[QueueEntry]:
        with self._lock:
            return list(self._items)

    def is_full(self) -> bool:
        with self._lock:
            return len(self._items) >= self.capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# ==========================================
# Request bookkeeping
# ==========================================

class RequestTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.total = 0
        self.peak = 0

    @contextmanager
    def track(self) -> Iterator[None]:
        """Count a request in flight; the decrement always pairs the increment."""
        with self._lock:
            self.active += 1
            self.total += 1
            self.peak = max(self.peak, self.active)
        try:
            yield
        finally:
            with self._lock:
                self.active -= 1

    def snapshot(self) -> Tuple[int, int, int]:
        """(total, peak, active), read together."""
        with self._lock:
            return self.total, self.peak, self.active


# ==========================================
# Statistics
# ==========================================

@dataclass
class ConcurrencyStats:
    total_requests: int
    concurrent_peak: int
    race_conditions: int
    queue_overflows: int
    lock_contentions: int
    current_active_requests: int = 0
    parser_usage_count: int = 0
    queue_length: int = 0
    emergency_counter: int = 0
    timestamp: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class MetricsSink(Protocol):
    def publish(self, stats: ConcurrencyStats) -> None: ...


# ==========================================
# Coordinator
# ==========================================

class ConcurrencyCoordinator:
    """
    Serialises parser access, mints emergency ids and queues emergencies
    for an external consumer.
    """

    def __init__(
        self,
        parser: Optional[CommandParser] = None,
        settings: Optional[CoordinatorSettings] = None,
        sink: Optional[MetricsSink] = None,
    ):
        self.settings = settings or load_settings()
        self.parser = parser or CommandParser()
        self.sink = sink
        self.parser_lock = ContendedLock(self.settings.lock_timeout, name="parser")
        self.queue = BoundedQueue(self.settings.queue_capacity)
        self.emergency_counter = AtomicCounter()
        self.requests = RequestTracker()

        # mutated only while parser_lock is held
        self.parser_usage_count = 0
        self._parses_inside = 0
        self.max_parses_inside = 0

    def track_request(self):
        return self.requests.track()

    def safe_parse(self, command: str, timeout: Optional[float] = None) -> ParseResult:
        """Parse inside the critical section. Raises ConcurrencyError on lock timeout."""
        with self.parser_lock.held(timeout):
            self.parser_usage_count += 1
            self._parses_inside += 1
            self.max_parses_inside = max(self.max_parses_inside, self._parses_inside)
            try:
                result = self.parser.parse(command)
                self._simulate_latency()
                return result
            finally:
                self._parses_inside -= 1

    def _simulate_latency(self) -> None:
        upper_ms = self.settings.simulated_latency_ms
        if upper_ms > 0:
            time.sleep(random.uniform(0, upper_ms) / 1000)

    def mint_emergency_id(self) -> str:
        n = self.emergency_counter.increment()
        return f"EMG-{n}-{int(time.time() * 1000)}"

    def enqueue_emergency(self, message: str) -> EnqueueResult:
        result = self.queue.enqueue(message)
        if not result.success:
            log.warning("emergency_queue_overflow", capacity=self.queue.capacity,
                        overflows=self.queue.overflows)
        return result

    def dequeue_emergency(self) -> Optional[QueueEntry]:
        return self.queue.dequeue()

    def drain_queue(self) -> List[QueueEntry]:
        return self.queue.drain()

    def get_stats(self) -> ConcurrencyStats:
        total, peak, active = self.requests.snapshot()
        return ConcurrencyStats(
            total_requests=total,
            concurrent_peak=peak,
            race_conditions=self.emergency_counter.failed_swaps,
            queue_overflows=self.queue.overflows,
            lock_contentions=self.parser_lock.contentions,
            current_active_requests=active,
            parser_usage_count=self.parser_usage_count,
            queue_length=len(self.queue),
            emergency_counter=self.emergency_counter.value,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def publish(self, sink: Optional[MetricsSink] = None) -> ConcurrencyStats:
        stats = self.get_stats()
        target = sink or self.sink
        if target is not None:
            target.publish(stats)
        return stats
