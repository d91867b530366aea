"""Per-node work queue and retry policy.

The queue holds one pending marker per node name rather than one entry per
event, so a burst of updates collapses into a single pass over the latest
snapshot. A key handed to a worker is "processing" until ``done()``; events
arriving in the meantime only mark it dirty, and it is queued again once the
worker finishes. That keeps reconciliations for one node strictly serialized
while different nodes run in parallel.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from node_dns.errors import ErrorClass, ProviderRateLimited, classify_error
from node_dns.nodes import Node

logger = logging.getLogger(__name__)

_KEEP = object()


class WorkQueue:
    """Deduplicating, per-key serialized work queue with delayed re-adds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._objects: Dict[str, Optional[Node]] = {}
        self._delayed: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._shutting_down = False

    def add(self, key: str, obj=_KEEP) -> None:
        """Mark a key as needing work, optionally replacing its snapshot.

        Pass ``None`` as ``obj`` to record that the node no longer exists.
        """
        with self._cond:
            if obj is not _KEEP:
                self._objects[key] = obj
            if self._shutting_down:
                return
            self._mark(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        """Re-add a key once the delay has passed, keeping its snapshot."""
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (self._clock() + delay_seconds, next(self._seq), key))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Tuple[str, Optional[Node]]]:
        """Block until a key is ready and return (key, latest snapshot).

        Returns None on timeout or once the queue is shutting down.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key, self._objects.get(key)

                now = self._clock()
                wait_for: Optional[float] = None
                if self._delayed:
                    wait_for = max(0.0, self._delayed[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: str) -> None:
        """Release a key handed out by ``get``."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()
            elif self._objects.get(key, _KEEP) is None and not self._has_delayed(key):
                # The node is gone and nothing else is pending for it.
                del self._objects[key]

    def shut_down(self) -> None:
        """Stop handing out work. Items already being processed may finish."""
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def known_keys(self) -> Set[str]:
        """Keys whose latest snapshot is a live node."""
        with self._cond:
            return {k for k, v in self._objects.items() if v is not None}

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _mark(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._mark(key)

    def _has_delayed(self, key: str) -> bool:
        return any(k == key for _, _, k in self._delayed)


class RetryPolicy:
    """Decides whether and when a failed key is retried.

    Transient errors back off exponentially up to ``max_seconds``; a rate
    limit waits at least as long as the provider asked. Fatal errors are
    retried ``fatal_max_attempts`` times with rising log severity, then
    dropped until the node's next watch event. Benign outcomes never retry.
    """

    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: float = 300.0,
        fatal_max_attempts: int = 5,
        jitter: bool = True,
        rand: Callable[[], float] = random.random,
    ):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.fatal_max_attempts = fatal_max_attempts
        self.jitter = jitter
        self._rand = rand
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def backoff(self, attempt: int) -> float:
        delay = min(self.base_seconds * (2 ** max(0, attempt - 1)), self.max_seconds)
        if self.jitter:
            delay = min(delay * (0.5 + self._rand()), self.max_seconds)
        return delay

    def next_delay(self, key: str, error: BaseException) -> Optional[float]:
        """Record a failure and return the delay before retrying, or None."""
        error_class = classify_error(error)
        if error_class is ErrorClass.BENIGN:
            self.forget(key)
            return None

        with self._lock:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt

        delay = self.backoff(attempt)
        if isinstance(error, ProviderRateLimited):
            delay = max(delay, error.retry_after)

        if error_class is ErrorClass.FATAL:
            if attempt >= self.fatal_max_attempts:
                logger.critical(
                    f"Giving up on node {key} after {attempt} attempts: {error}. "
                    f"This needs operator attention (credentials or domain); "
                    f"the node is retried on its next change"
                )
                self.forget(key)
                return None
            level = logging.ERROR if attempt > 1 else logging.WARNING
            logger.log(
                level,
                f"Configuration error for node {key} "
                f"(attempt {attempt}/{self.fatal_max_attempts}): {error}",
            )
        else:
            logger.debug(f"Retrying node {key} in {delay:.1f}s (attempt {attempt})")
        return delay
