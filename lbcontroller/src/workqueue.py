from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from lbcontroller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

MIN_RETRY_DELAY_SECONDS = 5.0
MAX_RETRY_DELAY_SECONDS = 300.0


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` capped at ``maximum``."""

    def __init__(
        self,
        base_delay_seconds: float = MIN_RETRY_DELAY_SECONDS,
        max_delay_seconds: float = MAX_RETRY_DELAY_SECONDS,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}

    def when(self, key: str) -> float:
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1
        # Avoid float overflow for keys that have failed for a very long time.
        if exponent > 62:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class RateLimitingQueue:
    """Deduplicating FIFO of string keys with in-flight exclusivity and delayed adds.

    Semantics mirror the controller work queues used throughout Kubernetes:

    * A key that is already queued is not queued twice.
    * ``get()`` marks a key in flight.  Adding that key again while it is in
      flight only marks it dirty; it is re-queued once the worker calls
      ``done()``, so two workers never process the same key concurrently.
    * ``add_after()`` hands keys to a single waiting thread that keeps the
      earliest due time per key and adds them when they become due.
    * ``add_rate_limited()`` delays by the rate limiter's backoff for the key;
      ``forget()`` resets that backoff.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        self._delay_cond = threading.Condition()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_due: dict[str, float] = {}
        self._sequence = itertools.count()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop,
            name=f"workqueue-{name}-delay",
            daemon=True,
        )
        self._waiting_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.labels(name=self.name).set(len(self._queue))

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if key in self._dirty:
                return
            METRICS.workqueue_adds_total.labels(name=self.name).inc()
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._update_depth()
            self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; returns ``(key, shutdown)``."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()
            elif not self._processing:
                self._cond.notify_all()

    def add_after(self, key: str, delay_seconds: float) -> None:
        if self.shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return
        due_at = self._clock() + delay_seconds
        with self._delay_cond:
            existing = self._waiting_due.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            self._delay_cond.notify()

    def add_rate_limited(self, key: str) -> None:
        METRICS.workqueue_retries_total.labels(name=self.name).inc()
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def _pop_due(self, now: float) -> list[str]:
        ready: list[str] = []
        while self._waiting and self._waiting[0][0] <= now:
            due_at, _, key = heapq.heappop(self._waiting)
            # Entries superseded by an earlier due time are stale.
            if self._waiting_due.get(key) != due_at:
                continue
            del self._waiting_due[key]
            ready.append(key)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._delay_cond:
                if self.shutting_down:
                    return
                ready = self._pop_due(self._clock())
                if not ready:
                    timeout = None
                    if self._waiting:
                        timeout = max(0.0, self._waiting[0][0] - self._clock())
                    self._delay_cond.wait(timeout=timeout)
                    continue
            for key in ready:
                self.add(key)

    def shut_down(self) -> None:
        """Stop accepting keys and wake every blocked ``get()``."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._delay_cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down, then wait for in-flight keys to be marked done.

        Returns ``False`` if keys were still in flight when *timeout* expired.
        """
        self.shut_down()
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._processing:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    LOGGER.warning(
                        "Queue %s still has %d key(s) in flight after drain timeout",
                        self.name,
                        len(self._processing),
                    )
                    return False
                self._cond.wait(timeout=remaining)
        return True
