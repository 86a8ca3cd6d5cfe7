from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any


@dataclass
class CachedService:
    """Last observed state of a Service, kept so a later deletion can still be processed."""

    state: Any = None


class _ReadWriteLock:
    """Many concurrent readers or one writer; a waiting writer holds off new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ServiceCache:
    """Thread-safe map of service key to :class:`CachedService`.

    Presence of a key means the controller may still owe the provider a
    deletion for that service.  Node resyncs list the cache far more often
    than workers mutate it, hence the read/write lock.  The lock only ever
    guards map access; callers must not hold it across provider calls.
    """

    def __init__(self) -> None:
        self._lock = _ReadWriteLock()
        self._services: dict[str, CachedService] = {}

    def get(self, key: str) -> CachedService | None:
        with self._lock.read():
            return self._services.get(key)

    def get_or_create(self, key: str) -> CachedService:
        with self._lock.write():
            cached = self._services.get(key)
            if cached is None:
                cached = CachedService()
                self._services[key] = cached
            return cached

    def set(self, key: str, cached: CachedService) -> None:
        with self._lock.write():
            self._services[key] = cached

    def delete(self, key: str) -> None:
        with self._lock.write():
            self._services.pop(key, None)

    def list_keys(self) -> list[str]:
        with self._lock.read():
            return list(self._services)

    def all_services(self) -> list[Any]:
        """Snapshot every cached service state, skipping entries never populated."""
        with self._lock.read():
            return [cached.state for cached in self._services.values() if cached.state is not None]

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._services)


class LastSyncedNodes:
    """Per-service record of the node set last pushed to the provider.

    Replaced on every node resync attempt whether or not the provider call
    succeeded; failures are retried through the service queue instead.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, list[Any]] = {}

    def get(self, key: str) -> list[Any]:
        with self._lock:
            return list(self._nodes.get(key, ()))

    def store(self, key: str, nodes: list[Any]) -> None:
        with self._lock:
            self._nodes[key] = list(nodes)

    def forget(self, key: str) -> None:
        with self._lock:
            self._nodes.pop(key, None)
