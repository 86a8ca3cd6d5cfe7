from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from lbcontroller.src.kube import namespaced_key
from lbcontroller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

MAX_WATCH_TIMEOUT_SECONDS = 300


class Store:
    """Thread-safe, read-mostly snapshot of the objects an informer has observed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def upsert(self, key: str, obj: Any) -> Any:
        """Store *obj* and return the previous object under *key*, if any."""
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
            return previous

    def delete(self, key: str) -> Any:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, items: dict[str, Any]) -> dict[str, Any]:
        """Swap in a full listing and return the contents it replaced."""
        with self._lock:
            previous = self._items
            self._items = dict(items)
            return previous


@dataclass(frozen=True)
class EventHandler:
    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch a resource into a :class:`Store` and notify handlers.

    1. Lists the resource (retrying with jittered exponential backoff) and
       seeds the store, dispatching ``on_add`` for every object, then sets
       ``has_synced``.
    2. Watches from the list's ``resourceVersion``.  Watch timeouts are
       clamped so the loop wakes up in time for the periodic resync.
    3. Every ``resync_period_seconds`` dispatches ``on_update(obj, obj)`` for
       each stored object.  This is a safety net against missed or coalesced
       notifications and involves no API call.
    4. On ``410 Gone`` re-lists and dispatches the add/update/delete
       difference against the store.
    5. ``401`` / ``403`` are configuration errors (RBAC/auth) and end the
       loop instead of retrying forever.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        resync_period_seconds: float,
        key_fn: Callable[[Any], str] = namespaced_key,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.resync_period_seconds = resync_period_seconds
        self.key_fn = key_fn
        self.logger = logger or LOGGER
        self.clock = clock

        self.store = Store()
        self.has_synced = threading.Event()
        self._handlers: list[EventHandler] = []
        self._next_resync_at: float | None = None
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete))

    def _dispatch(self, callback_name: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, callback_name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("%s handler %s failed", self.name, callback_name)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> tuple[dict[str, Any], str | None]:
        listing = self.list_fn()
        items: dict[str, Any] = {}
        for obj in getattr(listing, "items", None) or []:
            try:
                items[self.key_fn(obj)] = obj
            except ValueError:
                self.logger.warning("Skipping %s without a usable key", self.name)
        return items, _resource_version(listing)

    def _replace(self, items: dict[str, Any]) -> None:
        previous = self.store.replace(items)
        for key, obj in items.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("on_add", obj)
            elif _resource_version(old) != _resource_version(obj):
                self._dispatch("on_update", old, obj)
        for key, old in previous.items():
            if key not in items:
                self._dispatch("on_delete", old)

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        try:
            key = self.key_fn(obj)
        except ValueError:
            self.logger.warning("Ignoring %s %s event without a usable key", self.name, event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            old = self.store.upsert(key, obj)
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "DELETED":
            old = self.store.delete(key)
            self._dispatch("on_delete", old if old is not None else obj)

    def resync(self) -> None:
        for obj in self.store.list():
            self._dispatch("on_update", obj, obj)

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        self.logger.debug("Resyncing %d %s object(s)", len(self.store.keys()), self.name)
        self.resync()
        self._next_resync_at = now_monotonic + self.resync_period_seconds

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so the periodic resync fires on time."""
        if self._next_resync_at is None:
            return MAX_WATCH_TIMEOUT_SECONDS
        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return min(MAX_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    def run(self, stop_event: threading.Event) -> None:
        """List, then watch until *stop_event* is set or access is denied."""
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                items, resource_version = self._list()
                self._replace(items)
                if self.resync_period_seconds > 0:
                    self._next_resync_at = self.clock() + self.resync_period_seconds
                self.has_synced.set()
                self.logger.info(
                    "Listed %d %s; watching from resourceVersion %s",
                    len(items),
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop_event):
            self._maybe_resync(self.clock())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(self.clock()),
                )

                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue
                    version = _resource_version(obj)
                    if version:
                        resource_version = version

                    self.handle_watch_event(str(event.get("type", "")), obj)
                    self._maybe_resync(self.clock())

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    try:
                        items, resource_version = self._list()
                        self._replace(items)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s).",
                                self.name,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(resource=self.name).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.name).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def _run_informer(informer: Informer, stop_event: threading.Event) -> None:
    try:
        informer.run(stop_event)
    except Exception:
        LOGGER.exception("Informer %s crashed", informer.name)
    if not stop_event.is_set():
        LOGGER.error("Informer %s exited without a stop signal; shutting down", informer.name)
        stop_event.set()


def start_informers(informers: list[Informer], stop_event: threading.Event) -> list[threading.Thread]:
    """Run each informer in a daemon thread; any informer exiting early sets *stop_event*."""
    threads = []
    for informer in informers:
        thread = threading.Thread(
            target=_run_informer,
            args=(informer, stop_event),
            name=f"informer-{informer.name}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads


def wait_for_cache_sync(
    controller_name: str,
    stop_event: threading.Event,
    *informers: Informer,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Block until every informer has synced; ``False`` if stopped first."""
    LOGGER.info("Waiting for caches to sync for %s", controller_name)
    while not stop_event.is_set():
        if all(informer.has_synced.is_set() for informer in informers):
            LOGGER.info("Caches are synced for %s", controller_name)
            return True
        stop_event.wait(timeout=poll_interval_seconds)
    LOGGER.error("Unable to sync caches for %s", controller_name)
    return False
