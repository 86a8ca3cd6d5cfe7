from __future__ import annotations

import logging
import queue
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
DEFAULT_COMPONENT = "service-controller"


class EventRecorder:
    """Fire-and-forget sink for events attached to cluster objects.

    ``event()`` never blocks and never raises: events are logged, queued,
    and written by a background thread.  When the buffer is full the event
    is dropped with a warning, mirroring how the cluster event broadcaster
    sheds load.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = DEFAULT_COMPONENT,
        max_pending: int = 1000,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or LOGGER
        self._pending: queue.Queue[CoreV1Event | None] = queue.Queue(maxsize=max_pending)
        self._thread: threading.Thread | None = None

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or "default"
        name = getattr(metadata, "name", None) or "<unknown>"
        log = self.logger.warning if event_type == EVENT_TYPE_WARNING else self.logger.info
        log("Event(%s/%s): type=%s reason=%s message=%s", namespace, name, event_type, reason, message)

        try:
            self._pending.put_nowait(self._build_event(obj, event_type, reason, message))
        except queue.Full:
            self.logger.warning("Dropping event %s for %s/%s: sink buffer full", reason, namespace, name)

    def _build_event(self, obj: Any, event_type: str, reason: str, message: str) -> CoreV1Event:
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or "default"
        name = getattr(metadata, "name", None) or "unknown"
        now = datetime.now(UTC)
        return CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{name}.{uuid.uuid4().hex[:16]}",
                namespace=namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=getattr(obj, "api_version", None) or "v1",
                kind=getattr(obj, "kind", None) or "Service",
                name=name,
                namespace=namespace,
                uid=getattr(metadata, "uid", None),
                resource_version=getattr(metadata, "resource_version", None),
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            reporting_component=self.component,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def _write(self, event: CoreV1Event) -> None:
        try:
            self.core_api.create_namespaced_event(namespace=event.metadata.namespace, body=event)
        except ApiException as exc:
            self.logger.warning(
                "Failed to record event %s for %s/%s: %s",
                event.reason,
                event.involved_object.namespace,
                event.involved_object.name,
                exc.reason,
            )

    def _run(self) -> None:
        while True:
            event = self._pending.get()
            if event is None:
                return
            self._write(event)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="event-recorder", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Flush queued events (bounded by *timeout*) and stop the sink thread."""
        if self._thread is None:
            return
        try:
            self._pending.put(None, timeout=timeout)
        except queue.Full:
            self.logger.warning("Event sink still backlogged at shutdown; abandoning pending events")
        self._thread.join(timeout=timeout)
        self._thread = None
