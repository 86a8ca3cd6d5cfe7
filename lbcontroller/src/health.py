from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lbcontroller.src.informer import Informer


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    informers: Sequence[Informer] = ()

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[bool, str]:
        """Return overall readiness and a ``name=bool`` summary of every store plus the workers."""
        states = [(informer.name, informer.has_synced.is_set()) for informer in self.informers]
        states.append(("workers", self.ready_event.is_set()))
        summary = " ".join(f"{name}={'true' if ok else 'false'}" for name, ok in states)
        return all(ok for _, ok in states), summary

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, summary = self._readiness()
            self._respond(200 if ready else 503, summary.encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("lbcontroller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, informers: Sequence[Informer] = ()
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness state.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.informers = tuple(informers)
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, informers: Sequence[Informer] = ()
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, informers=informers)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
