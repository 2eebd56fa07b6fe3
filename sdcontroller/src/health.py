from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

CacheStatusFn = Callable[[], dict[str, bool]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    cache_status: CacheStatusFn | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness_text(self) -> str:
        parts = [f"ready={'true' if self.ready_event.is_set() else 'false'}"]
        if self.cache_status is not None:
            parts.extend(
                f"{resource}={'synced' if synced else 'pending'}"
                for resource, synced in sorted(self.cache_status().items())
            )
        return " ".join(parts)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            status = 200 if self.ready_event.is_set() else 503
            self._respond(status, self._readiness_text().encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("sdcontroller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, cache_status: CacheStatusFn | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the engine's readiness state.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # Assigned after class creation so the function is not bound as a method.
    _BoundHealthHandler.cache_status = staticmethod(cache_status) if cache_status else None  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, cache_status: CacheStatusFn | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, cache_status=cache_status)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
