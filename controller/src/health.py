from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _AdminHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, metrics and class reload."""

    ready_event: threading.Event
    reload_fn: Callable[[], Any] | None

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

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def do_POST(self) -> None:
        if self.path != "/reload":
            self._respond(404)
            return
        reload_fn = type(self).reload_fn
        if reload_fn is None:
            self._respond(501, b"reload not configured")
            return
        try:
            reload_fn()
        except Exception as exc:
            LOGGER.warning("Class data reload rejected: %s", exc)
            self._respond(500, f"reload failed: {exc}".encode())
            return
        self._respond(200, b"reloaded")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_admin_handler(
    ready: threading.Event, reload_fn: Callable[[], Any] | None = None
) -> type[_AdminHandler]:
    """Return a handler class bound to the given readiness event and reload hook.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundAdminHandler(_AdminHandler):
        ready_event = ready

    # staticmethod keeps the callable from being bound as an instance method
    bound_reload = staticmethod(reload_fn) if reload_fn else None
    _BoundAdminHandler.reload_fn = bound_reload  # type: ignore[assignment]
    return _BoundAdminHandler


def start_admin_server(
    ready: threading.Event,
    port: int,
    reload_fn: Callable[[], Any] | None = None,
) -> ThreadingHTTPServer:
    """Start the admin HTTP server in a daemon thread and return it."""
    handler_class = make_admin_handler(ready, reload_fn=reload_fn)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    LOGGER.info("Admin server listening on :%d", port)
    return server
