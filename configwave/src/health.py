from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    Readiness requires both the controller's watches to have synced and, when
    leader election is enabled, this replica to hold the lease.  Standby
    replicas therefore report not-ready while staying live.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _send(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._send(200, b"ok")

    def _leadz(self) -> None:
        if self._is_leader():
            self._send(200, b"ok")
        else:
            self._send(503, b"not leader")

    def _readyz(self) -> None:
        synced = self.synced_event.is_set()
        leader = self._is_leader()
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        self._send(200 if synced and leader else 503, body)

    def _metrics(self) -> None:
        self._send(200, generate_latest(), CONTENT_TYPE_LATEST)

    _ROUTES: dict[str, Callable[[_ProbeHandler], None]] = {
        "/healthz": _healthz,
        "/leadz": _leadz,
        "/readyz": _readyz,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        route = self._ROUTES.get(self.path.split("?", 1)[0])
        if route is None:
            self._send(404, b"not found")
            return
        route(self)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    synced: threading.Event, leader: threading.Event | None = None
) -> type[_ProbeHandler]:
    """Return a handler class bound to the given events.

    ``BaseHTTPRequestHandler`` subclasses are instantiated by the server with
    a fixed signature, so state is attached as class attributes.
    """

    class _BoundProbeHandler(_ProbeHandler):
        synced_event = synced
        leader_event = leader

    return _BoundProbeHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
