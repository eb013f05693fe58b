from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness, readiness, leadership and Prometheus endpoints.

    ``/readyz`` is green only when the running controller has ingested
    its first list *and*, with leader election on, this replica leads.
    Followers therefore report not-ready, which keeps them out of any
    Service that fronts the leader.
    """

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"leader")
            else:
                self._respond(503, b"follower")
        elif self.path == "/readyz":
            synced = self.ready_event.is_set()
            leader = self._is_leader()
            body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
            self._respond(200 if synced and leader else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reconciler.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve the health endpoints from a daemon thread and return the server.

    The handler class is bound to *ready*/*leader* through class
    attributes because ``HTTPServer`` instantiates handlers itself.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        leader_event = leader

    server = ThreadingHTTPServer(("0.0.0.0", port), _BoundHealthHandler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
