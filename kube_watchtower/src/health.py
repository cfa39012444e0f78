from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class CycleWatchdog:
    """Tracks how long the current reconciliation cycle has been running."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._started: float | None = None

    def cycle_started(self) -> None:
        with self._lock:
            self._started = self._clock()

    def cycle_finished(self) -> None:
        with self._lock:
            self._started = None

    def busy_for(self) -> float:
        """Seconds spent in the running cycle, ``0.0`` while idle."""
        with self._lock:
            if self._started is None:
                return 0.0
            return self._clock() - self._started


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness and Prometheus metrics.

    ``/healthz`` fails once a single cycle has been running for longer than
    ``stall_after`` seconds, which catches a scheduler stuck inside a remote
    call. ``/readyz`` turns green after the first inventory listing succeeded.
    """

    ready_event: threading.Event
    watchdog: CycleWatchdog | None
    stall_after: float | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            busy_for = self.watchdog.busy_for() if self.watchdog is not None else 0.0
            if self.stall_after is None or busy_for <= self.stall_after:
                self._respond(200, b"ok")
            else:
                self._respond(503, f"stalled: cycle running for {busy_for:.0f}s".encode())
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("kube_watchtower.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    watchdog: CycleWatchdog | None = None,
    stall_after: float | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.watchdog = watchdog
    _BoundHealthHandler.stall_after = stall_after

    server = ThreadingHTTPServer(("0.0.0.0", port), _BoundHealthHandler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
