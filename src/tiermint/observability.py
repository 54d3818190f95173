# -*- coding: utf-8 -*-
"""Prometheus exporter for the reservation engine.

Every scrape refreshes the per-tier ``tiermint_available_identifiers`` gauge
from the primary store and sets ``tiermint_exporter_health`` to 1 only while
the engine is started and its ledger is readable.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional
from wsgiref.simple_server import WSGIRequestHandler

from prometheus_client import make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from .engine import ReservationEngine
from .errors import AllocationError
from .logging_utils import event_logger
from .metrics import DEFAULT_METERS, AllocationMeters
from .types import LoggerLike


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: object) -> None:  # noqa: D401
        return


class MetricsServer:
    """Serves the allocation meters and keeps the ledger gauges current."""

    def __init__(
        self,
        meters: AllocationMeters = DEFAULT_METERS,
        *,
        engine: Optional[ReservationEngine] = None,
        host: str = "0.0.0.0",
        logger: LoggerLike | None = None,
    ) -> None:
        self._meters = meters
        self._engine = engine
        self._host = host
        self._logger = logger or event_logger("tiermint.metrics")
        self._lock = threading.Lock()
        self._server: ThreadingWSGIServer | None = None
        self._thread: threading.Thread | None = None
        self._port: Optional[int] = None

    def refresh(self) -> bool:
        """Re-read the ledger into the gauges; returns the health verdict."""

        healthy = True
        if self._engine is not None:
            if not self._engine.started:
                healthy = False
            else:
                try:
                    self._engine.stats()
                except AllocationError as exc:
                    self._logger.warning("metrics_refresh_failed", extra={"code": exc.code})
                    healthy = False
        self._meters.exporter_health(1.0 if healthy else 0.0)
        return healthy

    def _app(self) -> Callable[[dict, Callable], Iterable[bytes]]:
        exposition = make_wsgi_app(self._meters.registry)

        def _scrape(environ: dict, start_response: Callable) -> Iterable[bytes]:
            self.refresh()
            return exposition(environ, start_response)

        return _scrape

    def start(self, port: int) -> None:
        with self._lock:
            if self._server is not None:
                return
            server = ThreadingWSGIServer((self._host, port), _QuietHandler)  # nosec B104
            server.allow_reuse_address = True
            server.daemon_threads = True
            server.set_app(self._app())
            thread = threading.Thread(target=server.serve_forever, name="tiermint-metrics", daemon=True)
            thread.start()
            self._server = server
            self._thread = thread
            self._port = int(server.server_address[1])
            self._meters.http_started(1.0)
        self.refresh()
        self._logger.info("metrics_server_started", extra={"port": self._port})

    def stop(self) -> None:
        with self._lock:
            if self._server is None:
                return
            server, thread = self._server, self._thread
            self._server = self._thread = self._port = None
            server.shutdown()
            if thread is not None:
                thread.join(timeout=5)
            server.server_close()
            self._meters.exporter_health(0.0)
            self._meters.http_started(0.0)

    @property
    def port(self) -> Optional[int]:
        return self._port


@contextmanager
def metrics_server(
    port: int,
    meters: AllocationMeters | None = None,
    *,
    engine: Optional[ReservationEngine] = None,
) -> Iterator[MetricsServer]:
    server = MetricsServer(meters or DEFAULT_METERS, engine=engine)
    server.start(port)
    try:
        yield server
    finally:
        server.stop()


__all__ = ["MetricsServer", "metrics_server"]
