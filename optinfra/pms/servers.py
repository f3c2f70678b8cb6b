"""HTTP endpoints of the peer management service: health check and metrics."""

from __future__ import annotations

import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable
from urllib.parse import urlsplit

from optinfra.pms.pms_metrics import REGISTRY

log = logging.getLogger(__name__)

HEALTHZ_PATH = "/healthz"
_TEXT = "text/plain; charset=utf-8"
_PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_CORS_METHODS = ("GET", "POST", "HEAD")


class _Handler(BaseHTTPRequestHandler):
    server_version = "pms"

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        log.debug("%s - %s", self.address_string(), format % args)

    def _reply(
        self,
        status: int,
        body: bytes,
        content_type: str = _TEXT,
        headers: Iterable[tuple[str, str]] = (),
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in headers:
            self.send_header(name, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


class _HealthzHandler(_Handler):
    def _cors_headers(self) -> list[tuple[str, str]]:
        headers = [("Vary", "Origin")]
        if self.headers.get("Origin"):
            headers.append(("Access-Control-Allow-Origin", "*"))
        return headers

    def _route(self) -> None:
        headers = self._cors_headers()
        if urlsplit(self.path).path != HEALTHZ_PATH:
            self._reply(HTTPStatus.NOT_FOUND, b"404 page not found\n", headers=headers)
        elif self.command != "GET":
            self._reply(HTTPStatus.METHOD_NOT_ALLOWED, b"", headers=headers)
        else:
            self._reply(HTTPStatus.OK, b"OK", headers=headers)

    do_GET = do_HEAD = do_POST = do_PUT = do_DELETE = do_PATCH = _route

    def do_OPTIONS(self) -> None:
        method = self.headers.get("Access-Control-Request-Method")
        if self.headers.get("Origin") and method:
            headers = [
                ("Vary", "Origin, Access-Control-Request-Method, Access-Control-Request-Headers")
            ]
            if method.upper() in _CORS_METHODS:
                headers.append(("Access-Control-Allow-Origin", "*"))
                headers.append(("Access-Control-Allow-Methods", method.upper()))
            self._reply(HTTPStatus.NO_CONTENT, b"", headers=headers)
            return
        self._route()


class _MetricsHandler(_Handler):
    def _render(self) -> None:
        body = REGISTRY.render().encode("utf-8")
        self._reply(HTTPStatus.OK, body, content_type=_PROMETHEUS_CONTENT_TYPE)

    do_GET = do_HEAD = do_POST = _render


class _HTTPServer:
    """A blocking HTTP server that another thread can stop."""

    def __init__(self) -> None:
        self._httpd: ThreadingHTTPServer | None = None
        self._address: tuple[str, int] | None = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound host and port, once started."""
        return self._address

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait until the server is listening."""
        return self._ready.wait(timeout)

    def _serve(
        self, host: str, port: int | str, handler_class: type[BaseHTTPRequestHandler]
    ) -> None:
        httpd = ThreadingHTTPServer((host, int(port)), handler_class)
        httpd.daemon_threads = True
        with self._lock:
            self._httpd = httpd
            self._address = httpd.server_address[:2]
        self._ready.set()
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()

    def _stop(self) -> None:
        with self._lock:
            httpd, self._httpd = self._httpd, None
        if httpd is not None:
            httpd.shutdown()
        self._ready.clear()


class HealthzServer(_HTTPServer):
    """Answers GET /healthz with OK."""

    def start(self, host: str, port: int | str) -> None:
        """Listen on host and port and serve the health check until shut down."""
        self._serve(host, port, _HealthzHandler)

    def shutdown(self) -> None:
        """Stop serving; does nothing if the server never started."""
        self._stop()


class MetricsServer(_HTTPServer):
    """Serves the metrics registry in Prometheus text format."""

    def start(self, host: str, port: int | str) -> None:
        """Listen on host and port and serve metrics until shut down."""
        self._serve(host, port, _MetricsHandler)

    def shutdown(self) -> None:
        """Stop serving; does nothing if the server never started."""
        self._stop()