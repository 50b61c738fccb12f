from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import threading

HEALTH_BODY = b"Poke relay running\n"


class _HealthHandler(BaseHTTPRequestHandler):
    def _reply(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(HEALTH_BODY)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(HEALTH_BODY)

    do_GET = _reply  # noqa: N815
    do_HEAD = _reply  # noqa: N815
    do_POST = _reply  # noqa: N815

    def log_message(self, _format, *_args):  # noqa: A003
        return


class HealthServer:
    """Liveness endpoint: 200 text/plain for any request, served off-loop."""

    def __init__(self, port: int, *, host: str = "0.0.0.0") -> None:
        self._server = ThreadingHTTPServer((host, int(port)), _HealthHandler)
        self._thread = threading.Thread(target=self._server.serve_forever, name="relay-health", daemon=True)

    @property
    def port(self) -> int:
        return int(self._server.server_address[1])

    def start(self) -> "HealthServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5.0)
        self._server.server_close()
