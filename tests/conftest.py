import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


class Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def _send(self, status: int, body: bytes, content_type: str = "text/plain", extra=()):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in extra:
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        if self.path == "/text":
            self._send(200, b"hello world", "text/html; charset=utf-8")
        elif self.path == "/redirect":
            self._send(302, b"", extra=[("Location", "/text")])
        elif self.path == "/loop":
            self._send(302, b"", extra=[("Location", "/loop")])
        elif self.path == "/login":
            self._send(302, b"", extra=[("Location", "/whoami"), ("Set-Cookie", "session=abc; Path=/")])
        elif self.path == "/whoami":
            body = "cookie=%s;referer=%s;agent=%s" % (
                self.headers.get("Cookie", ""),
                self.headers.get("Referer", ""),
                self.headers.get("User-Agent", ""),
            )
            self._send(200, body.encode(), "text/plain")
        elif self.path == "/stream":
            # No Content-Length: the body ends only when the client goes away.
            self.send_response(200)
            self.send_header("Content-Type", "audio/mpeg")
            self.end_headers()
            try:
                while True:
                    self.wfile.write(b"x" * 1024)
                    self.wfile.flush()
                    time.sleep(0.005)
            except (BrokenPipeError, ConnectionResetError):
                return
        else:
            self._send(404, b"missing")


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, name="test-http-server", daemon=True)
    thread.start()
    try:
        yield "http://127.0.0.1:%d" % server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()
