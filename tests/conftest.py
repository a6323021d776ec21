import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import pytest


class _StubHandler(BaseHTTPRequestHandler):
    def _handle(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        stub = self.server.stub
        stub.requests.append({
            "method": self.command,
            "path": self.path,
            "headers": self.headers,
            "body": body,
        })

        route = stub.routes.get(urlsplit(self.path).path)
        if route is None:
            payload = json.dumps({"method": self.command, "path": self.path}).encode()
            route = {"status": 200, "headers": {"Content-Type": "application/json"}, "body": payload}

        payload = route["body"]
        self.send_response(route["status"])
        for key, value in route["headers"].items():
            self.send_header(key, value)
        if route.get("truncate"):
            # announce more bytes than are sent, then drop the connection
            self.send_header("Content-Length", str(len(payload) + 100))
            self.end_headers()
            self.wfile.write(payload)
            self.close_connection = True
            return
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = do_HEAD = _handle

    def log_message(self, format, *args):
        pass


class StubServer:
    """Threaded HTTP server that records requests and serves canned routes."""

    def __init__(self):
        self.requests = []
        self.routes = {}
        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), _StubHandler)
        self._httpd.daemon_threads = True
        self._httpd.stub = self
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def url(self):
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def respond(self, path, status=200, body=b"", headers=None, truncate=False):
        self.routes[path] = {
            "status": status,
            "headers": headers or {},
            "body": body,
            "truncate": truncate,
        }

    def respond_json(self, path, payload, status=200):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.respond(path, status=status, body=body, headers={"Content-Type": "application/json"})

    @property
    def last(self):
        return self.requests[-1]

    def start(self):
        self._thread.start()

    def stop(self):
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture
def server():
    stub = StubServer()
    stub.start()
    yield stub
    stub.stop()


@pytest.fixture
def silent_url():
    """URL of a socket that accepts connections and never answers."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    host, port = sock.getsockname()
    yield f"http://{host}:{port}"
    sock.close()


@pytest.fixture
def stalled_url():
    """URL of a listener whose accept queue is full, so new connects hang."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(0)
    address = sock.getsockname()
    fillers = []
    for _ in range(8):
        filler = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        filler.setblocking(False)
        filler.connect_ex(address)
        fillers.append(filler)
    yield f"http://{address[0]}:{address[1]}"
    for filler in fillers:
        filler.close()
    sock.close()
