import json
import socket
import ssl
import threading
import time
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from curlkit.config import TransferDefaults
from curlkit.session import Session


class RoutingHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        self._dispatch()

    def do_HEAD(self):
        self._dispatch()

    def do_POST(self):
        self._dispatch()

    def do_PUT(self):
        self._dispatch()

    def do_DELETE(self):
        self._dispatch()

    def _dispatch(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        self.server.requests.append(
            {
                "method": self.command,
                "path": self.path,
                "headers": dict(self.headers.items()),
                "body": body,
                "client": self.client_address,
            }
        )

        path = self.path.split("?", 1)[0]
        if path == "/ok":
            self._send(200, b"ok", [("Content-Type", "text/plain")])
        elif path == "/redirect":
            self._send(301, b"moved", [("Location", "/next")])
        elif path == "/next":
            self._send(200, b"next")
        elif path.startswith("/chain/"):
            remaining = int(path.rsplit("/", 1)[1])
            if remaining > 0:
                self._send(302, b"", [("Location", f"/chain/{remaining - 1}")])
            else:
                self._send(200, b"end")
        elif path == "/redirect-to":
            query = parse_qs(urlsplit(self.path).query)
            status = int(query.get("status", ["302"])[0])
            self._send(status, b"", [("Location", query["url"][0])])
        elif path == "/see-other":
            self._send(303, b"", [("Location", "/echo")])
        elif path == "/temporary":
            self._send(307, b"", [("Location", "/echo")])
        elif path == "/echo":
            payload = {
                "method": self.command,
                "path": self.path,
                "headers": dict(self.headers.items()),
                "body": body.decode("utf-8", errors="replace"),
            }
            self._send(200, json.dumps(payload).encode("utf-8"), [("Content-Type", "application/json")])
        elif path == "/chunked":
            self.send_response(200)
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for piece in (b"hel", b"lo ", b"world"):
                self.wfile.write(b"%x\r\n%s\r\n" % (len(piece), piece))
            self.wfile.write(b"0\r\nX-Trailer: yes\r\n\r\n")
        elif path == "/close":
            self.send_response(200)
            self.send_header("Connection", "close")
            self.end_headers()
            self.wfile.write(b"until close")
            self.close_connection = True
        elif path == "/cookies":
            self._send(200, b"", [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        elif path == "/no-content":
            self._send(204, None)
        elif path == "/slow":
            time.sleep(2)
            self._send(200, b"late")
        else:
            self._send(404, b"not found")

    def _send(self, status, body, headers=()):
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        if body is not None:
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)


@contextmanager
def _running_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), RoutingHandler)
    server.requests = []
    server.base_url = f"http://127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def http_server():
    with _running_server() as server:
        yield server


@pytest.fixture
def other_http_server():
    """A second origin (same host, different port) for cross-origin redirects."""
    with _running_server() as server:
        yield server


@pytest.fixture
def raw_server():
    """
    Starts one-shot servers that answer the first request with canned bytes.
    hold_open keeps the socket open afterwards without sending anything else;
    drip sends the payload one byte at a time, `drip` seconds apart.
    """
    started = []

    def start(payload: bytes, hold_open: bool = False, drip: float = 0.0) -> str:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        release = threading.Event()

        def serve():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            with conn:
                received = b""
                while b"\r\n\r\n" not in received:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    received += chunk
                try:
                    if drip:
                        for i in range(len(payload)):
                            if release.wait(drip):
                                break
                            conn.sendall(payload[i:i + 1])
                    elif payload:
                        conn.sendall(payload)
                except OSError:
                    # client gave up first
                    return
                if hold_open:
                    release.wait(5)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        started.append((listener, release))
        return f"http://127.0.0.1:{listener.getsockname()[1]}/"

    yield start

    for listener, release in started:
        release.set()
        listener.close()


CERT_FILE = Path(__file__).parent / "data" / "selfsigned.pem"
KEY_FILE = Path(__file__).parent / "data" / "selfsigned.key"


@pytest.fixture
def tls_server():
    """
    HTTPS listener on 127.0.0.1 with a self-signed certificate (tests/data).
    Answers every request with a 200 "secure" body; handshake failures are ignored.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(CERT_FILE), str(KEY_FILE))
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    stopping = threading.Event()

    def serve():
        while not stopping.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            conn.settimeout(5)
            try:
                with context.wrap_socket(conn, server_side=True) as tls:
                    tls.settimeout(5)
                    received = b""
                    while b"\r\n\r\n" not in received:
                        chunk = tls.recv(4096)
                        if not chunk:
                            break
                        received += chunk
                    tls.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 6\r\nConnection: close\r\n\r\nsecure")
            except (ssl.SSLError, OSError):
                conn.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"https://127.0.0.1:{listener.getsockname()[1]}/"
    finally:
        stopping.set()
        listener.close()


@pytest.fixture
def session():
    s = Session(defaults=TransferDefaults(connect_timeout=5.0, timeout=10.0))
    s.init()
    try:
        yield s
    finally:
        s.close()
