"""
HTTP/1.1 transport

Owns at most one socket at a time and speaks plain HTTP/1.1 framing over it:
request line and headers out, status line, headers and a body framed by
chunked encoding, Content-Length or connection close back in.

Every blocking call is bounded by a Deadline: the socket timeout is set to
whatever is left of the transfer's budget right before the call, so a single
TIMEOUT covers connect, redirects and the last body byte alike.
"""

import base64
import logging
import re
import select
import socket
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlsplit

from requests.certs import where as default_ca_bundle
from requests.utils import requote_uri

from ..common.errors import (
    HostResolutionError,
    InvalidOptionValueError,
    ProtocolViolationError,
    TimeoutExceededError,
    TLSVerificationError,
    TooManyRedirectsError,
    TransferError,
    TransportIOError,
)
from ..interfaces import ITransport
from .options import TOKEN_RE, TransferOptions
from .result import TransferResult

logger = logging.getLogger(__name__)

MAX_LINE = 65536
MAX_HEADERS = 100
READ_SIZE = 65536
REDIRECT_CODES = (301, 302, 303, 307, 308)
DEFAULT_PORTS = {"http": 80, "https": 443}

_STATUS_RE = re.compile(rb"^HTTP/(\d)\.(\d) (\d{3})(?: ([^\r\n]*))?\r?\n$")
_DIGITS_RE = re.compile(r"[0-9]+")
_HEX_RE = re.compile(rb"[0-9A-Fa-f]+")
_ENTITY_HEADERS = {"content-length", "content-type", "transfer-encoding"}


@dataclass(frozen=True)
class Target:
    """A request URL split into what the socket and the request line need."""
    scheme: str
    host: str
    port: int
    request_target: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def host_header(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"


def parse_target(url: str) -> Target:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ProtocolViolationError(f"Unsupported URL scheme in {url!r}")
    if not parts.hostname:
        raise InvalidOptionValueError(f"URL has no host: {url!r}")
    try:
        port = parts.port or DEFAULT_PORTS[scheme]
    except ValueError as exc:
        raise InvalidOptionValueError(f"Invalid port in URL {url!r}", original_exception=exc)

    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    return Target(
        scheme=scheme,
        host=parts.hostname,
        port=port,
        request_target=requote_uri(path),
        url=url,
        username=unquote(parts.username) if parts.username is not None else None,
        password=unquote(parts.password) if parts.password is not None else None,
    )


class Deadline:
    """Absolute expiry for a sequence of blocking calls; None or 0 means unbounded."""

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise TimeoutExceededError(f"Operation timed out after {self.seconds} seconds")
        return left

    def narrowed(self, seconds: Optional[float]) -> "Deadline":
        """A deadline expiring at the earlier of this one and `seconds` from now."""
        candidate = Deadline(seconds)
        if candidate.expires_at is None:
            return self
        if self.expires_at is not None and self.expires_at <= candidate.expires_at:
            return self
        return candidate


@dataclass
class Timeline:
    started: float = field(default_factory=time.monotonic)
    namelookup: float = 0.0
    connect: float = 0.0
    appconnect: float = 0.0
    starttransfer: float = 0.0

    def elapsed(self) -> float:
        return time.monotonic() - self.started


@dataclass
class RawResponse:
    version: str
    status: int
    reason: str
    headers: List[Tuple[str, str]]
    body: bytes
    header_size: int
    keep_alive: bool


def build_ssl_context(verify: bool, ca_bundle: Optional[str] = None) -> ssl.SSLContext:
    if not verify:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context
    try:
        return ssl.create_default_context(cafile=ca_bundle or default_ca_bundle())
    except (OSError, ssl.SSLError) as exc:
        raise InvalidOptionValueError(f"Cannot load CA bundle {ca_bundle!r}: {exc}", original_exception=exc)


@contextmanager
def translated_errors(target: Target) -> Iterator[None]:
    """Map socket, resolver and TLS failures onto the transfer error taxonomy."""
    where = f"{target.host}:{target.port}"
    try:
        yield
    except TransferError:
        raise
    except socket.gaierror as exc:
        raise HostResolutionError(f"Could not resolve host {target.host!r}: {exc}", original_exception=exc) from exc
    except ssl.SSLCertVerificationError as exc:
        reason = getattr(exc, "verify_message", None) or exc
        raise TLSVerificationError(f"Certificate verification failed for {where}: {reason}", original_exception=exc) from exc
    except socket.timeout as exc:
        raise TimeoutExceededError(f"Timed out talking to {where}", original_exception=exc) from exc
    except OSError as exc:
        raise TransportIOError(f"I/O error with {where}: {exc}", errno=exc.errno, original_exception=exc) from exc


class Connection:
    """A socket plus the bytes read from it that no response has consumed yet."""

    def __init__(self, sock: socket.socket, key: tuple, primary_ip: str, primary_port: int):
        self.sock = sock
        self.buffer = bytearray()
        self.key = key
        self.primary_ip = primary_ip
        self.primary_port = primary_port

    def arm(self, deadline: Deadline) -> None:
        self.sock.settimeout(deadline.remaining())

    def fill(self, deadline: Deadline) -> bool:
        """One bounded recv into the buffer; False once the peer has closed."""
        self.arm(deadline)
        chunk = self.sock.recv(READ_SIZE)
        if not chunk:
            return False
        self.buffer += chunk
        return True

    def take(self, size: int) -> bytes:
        data = bytes(self.buffer[:size])
        del self.buffer[:size]
        return data

    def is_dropped(self) -> bool:
        """An idle keep-alive connection with anything left to read has been closed (or spoken to) by the peer."""
        if self.buffer:
            return True
        if isinstance(self.sock, ssl.SSLSocket) and self.sock.pending():
            return True
        try:
            readable, _, _ = select.select([self.sock], [], [], 0)
        except (OSError, ValueError):
            return True
        return bool(readable)

    def close(self) -> None:
        self.buffer.clear()
        try:
            self.sock.close()
        except OSError as exc:
            logger.debug("Ignoring error while closing connection: %s", exc)


class Transport(ITransport):
    """
    Performs transfers over a single, lazily opened connection that is kept
    for the next request to the same origin when the server allows it.
    """

    def __init__(self):
        self._conn: Optional[Connection] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # === High-level operations ===

    def perform(self, options: TransferOptions) -> TransferResult:
        """
        Run one transfer, following redirects when enabled. The connection is
        closed on any failure.
        """
        if not options.url:
            raise InvalidOptionValueError("No URL set for this transfer")

        started = time.monotonic()
        deadline = Deadline(options.timeout)
        url = options.url
        method = options.method
        body = options.body
        headers = list(options.headers)
        redirects = 0

        while True:
            target = parse_target(url)
            result = self._exchange(target, method, headers, body, options, deadline, started)
            result.redirect_count = redirects

            location = result.header("Location")
            if result.status_code not in REDIRECT_CODES or not location:
                break

            next_url = urljoin(target.url, location)
            if not options.follow_redirects:
                result.redirect_url = next_url
                break
            if redirects >= options.max_redirects:
                raise TooManyRedirectsError(f"Maximum ({options.max_redirects}) redirects followed")

            redirects += 1
            logger.debug("Redirect %d: %s %s -> %s", redirects, result.status_code, target.url, next_url)

            if (result.status_code == 303 and method != "HEAD") or (
                result.status_code in (301, 302) and method == "POST"
            ):
                method = "GET"
                body = None
                headers = [(name, value) for name, value in headers if name.lower() not in _ENTITY_HEADERS]

            following = parse_target(next_url)
            if (following.scheme, following.host, following.port) != (target.scheme, target.host, target.port):
                headers = [(name, value) for name, value in headers if name.lower() != "authorization"]
            url = next_url

        result.total_time = time.monotonic() - started
        logger.debug(
            "%s %s -> %s (%d bytes, %.3fs)",
            result.effective_method, result.effective_url, result.status_code, result.size_download, result.total_time,
        )
        return result

    def close(self) -> None:
        """Release the socket (and TLS context). Safe to call repeatedly."""
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    # === Connection-level operations ===

    def open(self, target: Target, options: TransferOptions, deadline: Deadline, timeline: Optional[Timeline] = None) -> Connection:
        """
        Return a live connection to the target's origin, reusing the current
        one when it matches and the peer has not dropped it.
        """
        timeline = timeline or Timeline()
        key = (target.scheme, target.host, target.port, options.verify_tls, options.ca_bundle)
        if self._conn is not None:
            if self._conn.key == key and not self._conn.is_dropped():
                logger.debug("Reusing connection to %s:%s", target.host, target.port)
                return self._conn
            self.close()

        connect_deadline = deadline.narrowed(options.connect_timeout)
        with translated_errors(target):
            addresses = socket.getaddrinfo(target.host, target.port, type=socket.SOCK_STREAM)
        timeline.namelookup = timeline.elapsed()

        sock, address = self._connect_any(target, addresses, connect_deadline)
        timeline.connect = timeline.elapsed()
        logger.debug("Connected to %s (%s) port %s", target.host, address[0], address[1])

        if target.scheme == "https":
            try:
                context = build_ssl_context(options.verify_tls, options.ca_bundle)
                with translated_errors(target):
                    sock.settimeout(connect_deadline.remaining())
                    sock = context.wrap_socket(sock, server_hostname=target.host)
            except Exception:
                sock.close()
                raise
            timeline.appconnect = timeline.elapsed()
            logger.debug("TLS established with %s using %s", target.host, sock.version())

        self._conn = Connection(sock, key, address[0], address[1])
        return self._conn

    def send(self, target: Target, method: str, headers: List[Tuple[str, str]], body: Optional[bytes], options: TransferOptions, deadline: Deadline) -> Tuple[int, int]:
        """Write the request; returns (request header bytes, body bytes)."""
        conn = self._require_connection()
        names = {name.lower() for name, _ in headers}

        lines = [f"{method} {target.request_target} HTTP/1.1"]
        if "host" not in names:
            lines.append(f"Host: {target.host_header}")
        if options.user_agent and "user-agent" not in names:
            lines.append(f"User-Agent: {options.user_agent}")
        if "accept" not in names:
            lines.append("Accept: */*")
        if target.username is not None and "authorization" not in names:
            credentials = f"{target.username}:{target.password or ''}".encode("utf-8")
            lines.append(f"Authorization: Basic {base64.b64encode(credentials).decode('ascii')}")
        lines.extend(f"{name}: {value}" for name, value in headers)

        framed = "content-length" in names or "transfer-encoding" in names
        if body is not None:
            if not framed:
                lines.append(f"Content-Length: {len(body)}")
            if "content-type" not in names:
                lines.append("Content-Type: application/x-www-form-urlencoded")
        elif method in ("POST", "PUT", "PATCH") and not framed:
            lines.append("Content-Length: 0")

        try:
            head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
        except UnicodeEncodeError as exc:
            raise InvalidOptionValueError("Request headers contain characters outside latin-1", original_exception=exc)

        payload = body or b""
        logger.debug("> %s %s", method, target.url)
        with translated_errors(target):
            conn.arm(deadline)
            conn.sock.sendall(head + payload)
        return len(head), len(payload)

    def receive(self, target: Target, method: str, deadline: Deadline, timeline: Optional[Timeline] = None) -> RawResponse:
        """Read one final response, skipping interim 1xx responses."""
        conn = self._require_connection()
        timeline = timeline or Timeline()
        header_size = 0

        with translated_errors(target):
            while True:
                version, status, reason, line_size = self._read_status_line(conn, deadline)
                if not timeline.starttransfer:
                    timeline.starttransfer = timeline.elapsed()
                headers, block_size = self._read_headers(conn, deadline)
                header_size += line_size + block_size
                if 100 <= status < 200 and status != 101:
                    logger.debug("Skipping interim %s response", status)
                    continue
                break

            body, keep_alive = self._read_body(conn, method, version, status, headers, deadline)

        logger.debug("< HTTP/%s %s %s", version, status, reason)
        return RawResponse(version, status, reason, headers, body, header_size, keep_alive)

    # === Internals ===

    def _exchange(self, target, method, headers, body, options, deadline, started) -> TransferResult:
        timeline = Timeline(started=started)
        try:
            conn = self.open(target, options, deadline, timeline)
            request_size, upload_size = self.send(target, method, headers, body, options, deadline)
            response = self.receive(target, method, deadline, timeline)
        except Exception:
            self.close()
            raise

        if not response.keep_alive:
            self.close()

        return TransferResult(
            status_code=response.status,
            reason=response.reason,
            http_version=response.version,
            headers=response.headers,
            body=response.body,
            effective_url=target.url,
            effective_method=method,
            primary_ip=conn.primary_ip,
            primary_port=conn.primary_port,
            header_size=response.header_size,
            request_size=request_size,
            size_upload=upload_size,
            namelookup_time=timeline.namelookup,
            connect_time=timeline.connect,
            appconnect_time=timeline.appconnect,
            starttransfer_time=timeline.starttransfer,
        )

    def _require_connection(self) -> Connection:
        if self._conn is None:
            raise TransportIOError("Transport has no open connection")
        return self._conn

    def _connect_any(self, target: Target, addresses, deadline: Deadline):
        last_error: Optional[OSError] = None
        for family, socktype, proto, _, address in addresses:
            timeout = deadline.remaining()
            sock = socket.socket(family, socktype, proto)
            try:
                sock.settimeout(timeout)
                sock.connect(address)
            except socket.timeout as exc:
                sock.close()
                last_error = exc
                break
            except OSError as exc:
                sock.close()
                last_error = exc
                logger.debug("Connect to %s failed: %s", address[0], exc)
                continue
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            return sock, address

        if last_error is None:
            raise HostResolutionError(f"No addresses found for host {target.host!r}")
        with translated_errors(target):
            raise last_error

    def _read_line(self, conn: Connection, deadline: Deadline) -> bytes:
        """Next line including its terminator; at EOF whatever is left (possibly b"")."""
        scanned = 0
        while True:
            end = conn.buffer.find(b"\n", scanned)
            if end >= 0:
                if end + 1 > MAX_LINE:
                    raise ProtocolViolationError("Response line exceeds the maximum length")
                return conn.take(end + 1)
            if len(conn.buffer) > MAX_LINE:
                raise ProtocolViolationError("Response line exceeds the maximum length")
            scanned = len(conn.buffer)
            if not conn.fill(deadline):
                return conn.take(scanned)

    def _read_status_line(self, conn: Connection, deadline: Deadline) -> Tuple[str, int, str, int]:
        line = self._read_line(conn, deadline)
        if not line:
            raise ProtocolViolationError("Server closed the connection without sending a response")
        match = _STATUS_RE.match(line)
        if not match:
            raise ProtocolViolationError(f"Malformed status line: {line[:80]!r}")
        major, minor, code, reason = match.groups()
        return f"{major.decode()}.{minor.decode()}", int(code), (reason or b"").decode("latin-1").strip(), len(line)

    def _read_headers(self, conn: Connection, deadline: Deadline) -> Tuple[List[Tuple[str, str]], int]:
        headers: List[Tuple[str, str]] = []
        size = 0
        while True:
            line = self._read_line(conn, deadline)
            if not line:
                raise ProtocolViolationError("Connection closed inside the response header block")
            size += len(line)
            if line in (b"\r\n", b"\n"):
                return headers, size

            text = line.decode("latin-1")
            if text[0] in (" ", "\t"):
                # obs-fold continuation of the previous header
                if not headers:
                    raise ProtocolViolationError("Header continuation without a preceding header")
                name, value = headers[-1]
                headers[-1] = (name, f"{value} {text.strip()}")
                continue

            name, sep, value = text.partition(":")
            if not sep or not TOKEN_RE.match(name):
                raise ProtocolViolationError(f"Malformed header line: {line[:80]!r}")
            if len(headers) >= MAX_HEADERS:
                raise ProtocolViolationError("Too many response headers")
            headers.append((name, value.strip()))

    def _read_body(self, conn, method, version, status, headers, deadline) -> Tuple[bytes, bool]:
        tokens = {
            token.strip().lower()
            for name, value in headers
            if name.lower() == "connection"
            for token in value.split(",")
        }
        if version == "1.1":
            keep_alive = "close" not in tokens
        else:
            keep_alive = "keep-alive" in tokens

        if method == "HEAD" or status in (204, 304) or 100 <= status < 200:
            return b"", keep_alive and status != 101

        codings = [
            coding.strip().lower()
            for name, value in headers
            if name.lower() == "transfer-encoding"
            for coding in value.split(",")
        ]
        if codings:
            if codings[-1] == "chunked":
                return self._read_chunked(conn, deadline), keep_alive
            return self._read_to_close(conn, deadline), False

        lengths = {
            part.strip()
            for name, value in headers
            if name.lower() == "content-length"
            for part in value.split(",")
        }
        if lengths:
            if len(lengths) != 1 or not _DIGITS_RE.fullmatch(next(iter(lengths))):
                raise ProtocolViolationError(f"Invalid Content-Length: {sorted(lengths)}")
            return self._read_exact(conn, int(lengths.pop()), deadline), keep_alive

        return self._read_to_close(conn, deadline), False

    def _read_exact(self, conn: Connection, length: int, deadline: Deadline) -> bytes:
        while len(conn.buffer) < length:
            if not conn.fill(deadline):
                partial = conn.take(len(conn.buffer))
                raise ProtocolViolationError(
                    f"Connection closed with {length - len(partial)} of {length} body bytes outstanding",
                    response_body=partial,
                )
        return conn.take(length)

    def _read_to_close(self, conn: Connection, deadline: Deadline) -> bytes:
        while conn.fill(deadline):
            pass
        return conn.take(len(conn.buffer))

    def _read_chunked(self, conn: Connection, deadline: Deadline) -> bytes:
        chunks = []
        try:
            while True:
                line = self._read_line(conn, deadline)
                if not line:
                    raise ProtocolViolationError("Connection closed before the last chunk")
                size_field = line.split(b";", 1)[0].strip()
                if not _HEX_RE.fullmatch(size_field):
                    raise ProtocolViolationError(f"Malformed chunk size line: {line[:80]!r}")
                size = int(size_field, 16)
                if size == 0:
                    break
                chunks.append(self._read_exact(conn, size, deadline))
                if self._read_line(conn, deadline) not in (b"\r\n", b"\n"):
                    raise ProtocolViolationError("Chunk data is not followed by CRLF")
        except ProtocolViolationError as exc:
            exc.response_body = b"".join(chunks) + (exc.response_body or b"")
            raise

        # trailers are read and dropped
        while True:
            line = self._read_line(conn, deadline)
            if line in (b"", b"\r\n", b"\n"):
                break
        return b"".join(chunks)
