"""
S3Proxy Runtime
===============
A small path-rewriting reverse proxy that sits in front of the Alluxio S3 API
so clients can use ``http://worker:39998/bucket/key`` instead of
``http://worker:39999/api/v1/s3/bucket/key``.

Features:
  • Prefix rewrite of every request target (query and fragment kept verbatim)
  • ``Host`` rewritten to ``<client host>:<listen port>``
  • Upstream status, headers and body relayed unmodified
  • Request body limit (413), connect/send/read timeouts (504),
    unreachable upstream (502)
  • Access log line per request, plus observer callbacks
  • Graceful stop: stop accepting, drain in-flight requests, then close

Architecture:
  Uses Python's ``http.server`` + ``socketserver`` (one thread per
  connection) and ``http.client`` for the upstream leg. One fresh upstream
  connection per request, no pooling.

State (stopped/running/...) is owned by ``LifecycleController``; the runtime
only does the work and reports crashes through ``on_crash``.
"""

from __future__ import annotations

import http.client
import logging
import re
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler
from socketserver import ThreadingTCPServer
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from s3proxy import __version__
from s3proxy.core.accesslog import AccessLog, RequestRecord
from s3proxy.core.builder import ProxyConfig
from s3proxy.core.errors import (
    BadRequest,
    GatewayTimeout,
    PayloadTooLarge,
    RequestError,
    UpstreamUnreachable,
)

logger = logging.getLogger(__name__)

COPY_BUFFER = 64 * 1024
CLIENT_TIMEOUT = 75.0
LINGER_TIMEOUT = 2.0
LINGER_MAX_BYTES = 8 * 1024 * 1024

# Hop-by-hop headers (RFC 7230 §6.1) plus framing we recompute after buffering
_REQUEST_DROP = frozenset({
    "host", "content-length", "connection", "keep-alive", "proxy-connection",
    "proxy-authorization", "te", "trailer", "transfer-encoding", "upgrade", "expect",
})
_RESPONSE_DROP = frozenset({
    "connection", "keep-alive", "proxy-connection", "te", "trailer",
    "transfer-encoding", "upgrade",
})

# Bare hex digits only: no sign, no 0x, no underscores
_CHUNK_SIZE_RE = re.compile(rb"^[0-9A-Fa-f]{1,16}$")
_CONTENT_LENGTH_RE = re.compile(r"^[0-9]{1,19}$")


def rewrite_host(host_header: Optional[str], listen_port: int, fallback: str) -> str:
    """Replace the port of a ``Host`` value with the proxy's listen port.

    Mirrors nginx ``$host:$server_port``: the host part is lower-cased and a
    missing header falls back to the local address the client connected to.
    """
    host = (host_header or "").strip()
    if not host:
        host = f"[{fallback}]" if ":" in fallback else fallback
    elif host.startswith("["):
        host = host[: host.find("]") + 1]
    elif ":" in host:
        host = host.rsplit(":", 1)[0]
    return f"{host.lower()}:{listen_port}"


# ── Request Handler ──────────────────────────────────────────────────────────

class _RewriteHandler(BaseHTTPRequestHandler):
    """Reads one request at a time, rewrites it and relays the upstream answer."""

    protocol_version = "HTTP/1.1"
    server_version = f"S3Proxy/{__version__}"
    timeout = CLIENT_TIMEOUT

    @property
    def runtime(self) -> "ProxyRuntime":
        return self.server.runtime  # type: ignore[attr-defined]

    def setup(self):
        super().setup()
        self.runtime._track(self.connection)

    def finish(self):
        try:
            super().finish()
        finally:
            self.runtime._untrack(self.connection)

    def handle_one_request(self):
        """Wait idle for the next request, then count it in flight until answered.

        A connection is busy from its first request byte, so a stop never
        cuts off a request whose headers are still arriving.
        """
        try:
            pending = self.rfile.peek(1)
        except OSError:
            pending = b""
        if not pending:
            self.close_connection = True
            return
        runtime = self.runtime
        runtime._begin()
        try:
            super().handle_one_request()
        finally:
            runtime._end()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        self._forward()

    def do_HEAD(self):
        self._forward()

    def do_POST(self):
        self._forward()

    def do_PUT(self):
        self._forward()

    def do_DELETE(self):
        self._forward()

    def do_PATCH(self):
        self._forward()

    def do_OPTIONS(self):
        self._forward()

    def handle_expect_100(self):
        """Refuse oversize uploads before the client starts sending them."""
        limit = self.runtime.config.max_body_bytes
        try:
            length = self._declared_length()
            if length is not None and length > limit:
                raise PayloadTooLarge(f"Declared body of {length} bytes exceeds {limit}")
        except RequestError as e:
            record = self._new_record()
            self._fail(record, e)
            self.runtime._record(record)
            return False
        return super().handle_expect_100()

    # ── Forwarding ───────────────────────────────────────────────────────

    def _forward(self):
        if self.runtime.closed:
            self.send_error(503, explain="Proxy is shutting down")
            return
        self._proxy_request()

    def _target(self) -> str:
        """The request target exactly as sent (``self.path`` has leading ``//`` collapsed)."""
        words = self.requestline.split()
        return words[1] if len(words) >= 2 else self.path

    def _new_record(self) -> RequestRecord:
        config = self.runtime.config
        target = self._target()
        return RequestRecord(
            method=self.command,
            original_uri=target,
            rewritten_uri=config.rewrite(target),
            client_address=self.client_address[0],
            host=self.headers.get("Host", ""),
            upstream_address=config.upstream_address,
        )

    def _proxy_request(self):
        started = time.monotonic()
        record = self._new_record()
        try:
            body = self._read_body()
            record.request_bytes = len(body) if body else 0
            upstream_started = time.monotonic()
            conn, resp = self._exchange(record.rewritten_uri, self._upstream_headers(body), body)
        except RequestError as e:
            self._fail(record, e)
        else:
            try:
                record.status = resp.status
                self._relay(resp, record)
            finally:
                conn.close()
                record.upstream_time = time.monotonic() - upstream_started

        record.total_time = time.monotonic() - started
        self.runtime._record(record)

    def _fail(self, record: RequestRecord, err: RequestError):
        record.status = err.status
        record.error = err.reason
        logger.debug(f"{record.method} {record.original_uri}: {err.reason}")
        self.send_error(err.status, explain=err.reason)
        if isinstance(err, PayloadTooLarge) and err.pending:
            self._linger(err.pending)

    def _declared_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        if value is None:
            return None
        if not _CONTENT_LENGTH_RE.match(value.strip()):
            raise BadRequest(f"Invalid Content-Length: {value!r}")
        return int(value)

    def _read_body(self) -> Optional[bytes]:
        """Buffer the request body, enforcing ``max_body_bytes``."""
        limit = self.runtime.config.max_body_bytes
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            return self._read_chunked(limit)

        length = self._declared_length()
        if length is None:
            return None
        if length > limit:
            raise PayloadTooLarge(f"Body of {length} bytes exceeds {limit}", pending=length)
        body = self.rfile.read(length) if length else b""
        if len(body) != length:
            self.close_connection = True
            raise BadRequest(f"Body ended after {len(body)} of {length} bytes")
        return body

    def _read_chunked(self, limit: int) -> bytes:
        chunks: List[bytes] = []
        total = 0
        while True:
            line = self.rfile.readline(65537)
            token = line.split(b";", 1)[0].strip()
            if not _CHUNK_SIZE_RE.match(token):
                self.close_connection = True
                raise BadRequest(f"Malformed chunk size: {token[:32]!r}")
            size = int(token, 16)
            if size == 0:
                while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                    pass
                return b"".join(chunks)
            total += size
            if total > limit:
                raise PayloadTooLarge(f"Chunked body exceeds {limit} bytes", pending=LINGER_MAX_BYTES)
            data = self.rfile.read(size)
            if len(data) != size:
                self.close_connection = True
                raise BadRequest(f"Chunk ended after {len(data)} of {size} bytes")
            chunks.append(data)
            self.rfile.readline(65537)

    def _linger(self, pending: int):
        """Discard unread upload bytes so the client sees our error, not a reset."""
        self.close_connection = True
        remaining = min(pending, LINGER_MAX_BYTES)
        try:
            self.connection.settimeout(LINGER_TIMEOUT)
            while remaining > 0:
                data = self.rfile.read1(min(COPY_BUFFER, remaining))
                if not data:
                    break
                remaining -= len(data)
        except OSError as e:
            logger.debug(f"Lingering close ended early: {e}")

    def _upstream_headers(self, body: Optional[bytes]) -> List[Tuple[str, str]]:
        config = self.runtime.config
        listed = {
            token.strip().lower()
            for token in self.headers.get("Connection", "").split(",")
            if token.strip()
        }
        fallback = self.connection.getsockname()[0]
        headers = [("Host", rewrite_host(self.headers.get("Host"), self.runtime.port, fallback))]
        for key, val in self.headers.items():
            name = key.lower()
            if name in _REQUEST_DROP or name in listed:
                continue
            headers.append((key, val))
        if body is not None:
            headers.append(("Content-Length", str(len(body))))
        headers.append(("Connection", "close"))
        return headers

    def _exchange(
        self,
        uri: str,
        headers: List[Tuple[str, str]],
        body: Optional[bytes],
    ) -> Tuple[http.client.HTTPConnection, http.client.HTTPResponse]:
        """Connect, send and wait for the status line, each under its own timeout."""
        config = self.runtime.config
        conn = http.client.HTTPConnection(
            config.upstream_host, config.upstream_port, timeout=config.connect_timeout,
        )
        try:
            try:
                conn.connect()
            except socket.timeout:
                raise GatewayTimeout(f"Connecting to {config.upstream_address} timed out") from None
            except OSError as e:
                raise UpstreamUnreachable(f"Cannot connect to {config.upstream_address}: {e}") from None

            conn.sock.settimeout(config.send_timeout)
            try:
                conn.putrequest(self.command, uri, skip_host=True, skip_accept_encoding=True)
                for key, val in headers:
                    conn.putheader(key, val)
                conn.endheaders(body)
            except socket.timeout:
                raise GatewayTimeout(f"Sending to {config.upstream_address} timed out") from None
            except OSError as e:
                raise UpstreamUnreachable(f"Upstream {config.upstream_address} dropped the request: {e}") from None

            conn.sock.settimeout(config.read_timeout)
            try:
                resp = conn.getresponse()
            except socket.timeout:
                raise GatewayTimeout(f"Upstream {config.upstream_address} did not answer in time") from None
            except (http.client.HTTPException, OSError) as e:
                raise UpstreamUnreachable(f"Bad response from {config.upstream_address}: {e}") from None
        except RequestError:
            conn.close()
            raise
        return conn, resp

    def _relay(self, resp: http.client.HTTPResponse, record: RequestRecord):
        """Send the upstream answer back with our own connection framing."""
        no_body = (
            self.command == "HEAD"
            or resp.status in (204, 304)
            or 100 <= resp.status < 200
        )
        length = resp.getheader("Content-Length")
        chunked = not no_body and length is None and self.request_version == "HTTP/1.1"
        if not no_body and length is None and not chunked:
            self.close_connection = True
        if self.runtime.stopping:
            self.close_connection = True

        self.send_response_only(resp.status, resp.reason)
        for key, val in resp.getheaders():
            if key.lower() not in _RESPONSE_DROP:
                self.send_header(key, val)
        if chunked:
            self.send_header("Transfer-Encoding", "chunked")
        if self.close_connection:
            self.send_header("Connection", "close")

        try:
            self.end_headers()
            if not no_body:
                record.response_bytes = self._copy_body(resp, chunked, record)
            self.wfile.flush()
        except OSError as e:
            self.close_connection = True
            logger.debug(f"Client {self.client_address[0]} went away: {e}")

    def _copy_body(self, resp: http.client.HTTPResponse, chunked: bool, record: RequestRecord) -> int:
        sent = 0
        while True:
            try:
                data = resp.read(COPY_BUFFER)
            except (http.client.HTTPException, OSError) as e:
                # Headers are already out; all we can do is cut the connection
                self.close_connection = True
                record.error = f"Upstream body interrupted: {e}"
                logger.warning(record.error)
                return sent
            if not data:
                break
            if chunked:
                self.wfile.write(f"{len(data):X}\r\n".encode("ascii") + data + b"\r\n")
            else:
                self.wfile.write(data)
            sent += len(data)
        if chunked:
            self.wfile.write(b"0\r\n\r\n")
        return sent


# ── Proxy Server ─────────────────────────────────────────────────────────────

class _ProxyServer(ThreadingTCPServer):
    """Threaded TCP server with a back-reference to its runtime."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, addr, handler, runtime: "ProxyRuntime"):
        self.runtime = runtime
        if ":" in addr[0]:
            self.address_family = socket.AF_INET6
        super().__init__(addr, handler)


# ── Proxy Runtime ────────────────────────────────────────────────────────────

class ProxyRuntime:
    """
    Owns the listen socket, the accept loop and per-request bookkeeping.

    Thread-safe for concurrent request handling. Call order is
    ``bind`` → ``serve`` → ``shutdown``; the controller enforces it.
    """

    def __init__(self, config: ProxyConfig, access_log: Optional[AccessLog] = None):
        self.config = config
        if access_log is None and config.log_path:
            access_log = AccessLog(config.log_path)
        self.access_log = access_log
        self.on_crash: Optional[Callable[[BaseException], None]] = None
        self.stopping: bool = False
        self.closed: bool = False
        self._server: Optional[_ProxyServer] = None
        self._thread: Optional[threading.Thread] = None
        self._cond = threading.Condition()
        self._inflight = 0
        self._connections: Set[socket.socket] = set()
        self._callbacks: List[Callable[[RequestRecord], None]] = []
        self._total_requests = 0
        self._total_bytes = 0
        self._status_codes: Dict[str, int] = {}
        self._errors = 0

    @property
    def port(self) -> int:
        """The bound port (differs from the configured one when that was 0)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.listen_port

    @property
    def inflight(self) -> int:
        return self._inflight

    # ── Lifecycle ────────────────────────────────────────────────────────

    def bind(self) -> None:
        """Bind the listen socket. Raises ``OSError`` on failure."""
        self._server = _ProxyServer(
            (self.config.listen_host, self.config.listen_port), _RewriteHandler, self,
        )

    def serve(self) -> None:
        """Run the accept loop in a background thread."""
        if self._server is None:
            raise RuntimeError("bind() must be called before serve()")
        self._thread = threading.Thread(
            target=self._serve_loop,
            daemon=True,
            name=f"s3proxy-{self.port}",
        )
        self._thread.start()
        logger.info(
            f"Proxy listening on {self.config.listen_host}:{self.port} → "
            f"{self.config.upstream_address}{self.config.path_prefix}"
        )

    def _serve_loop(self) -> None:
        try:
            self._server.serve_forever(poll_interval=0.2)
        except Exception as e:
            logger.error(f"Accept loop crashed: {e}")
            if self.on_crash:
                self.on_crash(e)

    def shutdown(self, grace: Optional[float] = None) -> bool:
        """Stop accepting, wait for in-flight requests, then close the listen
        socket and any idle keep-alive connections.

        A connection counts as in flight from the first byte of a request
        until its response is written. Returns True when all of them
        finished within ``grace``.
        """
        grace = self.config.drain_timeout if grace is None else grace
        self.stopping = True
        if self._server is None:
            return True

        if self._thread is not None and self._thread.is_alive():
            self._server.shutdown()
        drained = self.drain(grace)
        if not drained:
            logger.warning(f"{self._inflight} request(s) still running after {grace:.1f}s grace")
        self.closed = True
        self._server.server_close()
        self._close_connections()
        logger.info("Proxy stopped")
        return drained

    def drain(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._inflight == 0, timeout)

    def _close_connections(self) -> None:
        with self._cond:
            remaining = list(self._connections)
        for conn in remaining:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Closing idle client connection: {e}")

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def _track(self, conn: socket.socket) -> None:
        with self._cond:
            self._connections.add(conn)

    def _untrack(self, conn: socket.socket) -> None:
        with self._cond:
            self._connections.discard(conn)

    def _begin(self) -> None:
        with self._cond:
            self._inflight += 1

    def _end(self) -> None:
        with self._cond:
            self._inflight -= 1
            self._cond.notify_all()

    def _record(self, record: RequestRecord) -> None:
        """Count, log and publish a finished request (thread-safe)."""
        with self._cond:
            self._total_requests += 1
            self._total_bytes += record.response_bytes
            if record.status:
                bucket = f"{record.status // 100}xx"
                self._status_codes[bucket] = self._status_codes.get(bucket, 0) + 1
            if record.error:
                self._errors += 1

        if self.access_log is not None:
            self.access_log.write(record)

        for cb in self._callbacks:
            try:
                cb(record)
            except Exception as e:
                logger.debug(f"Callback error: {e}")

    def on_request(self, callback: Callable[[RequestRecord], None]) -> None:
        """Register a callback for every finished request."""
        self._callbacks.append(callback)

    def get_stats(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "port": self.port,
                "inflight": self._inflight,
                "connections": len(self._connections),
                "total_requests": self._total_requests,
                "total_bytes": self._total_bytes,
                "status_codes": dict(self._status_codes),
                "errors": self._errors,
            }
