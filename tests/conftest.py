"""
Shared fixtures: in-process servers that stand in for a vulnerable proxy.

``h2c_server`` behaves like a front end that blocks ``/admin`` for ordinary
HTTP/1.1 requests (403) but honours ``Upgrade: h2c`` and then serves every
HTTP/2 request on the upgraded connection straight from the backend (200).

``http1_server`` ignores the upgrade entirely and answers plain HTTP/1.1.
"""

import os
import socket
import socketserver
import sys
import threading

import h2.config
import h2.connection
import h2.events
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from h2csmuggler.connection import ResponseRecord  # noqa: E402

BACKEND = {"/": b"home", "/admin": b"admin panel: secret"}


def _read_head(sock):
    buf = b""
    while b"\r\n\r\n" not in buf:
        chunk = sock.recv(65535)
        if not chunk:
            return None, b""
        buf += chunk
    head, _, rest = buf.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    method, path, _ = lines[0].split(" ", 2)
    headers = {}
    for ln in lines[1:]:
        k, v = ln.split(":", 1)
        headers[k.strip().lower()] = v.strip()
    return (method, path, headers), rest


def _http1(sock, status, reason, body):
    sock.sendall(
        f"HTTP/1.1 {status} {reason}\r\nContent-Length: {len(body)}\r\n"
        f"Content-Type: text/plain\r\nConnection: close\r\n\r\n".encode() + body
    )


class _FrontEnd(socketserver.BaseRequestHandler):
    def handle(self):
        sock = self.request
        sock.settimeout(5)
        try:
            parsed, rest = _read_head(sock)
            if parsed is None:
                return
            method, path, headers = parsed
            self.server.seen.append(("http/1.1", path, headers))
            if headers.get("upgrade", "").lower() == "h2c" and self.server.upgrade:
                self._serve_h2c(sock, path, headers["http2-settings"], rest)
            elif path == "/admin":
                _http1(sock, 403, "Forbidden", b"forbidden")
            else:
                _http1(sock, 200, "OK", BACKEND.get(path, b"not found"))
        except OSError:
            return

    def _serve_h2c(self, sock, path, settings, data):
        sock.sendall(b"HTTP/1.1 101 Switching Protocols\r\nConnection: Upgrade\r\nUpgrade: h2c\r\n\r\n")
        conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=False,
                                                                           header_encoding="utf-8"))
        conn.initiate_upgrade_connection(settings_header=settings.encode("ascii"))
        self._respond(conn, 1, path)
        sock.sendall(conn.data_to_send())
        while True:
            if not data:
                data = sock.recv(65535)
                if not data:
                    return
            events = conn.receive_data(data)
            data = b""
            for ev in events:
                if isinstance(ev, h2.events.RequestReceived):
                    hdrs = dict(ev.headers)
                    self.server.seen.append(("h2c", hdrs[":path"], hdrs))
                    self._respond(conn, ev.stream_id, hdrs[":path"])
                elif isinstance(ev, h2.events.ConnectionTerminated):
                    sock.sendall(conn.data_to_send())
                    return
            sock.sendall(conn.data_to_send())

    def _respond(self, conn, stream_id, path):
        body = BACKEND.get(path, b"not found")
        status = self.server.status or ("200" if path in BACKEND else "404")
        conn.send_headers(stream_id, [
            (":status", status),
            ("content-length", str(len(body))),
            ("content-type", "text/plain"),
        ])
        conn.send_data(stream_id, body, end_stream=True)


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, upgrade):
        super().__init__(("127.0.0.1", 0), _FrontEnd)
        self.upgrade = upgrade
        # forces the :status of every h2c response when set
        self.status = None
        self.seen = []


def _start(upgrade):
    server = _Server(upgrade)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture
def h2c_server():
    server = _start(upgrade=True)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def http1_server():
    server = _start(upgrade=False)
    yield server
    server.shutdown()
    server.server_close()


def base_url(server):
    return f"http://127.0.0.1:{server.server_address[1]}/"


@pytest.fixture
def closed_port():
    """A local port nothing listens on."""
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def make_record(target="http://t/", status=200, headers=None, body=b"", error=None, source="h2c"):
    import httpx
    if error is not None:
        return ResponseRecord.failure(target, error, source=source)
    return ResponseRecord(target=target, status=status, headers=httpx.Headers(headers or []),
                          body=body, source=source)
