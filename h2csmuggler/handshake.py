"""
The HTTP/1.1 to h2c upgrade handshake.

The wire sequence is fixed and must not drift, since front-end proxies are
matched against it byte for byte:

1. ``GET <path> HTTP/1.1`` with ``Upgrade: h2c``,
   ``HTTP2-Settings: AAMAAABkAARAAAAAAAIAAAAA`` and
   ``Connection: Upgrade, HTTP2-Settings``.
2. Read the HTTP/1.1 response head. ``101 Switching Protocols`` is the
   expected answer, but any other status is only logged: many proxies relay
   the upgrade response inconsistently, and the decisive test is whether the
   peer then speaks HTTP/2 framing.
3. Write the client preface ``PRI * HTTP/2.0\\r\\n\\r\\nSM\\r\\n\\r\\n`` followed
   by the client SETTINGS frame, and wait for the peer's SETTINGS.

The HTTP/2 state machine is ``h2``; it is put into the upgraded state with
``initiate_upgrade_connection`` so that stream 1 belongs to the upgrade
request and later requests start at stream 3.
"""

from __future__ import annotations

import base64
import logging
import re
import socket
import struct
from typing import Iterable, List, Optional, Sequence, Tuple

import h2.config  # type: ignore
import h2.connection  # type: ignore
import h2.events  # type: ignore
import h2.exceptions  # type: ignore
from h2.settings import SettingCodes, Settings  # type: ignore

from h2csmuggler.errors import HandshakeError
from h2csmuggler.log import fields
from h2csmuggler.target import Target
from h2csmuggler.transport import remaining

logger = logging.getLogger(__name__)

CLIENT_PREFACE = b"PRI * HTTP/2.0\r\n\r\nSM\r\n\r\n"

# Order matters: it fixes the bytes of the HTTP2-Settings header.
CLIENT_SETTINGS: Tuple[Tuple[int, int], ...] = (
    (SettingCodes.MAX_CONCURRENT_STREAMS, 100),
    (SettingCodes.INITIAL_WINDOW_SIZE, 1 << 30),
    (SettingCodes.ENABLE_PUSH, 0),
)

MAX_HEAD_SIZE = 64 * 1024
READ_SIZE = 65535

_STATUS_LINE = re.compile(r"^HTTP/(\d)\.(\d)\s+(\d{3})(?:\s+(.*))?$")


def encode_settings(settings: Iterable[Tuple[int, int]]) -> bytes:
    """Serialize (identifier, value) pairs as a SETTINGS frame payload."""
    return b"".join(struct.pack("!HL", int(code), value) for code, value in settings)


def decode_settings(header: str) -> List[Tuple[int, int]]:
    """Decode an unpadded base64url ``HTTP2-Settings`` value.

    Raises:
        ValueError: if the value is not base64url or the payload is not a
            whole number of 6-octet entries.
    """
    padded = header + "=" * (-len(header) % 4)
    try:
        payload = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise ValueError(f"invalid HTTP2-Settings encoding: {e}") from e
    if len(payload) % 6:
        raise ValueError(f"SETTINGS payload length {len(payload)} is not a multiple of 6")
    return [struct.unpack_from("!HL", payload, i) for i in range(0, len(payload), 6)]


SETTINGS_HEADER = base64.urlsafe_b64encode(encode_settings(CLIENT_SETTINGS)).rstrip(b"=").decode("ascii")


def upgrade_request(target: Target, method: str = "GET",
                    headers: Optional[Sequence[Tuple[str, str]]] = None) -> bytes:
    """Render the HTTP/1.1 request that asks the peer to switch to h2c."""
    lines = [f"{method} {target.request_target} HTTP/1.1", f"Host: {target.authority}"]
    for name, value in headers or ():
        lines.append(f"{name}: {value}")
    lines.extend([
        "Upgrade: h2c",
        f"HTTP2-Settings: {SETTINGS_HEADER}",
        "Connection: Upgrade, HTTP2-Settings",
    ])
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def read_response_head(sock: socket.socket, deadline: float) -> Tuple[int, str, List[Tuple[str, str]], bytes]:
    """Read an HTTP/1.1 status line and headers off ``sock``.

    Returns:
        ``(status, reason, headers, leftover)`` where ``leftover`` holds any
        bytes read past the blank line; after a 101 these are already
        HTTP/2 frames.
    """
    buf = b""
    while b"\r\n\r\n" not in buf:
        if len(buf) > MAX_HEAD_SIZE:
            raise HandshakeError("upgrade response head too large")
        sock.settimeout(remaining(deadline))
        chunk = sock.recv(READ_SIZE)
        if not chunk:
            raise HandshakeError("connection closed before upgrade response")
        buf += chunk
    head, _, leftover = buf.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    m = _STATUS_LINE.match(lines[0].strip())
    if not m:
        raise HandshakeError(f"malformed status line: {lines[0][:80]!r}")
    headers = []
    for ln in lines[1:]:
        if ":" not in ln:
            continue
        k, v = ln.split(":", 1)
        headers.append((k.strip(), v.strip()))
    return int(m.group(3)), m.group(4) or "", headers, leftover


def new_session() -> h2.connection.H2Connection:
    """An h2 client whose local settings match ``SETTINGS_HEADER``."""
    conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=True, header_encoding=None))
    conn.local_settings = Settings(client=True, initial_values=dict(CLIENT_SETTINGS))
    return conn


def handshake(sock: socket.socket, target: Target, deadline: float,
              method: str = "GET") -> Tuple[h2.connection.H2Connection, int]:
    """Upgrade a freshly dialed stream to an HTTP/2 session.

    Args:
        sock: Connected TCP or TLS socket.
        target: Base target; its path is the upgrade request target.
        deadline: ``time.monotonic`` value bounding the whole exchange.
        method: Method of the upgrade request.

    Returns:
        The live ``H2Connection`` and the HTTP/1.1 status the peer answered
        the upgrade request with.

    Raises:
        HandshakeError: on socket errors, malformed responses or framing,
            a GOAWAY, or when the deadline passes before the peer's
            SETTINGS frame arrives.
    """
    conn = new_session()
    conn.initiate_upgrade_connection()
    preface = conn.data_to_send()
    try:
        sock.settimeout(remaining(deadline))
        sock.sendall(upgrade_request(target, method))
        status, reason, _, leftover = read_response_head(sock, deadline)
        if status != 101:
            logger.debug("upgrade not acknowledged, trying http2 anyway %s",
                         fields(status=status, reason=reason, target=target.url))
        sock.settimeout(remaining(deadline))
        sock.sendall(preface)
        _await_settings(sock, conn, leftover, deadline)
    except HandshakeError as e:
        e.target = target.url
        raise
    except (OSError, h2.exceptions.ProtocolError) as e:
        raise HandshakeError(f"failed to create http2 conn: {e}", target.url) from e
    return conn, status


def _await_settings(sock: socket.socket, conn: h2.connection.H2Connection,
                    data: bytes, deadline: float) -> None:
    settled = False
    while True:
        if data:
            for event in conn.receive_data(data):
                if isinstance(event, h2.events.DataReceived):
                    conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
                elif isinstance(event, h2.events.ConnectionTerminated):
                    raise HandshakeError(f"peer sent GOAWAY (error code {event.error_code})")
                elif isinstance(event, h2.events.RemoteSettingsChanged):
                    settled = True
            pending = conn.data_to_send()
            if pending:
                sock.sendall(pending)
            if settled:
                return
        sock.settimeout(remaining(deadline))
        data = sock.recv(READ_SIZE)
        if not data:
            raise HandshakeError("connection closed before http2 settings")
