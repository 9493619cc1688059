"""
Error taxonomy for smuggled connections and scans.

Every failure the tool reports is a :class:`SmuggleError` carrying an
:class:`ErrorKind` tag. Workers store these inside result records instead of
letting them escape, so callers decide what to do by looking at ``kind``:

* ``DIAL``      - DNS, TCP or TLS failure before any HTTP was exchanged.
* ``HANDSHAKE`` - the h2c upgrade did not produce a working HTTP/2 session.
* ``REQUEST``   - a request could not be built or issued on a live session.
* ``STATUS``    - a response arrived with a status outside the expected set.
* ``BODY_READ`` - the response body could not be drained.

Only ``DIAL`` and ``HANDSHAKE`` are retryable, and only while a connection is
being established.
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(enum.Enum):
    DIAL = "dial"
    HANDSHAKE = "handshake"
    REQUEST = "request"
    STATUS = "status"
    BODY_READ = "body-read"


RETRYABLE_KINDS = frozenset({ErrorKind.DIAL, ErrorKind.HANDSHAKE})


class SmuggleError(Exception):
    """Base class for all tagged failures."""

    kind: ErrorKind = ErrorKind.REQUEST

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.target = target

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class DialError(SmuggleError):
    kind = ErrorKind.DIAL


class HandshakeError(SmuggleError):
    kind = ErrorKind.HANDSHAKE


class RequestError(SmuggleError):
    kind = ErrorKind.REQUEST


class BodyReadError(SmuggleError):
    kind = ErrorKind.BODY_READ


class UnexpectedStatusCodeError(SmuggleError):
    """A response status fell outside the range the caller declared as success."""

    kind = ErrorKind.STATUS

    def __init__(self, code: int, target: Optional[str] = None) -> None:
        super().__init__(f"unexpected status code {code}", target)
        self.code = code
