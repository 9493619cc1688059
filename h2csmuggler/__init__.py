"""
h2csmuggler package initialization.

This module defines the package version and re-exports the small public API
used by the command-line interface and by library callers: opening smuggled
connections, scanning, and diffing smuggled responses against direct ones.

The version is defined here to ensure consistency between packaging metadata and
runtime introspection (e.g. ``h2csmuggler.__version__``). Update this value
whenever you bump the version in ``setup.py``.
"""

from h2csmuggler.config import ConnectionConfig, ScanConfig
from h2csmuggler.connection import (
    Connection,
    FailedConnection,
    Request,
    ResponseRecord,
    SmugglingConnection,
    open_connection,
)
from h2csmuggler.differ import Mismatch, PassKind, ResponseDiffer
from h2csmuggler.errors import ErrorKind, SmuggleError, UnexpectedStatusCodeError
from h2csmuggler.scanner import Scanner, request_header

__all__ = [
    "__version__",
    "Connection",
    "ConnectionConfig",
    "ErrorKind",
    "FailedConnection",
    "Mismatch",
    "PassKind",
    "Request",
    "ResponseDiffer",
    "ResponseRecord",
    "ScanConfig",
    "Scanner",
    "SmuggleError",
    "SmugglingConnection",
    "UnexpectedStatusCodeError",
    "open_connection",
    "request_header",
]
__version__ = "1.0.0"
