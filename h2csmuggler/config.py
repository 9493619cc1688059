"""
Configuration structures for connections and scans.

Both dataclasses are passed by value into constructors; nothing reads global
state. Defaults match the command-line defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Container, FrozenSet, Optional

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT = 5.0
DEFAULT_CONN_PER_HOST = 5
DEFAULT_PARALLEL_HOSTS = 10


@dataclass(frozen=True)
class ConnectionConfig:
    """Settings for establishing one smuggled connection.

    Attributes:
        max_retries: Additional dial + handshake attempts after the first
            failure. Application requests are never retried.
        timeout: Deadline in seconds covering dial and handshake of a single
            attempt.
        request_timeout: Optional socket deadline applied to each request
            after the handshake. ``None`` blocks until the peer answers.
        resolver: Nameserver address used to resolve target hosts. ``None``
            uses the system resolver.
        method: HTTP method of the HTTP/1.1 upgrade request.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: float = DEFAULT_TIMEOUT
    request_timeout: Optional[float] = None
    resolver: Optional[str] = None
    method: str = "GET"

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class ScanConfig:
    """Settings for the concurrent scanner and the response differ.

    Attributes:
        max_conn_per_host: Persistent connections opened against one base
            host by ``get_paths_on_host``. Capped at the number of targets.
        max_parallel_hosts: Workers used by ``get_parallel_hosts`` and the
            direct pass, each opening its own connection per target.
        connection: Settings passed to every connection the scanner opens.
        expected_status: Status codes treated as success for scanned
            requests. ``None`` accepts any status.
        verbosity: 0 logs status and body length, 1 adds headers and bodies.
        delete_on_show: Evict differ entries once they have been compared.
    """

    max_conn_per_host: int = DEFAULT_CONN_PER_HOST
    max_parallel_hosts: int = DEFAULT_PARALLEL_HOSTS
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    expected_status: Optional[Container[int]] = None
    verbosity: int = 0
    delete_on_show: bool = False

    def __post_init__(self) -> None:
        if self.max_conn_per_host < 1:
            raise ValueError("max_conn_per_host must be >= 1")
        if self.max_parallel_hosts < 1:
            raise ValueError("max_parallel_hosts must be >= 1")


def parse_status_range(raw: str) -> FrozenSet[int]:
    """Parse ``"200-299,302"`` into the set of status codes it names."""
    codes = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = (int(x) for x in part.split("-", 1))
            if lo > hi:
                raise ValueError(f"empty status range {part!r}")
            codes.update(range(lo, hi + 1))
        else:
            codes.add(int(part))
    if not codes:
        raise ValueError(f"no status codes in {raw!r}")
    return frozenset(codes)
