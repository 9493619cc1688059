"""Parsed request targets."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class Target:
    """One HTTP resource: where to connect and what to ask for.

    ``raw`` keeps the string the user supplied; it is the identity used in
    result records and in the differ cache, so two spellings of the same URL
    are reported separately.
    """

    scheme: str
    host: str
    port: int
    path: str = "/"
    query: str = ""
    raw: str = field(default="", compare=False)

    @classmethod
    def parse(cls, url: str) -> "Target":
        """Parse an absolute ``http``/``https`` URL.

        Raises:
            ValueError: if the scheme is not http(s), the host is missing or
                the port is not a number.
        """
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ValueError(f"unsupported scheme {parts.scheme!r} in {url!r}")
        if not parts.hostname:
            raise ValueError(f"missing host in {url!r}")
        port = parts.port or DEFAULT_PORTS[scheme]
        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=port,
            path=parts.path or "/",
            query=parts.query,
            raw=url,
        )

    @property
    def default_port(self) -> bool:
        return self.port == DEFAULT_PORTS[self.scheme]

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.default_port:
            return host
        return f"{host}:{self.port}"

    @property
    def request_target(self) -> str:
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path

    @property
    def url(self) -> str:
        return self.raw or f"{self.scheme}://{self.authority}{self.request_target}"

    def __str__(self) -> str:
        return self.url
