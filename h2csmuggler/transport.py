"""
Transport negotiation: raw TCP or TLS streams to a target authority.

TLS is unauthenticated: peer certificates are not verified and no ALPN
protocols are offered, so the upgrade travels as HTTP/1.1 inside TLS rather
than being negotiated as native ``h2``.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import time

import dns.exception  # type: ignore
import dns.resolver  # type: ignore

from h2csmuggler.config import ConnectionConfig
from h2csmuggler.errors import DialError
from h2csmuggler.log import fields
from h2csmuggler.target import Target

logger = logging.getLogger(__name__)


def remaining(deadline: float) -> float:
    """Seconds left before ``deadline`` (a ``time.monotonic`` value).

    Raises:
        socket.timeout: if the deadline has already passed.
    """
    left = deadline - time.monotonic()
    if left <= 0:
        raise socket.timeout("deadline exceeded")
    return left


def insecure_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def resolve(host: str, nameserver: str, deadline: float) -> str:
    """Resolve ``host`` to an IPv4 address through a specific nameserver."""
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.lifetime = remaining(deadline)
    answer = resolver.resolve(host, "A")
    address = answer[0].address
    logger.debug("resolved %s", fields(host=host, address=address, nameserver=nameserver))
    return address


def dial(target: Target, config: ConnectionConfig, deadline: float) -> socket.socket:
    """Open a TCP (``http``) or TLS (``https``) stream to ``target``.

    Args:
        target: Where to connect; only scheme, host and port are used.
        config: Supplies the optional resolver.
        deadline: ``time.monotonic`` value bounding resolution, connect and
            the TLS handshake.

    Returns:
        A connected socket (an ``ssl.SSLSocket`` for https) with its timeout
        set to whatever remains of the deadline.

    Raises:
        DialError: on any DNS, TCP or TLS failure, including timeouts and
            host names that cannot be encoded.
    """
    try:
        address = target.host
        if config.resolver:
            address = resolve(target.host, config.resolver, deadline)
        sock = socket.create_connection((address, target.port), timeout=remaining(deadline))
    except (OSError, ValueError, dns.exception.DNSException) as e:
        # ValueError covers host names IDNA cannot encode (empty or overlong labels)
        raise DialError(f"failed to dial tcp {target.authority}: {e}", target.url) from e

    if target.scheme != "https":
        return sock

    try:
        sock.settimeout(remaining(deadline))
        return insecure_context().wrap_socket(sock, server_hostname=target.host)
    except (OSError, ValueError) as e:
        sock.close()
        raise DialError(f"failed to dial tls {target.authority}: {e}", target.url) from e
