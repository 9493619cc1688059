"""
Direct ("normal") requests, issued without any upgrade.

These are the control side of a diff: what the front end answers when asked
for a target the ordinary way. HTTPS targets go through an ``httpx`` client
when HTTP/2 is requested (negotiated with ALPN, so the front end sees it);
everything else is sent over HTTP/1.1 with ``requests``.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import httpx  # type: ignore
import requests
import urllib3

from h2csmuggler.connection import HOP_BY_HOP, Request, ResponseRecord
from h2csmuggler.errors import (
    BodyReadError,
    DialError,
    RequestError,
    SmuggleError,
    UnexpectedStatusCodeError,
)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

NORMAL = "normal"


class DirectClient:
    """Issues :class:`Request` objects straight at the front end.

    Args:
        http2: Use HTTP/2 (via httpx) for https targets.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, http2: bool = False, timeout: float = 12.0) -> None:
        self.http2 = http2
        self.timeout = timeout
        self.req_session = requests.Session()
        self.req_session.verify = False
        self.httpx_client: Optional[httpx.Client] = None
        if http2:
            self.httpx_client = httpx.Client(http2=True, verify=False, timeout=timeout, follow_redirects=False)

    def _headers(self, request: Request) -> List[Tuple[str, str]]:
        """One entry per header name, repeated values joined with ``", "``.

        ``requests`` takes headers as a mapping, so repeats are folded the
        way RFC 9110 allows instead of letting the last value win.
        """
        merged: Dict[str, Tuple[str, List[str]]] = {}
        for k, v in request.headers.multi_items():
            if k.lower() in HOP_BY_HOP:
                continue
            merged.setdefault(k.lower(), (k, []))[1].append(v)
        headers = [(name, ", ".join(values)) for name, values in merged.values()]
        # identity keeps bodies comparable with the smuggled side, which never
        # asks for compression
        if "accept-encoding" not in merged:
            headers.append(("Accept-Encoding", "identity"))
        return headers

    def do(self, request: Request) -> ResponseRecord:
        """Send ``request`` and return its record.

        Raises:
            DialError, BodyReadError, RequestError: mapped from the client's
                connect, read and other failures.
            UnexpectedStatusCodeError: when ``request.expected_status`` is set
                and does not contain the status.
        """
        url = request.target.url
        if self.httpx_client is not None and request.target.scheme == "https":
            record = self._do_httpx(self.httpx_client, request, url)
        else:
            record = self._do_requests(request, url)
        if request.expected_status is not None and record.status not in request.expected_status:
            raise UnexpectedStatusCodeError(record.status, url)
        return record

    def _do_httpx(self, client: httpx.Client, request: Request, url: str) -> ResponseRecord:
        try:
            resp = client.request(request.method, url, headers=self._headers(request),
                                  content=request.body or None)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise DialError(f"failed to dial: {e}", url) from e
        except (httpx.ReadError, httpx.ReadTimeout, httpx.RemoteProtocolError, httpx.DecodingError) as e:
            raise BodyReadError(f"body read: {e}", url) from e
        except httpx.HTTPError as e:
            raise RequestError(f"request: {e}", url) from e
        return ResponseRecord(target=url, status=resp.status_code, headers=resp.headers,
                              body=resp.content, source=NORMAL)

    def _do_requests(self, request: Request, url: str) -> ResponseRecord:
        try:
            resp = self.req_session.request(
                request.method,
                url,
                headers=dict(self._headers(request)),
                data=request.body or None,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise DialError(f"failed to dial: {e}", url) from e
        except (requests.exceptions.ChunkedEncodingError, requests.exceptions.ContentDecodingError,
                requests.exceptions.ReadTimeout) as e:
            raise BodyReadError(f"body read: {e}", url) from e
        except requests.exceptions.RequestException as e:
            raise RequestError(f"request: {e}", url) from e
        return ResponseRecord(target=url, status=resp.status_code,
                              headers=httpx.Headers(list(resp.raw.headers.iteritems())),
                              body=resp.content, source=NORMAL)

    def fetch(self, request: Request) -> ResponseRecord:
        """Like :meth:`do` but failures come back as a record."""
        try:
            return self.do(request)
        except SmuggleError as e:
            return ResponseRecord.failure(request.target.url, e, source=NORMAL)

    def close(self) -> None:
        self.req_session.close()
        if self.httpx_client is not None:
            self.httpx_client.close()

