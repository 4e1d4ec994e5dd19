"""
Upstream client that relays metric submissions to the time-series endpoint.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

import httpx

from shared.errors import GatewayError
from shared.logging import get_logger
from shared.metrics import RelayMetrics
from shared.tracing import trace_operation

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "HEAD"})

# Not copied to the outbound request; httpx sets its own framing and host.
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

_TOKEN_RE = re.compile(rb"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_VALUE_RE = re.compile(rb"^[\t\x20-\x7e]*$")

RawHeader = Tuple[Union[bytes, str], Union[bytes, str]]


@dataclass
class RelayResponse:
    """Upstream status and body, passed back to the caller unchanged."""

    status_code: int
    content: bytes
    content_type: Optional[str] = None


def translate_method(method: str) -> str:
    """Map an inbound method onto the outbound one.

    Only the five methods the relay forwards are accepted. Anything else is a
    programming error: the route never admits other methods.
    """
    upper = method.upper()
    if upper not in SUPPORTED_METHODS:
        raise AssertionError(f"unsupported method reached the relay: {method}")
    return upper


def _as_bytes(value: Union[bytes, str]) -> Optional[bytes]:
    if isinstance(value, bytes):
        return value
    try:
        return value.encode("ascii")
    except UnicodeEncodeError:
        return None


def translate_headers(headers: Iterable[RawHeader]) -> List[Tuple[bytes, bytes]]:
    """Copy inbound headers for the outbound request.

    Entries whose name is not an HTTP token or whose value is not printable
    ASCII are dropped one by one. The output depends only on the input, so
    translating an already translated list returns it unchanged.
    """
    translated: List[Tuple[bytes, bytes]] = []
    for raw_name, raw_value in headers:
        name = _as_bytes(raw_name)
        value = _as_bytes(raw_value)
        if name is None or value is None:
            continue
        if not _TOKEN_RE.match(name) or not _VALUE_RE.match(value):
            continue
        if name.lower().decode("ascii") in HOP_BY_HOP_HEADERS:
            continue
        translated.append((name, value))
    return translated


class UpstreamClient:
    """Pooled HTTP client bound to one upstream URL."""

    def __init__(self, upstream_url: str, metrics: RelayMetrics,
                 pool_max_idle_per_host: int = 8, timeout: float = 30.0,
                 user_agent: str = "metrics-relay",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.upstream_url = upstream_url
        self.metrics = metrics
        self.logger = get_logger("relay.upstream_client")
        # one upstream host, so the pool-wide keepalive bound is the per-host bound
        self.client = httpx.AsyncClient(
            limits=httpx.Limits(max_keepalive_connections=pool_max_idle_per_host),
            timeout=httpx.Timeout(timeout),
            headers={"user-agent": user_agent},
            follow_redirects=False,
            transport=transport,
        )

    async def relay(self, method: str, headers: Iterable[RawHeader], body: bytes) -> RelayResponse:
        """Forward one request and return the upstream response as-is.

        Non-2xx upstream statuses are returned, not raised. Transport failures
        raise ``GatewayError``; their detail goes to the log only.
        """
        outbound_method = translate_method(method)
        outbound_headers = translate_headers(headers)

        with trace_operation("relay_request", **{
            "relay.method": outbound_method,
            "relay.body_bytes": len(body),
        }) as span:
            try:
                response = await self.client.request(
                    outbound_method,
                    self.upstream_url,
                    headers=outbound_headers,
                    content=body,
                )
            except httpx.HTTPError as e:
                reason = _failure_reason(e)
                self.metrics.record_upstream_failure(reason)
                self.logger.error(
                    "Error sending request upstream",
                    upstream_url=self.upstream_url,
                    reason=reason,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise GatewayError(reason) from e

            span.set_attribute("relay.status_code", response.status_code)

        self.metrics.record_upstream_response(response.status_code)
        if response.status_code >= 400:
            self.logger.info(
                "Upstream returned error status",
                status_code=response.status_code
            )

        return RelayResponse(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type"),
        )

    async def close(self) -> None:
        await self.client.aclose()


def _failure_reason(error: httpx.HTTPError) -> str:
    if isinstance(error, httpx.TimeoutException):
        return "timeout"
    if isinstance(error, httpx.ConnectError):
        return "connect"
    if isinstance(error, httpx.RemoteProtocolError):
        return "protocol"
    return "transport"
