"""Reverse-proxy forwarding for rules carrying the P flag.

The rule's substitution is applied to the whole request URL (path and query)
to produce an absolute upstream URL. The request is replayed against it with
the inbound method and headers, and the upstream response is streamed back
to the client as it arrives.

Two pipes run inside one upstream exchange:
- client -> upstream: the inbound body, fed to httpx as an async iterator
- upstream -> client: raw upstream body chunks written to a StreamResponse

Leaving the exchange for any reason closes both, so a failure on one side
never leaves the other half-open.
"""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import AsyncIterator, Mapping

import httpx
import structlog
from aiohttp import web
from multidict import CIMultiDict

from modrewrite.errors import ClientDisconnectedError, MalformedURLError, UpstreamTransportError
from modrewrite.observability.metrics import (
    BYTES_TRANSFERRED,
    PROXY_DURATION,
    PROXY_REQUESTS,
    bucket_status,
)
from modrewrite.rewrite.rules import RewriteRule

logger = structlog.get_logger()

DEFAULT_VIA = f"1.1 {socket.gethostname()}"

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def build_target(rule: RewriteRule, url: str) -> httpx.URL:
    """Apply the rule's substitution to the full request URL.

    Args:
        rule: The proxy rule.
        url: Current request URL (path and query).

    Returns:
        The absolute upstream URL.

    Raises:
        MalformedURLError: If the result is not an absolute http(s) URL.
    """
    target = rule.substitute(url)
    try:
        parsed = httpx.URL(target)
    except httpx.InvalidURL as e:
        raise MalformedURLError(target, f"invalid proxy target ({e})") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise MalformedURLError(target, "proxy target must be an absolute http(s) URL")
    return parsed


def build_headers(
    headers: Mapping[str, str], via: str = DEFAULT_VIA
) -> tuple[CIMultiDict[str], str]:
    """Build the outbound request headers.

    Copies the inbound headers, drops Host (the client derives it from the
    target) and hop-by-hop headers, and chains this proxy onto Via.

    Returns:
        Tuple of (outbound headers, Via chain value).
    """
    outbound: CIMultiDict[str] = CIMultiDict()
    for key, value in headers.items():
        key_lower = key.lower()
        if key_lower in HOP_BY_HOP or key_lower in ("host", "via"):
            continue
        outbound.add(key, value)

    existing = headers.get("Via")
    chain = f"{existing}, {via}" if existing else via
    outbound["Via"] = chain
    return outbound, chain


def build_response_headers(
    upstream: httpx.Headers, via: str, defaults: Mapping[str, str] | None = None
) -> CIMultiDict[str]:
    """Headers relayed to the client: upstream's, minus hop-by-hop, with our Via."""
    relayed: CIMultiDict[str] = CIMultiDict()
    for key, value in upstream.multi_items():
        if key.lower() in HOP_BY_HOP:
            continue
        relayed.add(key, value)
    for key, value in (defaults or {}).items():
        relayed.setdefault(key, value)
    relayed["Via"] = via
    return relayed


class ProxyForwarder:
    """Forwards requests to upstreams computed by proxy rules.

    Owns one ``httpx.AsyncClient``. Redirects are never followed and failed
    requests are never retried; failures surface as exceptions.
    """

    def __init__(
        self,
        via: str = DEFAULT_VIA,
        connect_timeout: float | None = 30.0,
        read_timeout: float | None = None,
        chunk_size: int = 65536,
    ) -> None:
        self.via = via
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        # None means no timeout at all for that phase
        timeout = httpx.Timeout(
            None,
            connect=self.connect_timeout,
            read=self.read_timeout,
        )
        # Redirects go back to the client untouched
        return httpx.AsyncClient(timeout=timeout, follow_redirects=False)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ProxyForwarder:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _iter_body(self, request: web.Request) -> AsyncIterator[bytes]:
        async for chunk in request.content.iter_chunked(self.chunk_size):
            BYTES_TRANSFERRED.labels(direction="in").inc(len(chunk))
            yield chunk

    async def forward(
        self,
        rule: RewriteRule,
        request: web.Request,
        url: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> web.StreamResponse:
        """Proxy ``request`` to the upstream computed by ``rule``.

        Args:
            rule: Proxy rule whose substitution yields the upstream URL.
            request: The inbound aiohttp request.
            url: URL to substitute over; defaults to the request's raw path.
                Pass the dispatcher's current URL when earlier rules
                rewrote it.
            headers: Response headers set before proxying (e.g. a forced
                Content-Type); the upstream's own headers take precedence.

        Returns:
            The streamed client response, already completed.

        Raises:
            MalformedURLError: If the upstream URL is not valid.
            UpstreamTransportError: If the upstream cannot be reached or the
                upstream body stream fails.
            ClientDisconnectedError: If the client goes away mid-stream.
        """
        target = build_target(rule, url if url is not None else request.raw_path)
        outbound, via = build_headers(request.headers, self.via)
        content = self._iter_body(request) if request.can_read_body else b""

        start = time.monotonic()
        response: web.StreamResponse | None = None
        try:
            async with self.client.stream(
                request.method, target, headers=list(outbound.items()), content=content
            ) as upstream:
                response = web.StreamResponse(
                    status=upstream.status_code,
                    reason=upstream.reason_phrase or None,
                    headers=build_response_headers(upstream.headers, via, headers),
                )
                await response.prepare(request)

                async for chunk in upstream.aiter_raw(self.chunk_size):
                    await response.write(chunk)
                    BYTES_TRANSFERRED.labels(direction="out").inc(len(chunk))

                await response.write_eof()
        except httpx.RequestError as e:
            PROXY_REQUESTS.labels(status="error").inc()
            logger.warning(
                "Upstream request failed",
                target=str(target),
                error=str(e),
                error_type=type(e).__name__,
                streaming=response is not None,
            )
            raise UpstreamTransportError(str(target), e, streaming=response is not None) from e
        except ConnectionResetError as e:
            PROXY_REQUESTS.labels(status="disconnect").inc()
            logger.warning("Client disconnected during proxy", target=str(target))
            raise ClientDisconnectedError(f"client went away while proxying to {target}") from e
        except asyncio.CancelledError:
            PROXY_REQUESTS.labels(status="disconnect").inc()
            logger.warning("Proxy cancelled", target=str(target))
            raise

        PROXY_REQUESTS.labels(status=bucket_status(response.status)).inc()
        PROXY_DURATION.observe(time.monotonic() - start)
        logger.info(
            "Proxied request",
            method=request.method,
            target=str(target),
            status=response.status,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return response
