"""Reverse proxy to the upstream application."""

from urllib.parse import quote

import httpx
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from auth_gateway.config import GatewayConfig
from auth_gateway.logging import get_logger

logger = get_logger("proxy")

# Headers that describe a single connection and must not be relayed (RFC 9110 7.6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

DEFAULT_LIMITS = httpx.Limits(max_connections=100, max_keepalive_connections=20)

# Reserved and already-escaped characters pass through quote() untouched
URL_SAFE_CHARS = "/%:@!$&'()*+,;=?~"


def request_path(request: Request) -> str:
    """Percent-encoded path of the request, without the query string.

    Existing escapes are kept as sent; raw non-ASCII bytes are escaped.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return quote(raw_path.split(b"?", 1)[0], safe=URL_SAFE_CHARS)
    return quote(request.url.path, safe=URL_SAFE_CHARS)


def request_query(request: Request) -> str:
    """Query string of the request with raw non-ASCII bytes escaped."""
    return quote(request.scope.get("query_string", b""), safe=URL_SAFE_CHARS)


def join_paths(base: str, path: str) -> str:
    """Join the upstream base path and the request path with a single slash."""
    base_slash = base.endswith("/")
    path_slash = path.startswith("/")
    if base_slash and path_slash:
        return base + path[1:]
    if not base_slash and not path_slash:
        return f"{base}/{path}"
    return base + path


def join_queries(base: str, query: str) -> str:
    if base and query:
        return f"{base}&{query}"
    return base or query


def strip_hop_by_hop(raw_headers: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Drop hop-by-hop headers, including any named in Connection."""
    named = set()
    for name, value in raw_headers:
        if name.lower() == b"connection":
            named.update(
                token.strip().lower().decode("latin-1")
                for token in value.split(b",")
                if token.strip()
            )

    return [
        (name, value)
        for name, value in raw_headers
        if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        and name.lower().decode("latin-1") not in named
    ]


def _has_body(request: Request) -> bool:
    headers = request.headers
    if "transfer-encoding" in headers:
        return True
    return headers.get("content-length", "0") not in ("", "0")


class Forwarder:
    """Relays requests to the configured upstream, streaming in both directions."""

    def __init__(self, config: GatewayConfig, client: httpx.AsyncClient | None = None):
        target = config.target_url
        self._origin = f"{target.scheme}://{target.netloc.decode('ascii')}"
        self._base_path = target.raw_path.split(b"?", 1)[0].decode("ascii") or "/"
        self._base_query = target.query.decode("ascii")
        self._timeout = httpx.Timeout(config.upstream_timeout)
        self._client = client or httpx.AsyncClient(
            timeout=self._timeout,
            limits=DEFAULT_LIMITS,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        """Close the upstream connection pool."""
        await self._client.aclose()

    def upstream_url(self, request: Request) -> str:
        path = join_paths(self._base_path, request_path(request))
        query = join_queries(self._base_query, request_query(request))
        return f"{self._origin}{path}?{query}" if query else f"{self._origin}{path}"

    def upstream_headers(self, request: Request) -> list[tuple[bytes, bytes]]:
        """Request headers to send upstream. Host is set from the target URL."""
        headers = [
            (name, value)
            for name, value in strip_hop_by_hop(request.headers.raw)
            if name.lower() not in (b"host", b"x-forwarded-for", b"x-forwarded-host", b"x-forwarded-proto")
        ]

        forwarded_for = request.headers.get("x-forwarded-for")
        if request.client:
            client_host = request.client.host
            forwarded_for = f"{forwarded_for}, {client_host}" if forwarded_for else client_host
        if forwarded_for:
            headers.append((b"x-forwarded-for", forwarded_for.encode("latin-1")))
        if "host" in request.headers:
            headers.append((b"x-forwarded-host", request.headers["host"].encode("latin-1")))
        headers.append((b"x-forwarded-proto", request.url.scheme.encode("latin-1")))
        return headers

    async def forward(self, request: Request) -> Response:
        """Send the request upstream and stream the response back.

        Upstream failures become a 502 response; they are never raised.
        """
        url = self.upstream_url(request)
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=self.upstream_headers(request),
            content=request.stream() if _has_body(request) else None,
            extensions={"timeout": self._timeout.as_dict()},
        )

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            logger.error(f"Upstream request failed: {request.method} {url}: {type(e).__name__}: {e}")
            return PlainTextResponse("Bad Gateway", status_code=502)
        except ClientDisconnect:
            logger.debug(f"Client disconnected while sending {request.method} {url}")
            return Response(status_code=499)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = strip_hop_by_hop(upstream.headers.raw)
        return response
