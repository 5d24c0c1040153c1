"""Request-routing middleware for the engine sidecar.

Requests to the GraphQL endpoint are forwarded to the engine, which calls back
into the same endpoint as an origin. Those callbacks carry the shared secret
in ``X-Engine-From`` and go straight to the real handler. While the engine is
not reachable (``uri`` empty) requests pass through untouched.
"""

from __future__ import annotations

import logging

import httpx
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from sidecar.models import MiddlewareParams

logger = logging.getLogger(__name__)

ENGINE_FROM_HEADER = "x-engine-from"

# Connection-level headers are never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

# httpx hands back decoded bodies
RESPONSE_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding"}


def _forwardable(pairs, skip: frozenset[str] = HOP_BY_HOP_HEADERS) -> list[tuple[str, str]]:  # noqa: ANN001
    # Pairs, not a dict: repeated headers such as Set-Cookie must stay separate
    return [(k, v) for k, v in pairs if k.lower() not in skip]


class EngineMiddleware(BaseHTTPMiddleware):
    """Routes GraphQL requests through the engine proxy when it is running.

    An injected ``client`` is reused for every forwarded request and stays
    owned by the caller. Without one, each forwarded request opens and closes
    its own client.
    """

    def __init__(
        self,
        app,  # noqa: ANN001
        params: MiddlewareParams,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(app)
        self.params = params
        self.client = client
        self.timeout = timeout

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        params = self.params
        if request.url.path != params.endpoint:
            return await call_next(request)

        # The engine calling us back as its origin
        if request.headers.get(ENGINE_FROM_HEADER) == params.psk:
            return await call_next(request)

        # Engine not up (starting, crashed, stopped): serve directly
        uri = params.uri
        if not uri:
            return await call_next(request)

        return await self._forward(request, uri)

    async def _forward(self, request: Request, uri: str) -> Response:
        target = uri + request.url.path
        if request.url.query:
            target += "?" + request.url.query
        body = await request.body()

        if self.params.dump_traffic:
            logger.debug("-> engine %s %s (%d bytes)", request.method, target, len(body))

        try:
            upstream = await self._send(
                request.method,
                target,
                headers=_forwardable(request.headers.items()),
                content=body,
            )
        except httpx.HTTPError as e:
            logger.warning("Engine request to %s failed: %s", target, e)
            return JSONResponse(
                status_code=502,
                content={"detail": f"Engine unavailable: {e}"},
            )

        if self.params.dump_traffic:
            logger.debug(
                "<- engine %d %s (%d bytes)",
                upstream.status_code, target, len(upstream.content),
            )

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for name, value in _forwardable(upstream.headers.multi_items(), RESPONSE_SKIP_HEADERS):
            response.headers.append(name, value)
        return response

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:  # noqa: ANN003
        if self.client is not None:
            return await self.client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)
