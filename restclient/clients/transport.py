"""
Terminal responders backed by httpx.

These sit at the end of a pipeline and perform the actual network I/O.
Connection pooling, TLS and timeouts are configured on the httpx client.
"""

from __future__ import annotations

import httpx

from ..exceptions import TransportError
from .pipeline import Request, Response


def _to_httpx(client: httpx.Client | httpx.AsyncClient, req: Request) -> httpx.Request:
    return client.build_request(
        req.method,
        req.url,
        headers=list(req.headers),
        content=req.content,
    )


def _from_httpx(response: httpx.Response, req: Request) -> Response:
    return Response(
        status_code=response.status_code,
        headers=tuple(response.headers.multi_items()),
        content=response.content,
        request=req,
    )


class HTTPXResponder:
    """Sends requests with a synchronous `httpx.Client`."""

    def __init__(self, client: httpx.Client):
        self._client = client

    def __call__(self, req: Request) -> Response:
        try:
            response = self._client.send(_to_httpx(self._client, req))
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__} during [{req.method}] {req.url}: {e}") from e
        return _from_httpx(response, req)

    def close(self) -> None:
        self._client.close()


class AsyncHTTPXResponder:
    """Sends requests with an `httpx.AsyncClient`."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def __call__(self, req: Request) -> Response:
        try:
            response = await self._client.send(_to_httpx(self._client, req))
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__} during [{req.method}] {req.url}: {e}") from e
        return _from_httpx(response, req)

    async def close(self) -> None:
        await self._client.aclose()
