"""
REST client facade.

Builds requests (URL resolution, query merging, JSON encoding), sends them
through the middleware chain, and decodes responses. The chain is composed
from the client's current `middleware` list on every send, so middleware can
be added after construction.
"""

from __future__ import annotations

import inspect
import json as _json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from ..exceptions import RequestError, RestClientError
from ..middleware.builtin import (
    AsyncRequestLogger,
    AsyncStatusCodeToErrorTransformer,
    RequestLogger,
    StatusCodeToErrorTransformer,
)
from .pipeline import AsyncMiddleware, Middleware, Request, Response, compose, compose_async
from .transport import AsyncHTTPXResponder, HTTPXResponder

T = TypeVar("T", bound=BaseModel)

QueryParams = Mapping[str, Any] | Sequence[tuple[str, Any]]

NOT_FOUND = 404


@dataclass(slots=True)
class ClientConfig:
    """
    Configuration shared by `HTTPClient` and `AsyncHTTPClient`.

    Attributes:
        base_url: Prefix for relative request URLs (e.g. "https://api.example.com/v1").
        headers: Headers sent with every request.
        timeout: Transport timeout in seconds.
        middleware: Middleware in chain order; the first one sees the request first.
        log_requests: Prepend a request logger to the chain.
        raise_for_status: Raise `RequestError` for 4xx/5xx responses.
        transport: Custom httpx transport for the sync client (e.g. `httpx.MockTransport`).
        async_transport: Custom httpx transport for the async client.
    """

    base_url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    middleware: Sequence[Any] = ()
    log_requests: bool = False
    raise_for_status: bool = False
    transport: httpx.BaseTransport | None = None
    async_transport: httpx.AsyncBaseTransport | None = None


def _decode_json(req: Request, response: Response, model: type[T] | None) -> Any:
    try:
        data = response.json()
        return model.model_validate(data) if model is not None else data
    except ValueError as e:
        raise RequestError.wrap(e, req, response) from e


def _decode_text(req: Request, response: Response) -> str:
    if not response.content:
        raise RequestError(req, response, message="Empty body")
    try:
        return response.content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise RequestError(req, response, underlying_error=e, message="Failed to decode body") from e


def _attach_request(response: Response, req: Request) -> Response:
    # Short-circuiting middleware may answer without a request attached.
    return response if response.request is not None else replace(response, request=req)


def _is_not_found(error: RequestError) -> bool:
    return error.status == NOT_FOUND


class _BaseHTTPClient:
    def __init__(self, config: ClientConfig):
        self._config = config

    @property
    def base_url(self) -> str:
        return self._config.base_url

    def resolve(self, url: str, params: QueryParams | None = None) -> str:
        """
        Resolve `url` against the base URL and merge `params` into its query.

        Absolute URLs are kept as-is; existing query parameters are preserved.
        """
        if not httpx.URL(url).is_absolute_url:
            url = self._config.base_url.rstrip("/") + "/" + url.lstrip("/")
        resolved = httpx.URL(url)
        if params:
            resolved = resolved.copy_merge_params(params)
        return str(resolved)

    def build_request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any | None = None,
        content: bytes | None = None,
    ) -> Request:
        req = Request(method=method.upper(), url=self.resolve(url, params))
        for name, value in {**self._config.headers, **(headers or {})}.items():
            req = req.with_header(name, value)
        if json is not None:
            try:
                content = _json.dumps(json).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise RequestError.wrap(e, req) from e
            if req.header("Content-Type") is None:
                req = req.with_header("Content-Type", "application/json")
        return replace(req, content=content)


class HTTPClient(_BaseHTTPClient):
    """
    Synchronous REST client.

    Example:
        ```python
        config = ClientConfig(base_url="https://api.example.com/v1", raise_for_status=True)
        with HTTPClient(config) as http:
            books = http.get_json("/books", params={"limit": 10})
        ```
    """

    def __init__(self, config: ClientConfig):
        super().__init__(config)
        self._client = httpx.Client(timeout=config.timeout, transport=config.transport)
        self._terminal = HTTPXResponder(self._client)
        self.middleware: list[Middleware] = []
        if config.log_requests:
            self.middleware.append(RequestLogger())
        if config.raise_for_status:
            self.middleware.append(StatusCodeToErrorTransformer())
        self.middleware.extend(config.middleware)

    def __enter__(self) -> HTTPClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client and any middleware that owns resources."""
        for middleware in self.middleware:
            close = getattr(middleware, "close", None)
            if callable(close):
                close()
        self._terminal.close()

    def send(self, req: Request) -> Response:
        """Send a fully built request down the middleware chain."""
        responder = compose(self.middleware, self._terminal)
        try:
            response = responder(req)
        except RestClientError:
            raise
        except Exception as e:
            raise RequestError.wrap(e, req) from e
        return _attach_request(response, req)

    def request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any | None = None,
        content: bytes | None = None,
    ) -> Response:
        _, response = self._exchange(
            method, url, params=params, headers=headers, json=json, content=content
        )
        return response

    def _exchange(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any | None = None,
        content: bytes | None = None,
    ) -> tuple[Request, Response]:
        req = self.build_request(
            method, url, params=params, headers=headers, json=json, content=content
        )
        return req, self.send(req)

    def get_json(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any:
        """GET `url` and decode the JSON body, optionally into `model`."""
        req, response = self._exchange("GET", url, params=params, headers=headers)
        return _decode_json(req, response, model)

    def get_optional_json(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any | None:
        """Like `get_json`, but a 404 yields `None` instead of an error."""
        try:
            req, response = self._exchange("GET", url, params=params, headers=headers)
        except RequestError as e:
            if _is_not_found(e):
                return None
            raise
        if response.status_code == NOT_FOUND:
            return None
        return _decode_json(req, response, model)

    def get_text(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        return _decode_text(*self._exchange("GET", url, params=params, headers=headers))

    def request_json(
        self,
        method: str,
        url: str,
        *,
        json: Any | None = None,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any:
        """Send a JSON payload and decode the JSON response."""
        req, response = self._exchange(method, url, params=params, headers=headers, json=json)
        return _decode_json(req, response, model)


class AsyncHTTPClient(_BaseHTTPClient):
    """Asynchronous REST client with the same interface as `HTTPClient`."""

    def __init__(self, config: ClientConfig):
        super().__init__(config)
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=config.async_transport)
        self._terminal = AsyncHTTPXResponder(self._client)
        self.middleware: list[AsyncMiddleware] = []
        if config.log_requests:
            self.middleware.append(AsyncRequestLogger())
        if config.raise_for_status:
            self.middleware.append(AsyncStatusCodeToErrorTransformer())
        self.middleware.extend(config.middleware)

    async def __aenter__(self) -> AsyncHTTPClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client and any middleware that owns resources."""
        for middleware in self.middleware:
            close = getattr(middleware, "close", None)
            if callable(close):
                result = close()
                if inspect.isawaitable(result):
                    await result
        await self._terminal.close()

    async def send(self, req: Request) -> Response:
        responder = compose_async(self.middleware, self._terminal)
        try:
            response = await responder(req)
        except RestClientError:
            raise
        except Exception as e:
            raise RequestError.wrap(e, req) from e
        return _attach_request(response, req)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any | None = None,
        content: bytes | None = None,
    ) -> Response:
        _, response = await self._exchange(
            method, url, params=params, headers=headers, json=json, content=content
        )
        return response

    async def _exchange(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any | None = None,
        content: bytes | None = None,
    ) -> tuple[Request, Response]:
        req = self.build_request(
            method, url, params=params, headers=headers, json=json, content=content
        )
        return req, await self.send(req)

    async def get_json(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any:
        req, response = await self._exchange("GET", url, params=params, headers=headers)
        return _decode_json(req, response, model)

    async def get_optional_json(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any | None:
        try:
            req, response = await self._exchange("GET", url, params=params, headers=headers)
        except RequestError as e:
            if _is_not_found(e):
                return None
            raise
        if response.status_code == NOT_FOUND:
            return None
        return _decode_json(req, response, model)

    async def get_text(
        self,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        return _decode_text(*await self._exchange("GET", url, params=params, headers=headers))

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        json: Any | None = None,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        model: type[T] | None = None,
    ) -> Any:
        req, response = await self._exchange(
            method, url, params=params, headers=headers, json=json
        )
        return _decode_json(req, response, model)
