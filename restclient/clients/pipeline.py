"""
Request pipeline primitives.

Requests and responses are modelled independently of the underlying HTTP
transport so cross-cutting behavior can be implemented as middleware. A
pipeline is any callable turning a `Request` into a `Response`; middleware
receives the request plus the next pipeline in the chain.
"""

from __future__ import annotations

import json as _json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, TypeAlias

Header: TypeAlias = tuple[str, str]


def _values(headers: Sequence[Header], name: str) -> list[str]:
    key = name.lower()
    return [value for header, value in headers if header.lower() == key]


@dataclass(frozen=True, slots=True)
class Request:
    """
    An outbound request.

    Immutable: middleware that needs a different request derives a new one
    with the `with_*` helpers, so middleware instances can be shared safely
    between concurrent calls.
    """

    method: str
    url: str
    headers: tuple[Header, ...] = ()
    content: bytes | None = None

    def header(self, name: str) -> str | None:
        values = _values(self.headers, name)
        return values[0] if values else None

    def header_values(self, name: str) -> list[str]:
        return _values(self.headers, name)

    def with_header(self, name: str, value: str) -> Request:
        """Return a copy where `name` has exactly one value."""
        return replace(self, headers=(*self.without_header(name).headers, (name, value)))

    def add_header(self, name: str, value: str) -> Request:
        return replace(self, headers=(*self.headers, (name, value)))

    def without_header(self, name: str) -> Request:
        key = name.lower()
        return replace(self, headers=tuple(h for h in self.headers if h[0].lower() != key))


@dataclass(frozen=True, slots=True)
class Response:
    status_code: int
    headers: tuple[Header, ...] = ()
    content: bytes = b""
    request: Request | None = field(default=None, compare=False, repr=False)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def header(self, name: str) -> str | None:
        values = _values(self.headers, name)
        return values[0] if values else None

    def header_values(self, name: str) -> list[str]:
        return _values(self.headers, name)

    def json(self) -> Any:
        return _json.loads(self.content)


Pipeline: TypeAlias = Callable[[Request], Response]
AsyncPipeline: TypeAlias = Callable[[Request], Awaitable[Response]]


class Middleware(Protocol):
    def __call__(self, req: Request, next: Pipeline) -> Response: ...


class AsyncMiddleware(Protocol):
    async def __call__(self, req: Request, next: AsyncPipeline) -> Response: ...


def compose(middlewares: Sequence[Middleware], terminal: Pipeline) -> Pipeline:
    """
    Fold `middlewares` around `terminal` into a single pipeline.

    The first middleware is the outermost: it sees the request first and the
    response last. An empty sequence returns `terminal` itself.
    """
    pipeline = terminal
    for middleware in reversed(middlewares):
        next_pipeline = pipeline

        def _wrapped(
            req: Request, *, _mw: Middleware = middleware, _n: Pipeline = next_pipeline
        ) -> Response:
            return _mw(req, _n)

        pipeline = _wrapped
    return pipeline


def compose_async(middlewares: Sequence[AsyncMiddleware], terminal: AsyncPipeline) -> AsyncPipeline:
    pipeline = terminal
    for middleware in reversed(middlewares):
        next_pipeline = pipeline

        async def _wrapped(
            req: Request,
            *,
            _mw: AsyncMiddleware = middleware,
            _n: AsyncPipeline = next_pipeline,
        ) -> Response:
            return await _mw(req, _n)

        pipeline = _wrapped
    return pipeline
