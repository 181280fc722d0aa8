"""
Small stateless middleware.

Each comes in a sync and an async flavor, matching `compose` and
`compose_async`.
"""

from __future__ import annotations

import base64
import logging

from ..clients.pipeline import AsyncPipeline, Pipeline, Request, Response
from ..exceptions import RequestError

logger = logging.getLogger(__name__)


def _basic_credentials(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode()
    return "Basic " + base64.b64encode(raw).decode("ascii")


class BasicAuthMiddleware:
    """Sets HTTP basic credentials on every request."""

    def __init__(self, username: str, password: str):
        self._value = _basic_credentials(username, password)

    def __call__(self, req: Request, next: Pipeline) -> Response:
        return next(req.with_header("Authorization", self._value))


class AsyncBasicAuthMiddleware:
    def __init__(self, username: str, password: str):
        self._value = _basic_credentials(username, password)

    async def __call__(self, req: Request, next: AsyncPipeline) -> Response:
        return await next(req.with_header("Authorization", self._value))


def _log_status(req: Request, response: Response, log: logging.Logger) -> None:
    log.debug(f"Status {response.status_code} [{req.method}:{req.url}]")


class RequestLogger:
    """Logs the status of each response at DEBUG level."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def __call__(self, req: Request, next: Pipeline) -> Response:
        response = next(req)
        _log_status(req, response, self._log)
        return response


class AsyncRequestLogger:
    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    async def __call__(self, req: Request, next: AsyncPipeline) -> Response:
        response = await next(req)
        _log_status(req, response, self._log)
        return response


def _check_status(req: Request, response: Response) -> Response:
    if response.status_code < 400:
        return response
    raise RequestError(req, response, message=f"HTTP {response.status_code}")


class StatusCodeToErrorTransformer:
    """Turns 4xx/5xx responses into `RequestError`."""

    def __call__(self, req: Request, next: Pipeline) -> Response:
        return _check_status(req, next(req))


class AsyncStatusCodeToErrorTransformer:
    async def __call__(self, req: Request, next: AsyncPipeline) -> Response:
        return _check_status(req, await next(req))
