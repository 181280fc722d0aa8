"""Middleware shipped with restclient."""

from __future__ import annotations

from .builtin import (
    AsyncBasicAuthMiddleware,
    AsyncRequestLogger,
    AsyncStatusCodeToErrorTransformer,
    BasicAuthMiddleware,
    RequestLogger,
    StatusCodeToErrorTransformer,
)
from .oauth import AsyncOAuthMiddleware, OAuthMiddleware

__all__ = [
    "AsyncBasicAuthMiddleware",
    "AsyncOAuthMiddleware",
    "AsyncRequestLogger",
    "AsyncStatusCodeToErrorTransformer",
    "BasicAuthMiddleware",
    "OAuthMiddleware",
    "RequestLogger",
    "StatusCodeToErrorTransformer",
]
