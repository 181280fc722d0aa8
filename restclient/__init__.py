"""
restclient: an HTTP client built around a composable middleware chain.

Requests pass through an ordered list of middleware before reaching the httpx
transport; responses travel back through the same middleware in reverse. The
OAuth middleware keeps a bearer token fresh, refreshing it once for all
concurrent callers.

Example:
    ```python
    from restclient import ClientConfig, ClientCredentialsSession, HTTPClient, OAuthMiddleware

    auth = OAuthMiddleware(
        client_id="id",
        client_secret="secret",
        token_url="https://auth.example.com/oauth/token",
        session=ClientCredentialsSession(scope="books:read"),
    )
    config = ClientConfig(base_url="https://api.example.com/v1", middleware=[auth])
    with HTTPClient(config) as http:
        books = http.get_json("/books")
    ```
"""

from __future__ import annotations

from .clients.http import AsyncHTTPClient, ClientConfig, HTTPClient
from .clients.pipeline import (
    AsyncMiddleware,
    AsyncPipeline,
    Middleware,
    Pipeline,
    Request,
    Response,
    compose,
    compose_async,
)
from .clients.transport import AsyncHTTPXResponder, HTTPXResponder
from .exceptions import (
    AuthError,
    AuthExhaustedError,
    RequestError,
    RestClientError,
    TokenRefreshFailedError,
    TokenResponseMalformedError,
    TransportError,
)
from .middleware import (
    AsyncBasicAuthMiddleware,
    AsyncOAuthMiddleware,
    AsyncRequestLogger,
    AsyncStatusCodeToErrorTransformer,
    BasicAuthMiddleware,
    OAuthMiddleware,
    RequestLogger,
    StatusCodeToErrorTransformer,
)
from .policies import AuthPolicy
from .sessions import ClientCredentialsSession, OAuthSession, RefreshTokenSession

__version__ = "0.1.0"

__all__ = [
    # Clients
    "HTTPClient",
    "AsyncHTTPClient",
    "ClientConfig",
    # Pipeline
    "Request",
    "Response",
    "Pipeline",
    "AsyncPipeline",
    "Middleware",
    "AsyncMiddleware",
    "compose",
    "compose_async",
    "HTTPXResponder",
    "AsyncHTTPXResponder",
    # Middleware
    "OAuthMiddleware",
    "AsyncOAuthMiddleware",
    "BasicAuthMiddleware",
    "AsyncBasicAuthMiddleware",
    "RequestLogger",
    "AsyncRequestLogger",
    "StatusCodeToErrorTransformer",
    "AsyncStatusCodeToErrorTransformer",
    # OAuth
    "OAuthSession",
    "ClientCredentialsSession",
    "RefreshTokenSession",
    "AuthPolicy",
    # Exceptions
    "RestClientError",
    "TransportError",
    "AuthError",
    "AuthExhaustedError",
    "TokenRefreshFailedError",
    "TokenResponseMalformedError",
    "RequestError",
]
