"""
Exceptions raised by the client and its middleware.

All errors derive from `RestClientError` so callers can catch everything the
package raises in one place. Transport failures surface as `TransportError`;
the OAuth middleware raises the `AuthError` family.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .clients.pipeline import Request, Response


class RestClientError(Exception):
    """Base class for every error raised by restclient."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class TransportError(RestClientError):
    """The underlying HTTP transport failed to produce a response."""


# =============================================================================
# Auth middleware
# =============================================================================


class AuthError(RestClientError):
    """Base class for OAuth middleware failures."""


class AuthExhaustedError(AuthError):
    """The server kept answering 401 after every allowed attempt."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Authentication failed after too many trials ({url})")
        self.url = url


class TokenRefreshFailedError(AuthError):
    """The token endpoint answered with a non-2xx status."""

    def __init__(self, url: str, response: Response) -> None:
        body = response.text.strip() or "<empty body>"
        indented = "\n\t".join(body.splitlines())
        super().__init__(
            f"Token refresh failed calling URL '{url}' (status {response.status_code}):\n\t{indented}"
        )
        self.url = url
        self.response = response

    @property
    def status(self) -> int:
        return self.response.status_code


class TokenResponseMalformedError(AuthError):
    """The token endpoint answered 2xx, but the body is not a usable token payload."""


# =============================================================================
# Request errors (facade / status transformer)
# =============================================================================


class RequestError(RestClientError):
    """
    A request failed, either by status code or while encoding/decoding.

    Carries the request, the response (when one was received), and the
    underlying exception (when one caused the failure).
    """

    def __init__(
        self,
        request: Request,
        response: Response | None = None,
        *,
        underlying_error: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        self.request = request
        self.response = response
        self.underlying_error = underlying_error
        self.detail = message
        super().__init__(self._describe())

    @classmethod
    def wrap(
        cls,
        error: BaseException,
        request: Request,
        response: Response | None = None,
    ) -> RequestError:
        if isinstance(error, RequestError):
            return error
        return cls(request, response, underlying_error=error)

    @property
    def status(self) -> int | None:
        return self.response.status_code if self.response is not None else None

    def _describe(self) -> str:
        parts: list[str] = []
        if self.detail:
            parts.append(self.detail)
        if self.underlying_error is not None:
            parts.append(f"Underlying error: {self.underlying_error}")
        parts.append(f"Request: [{self.request.method}] {self.request.url}")
        if self.response is not None:
            parts.append(f"Response: {self.response.status_code}")
        return "\n".join(parts)
