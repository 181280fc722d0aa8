"""
OAuth session state.

A session holds the current access token and its local expiry, and knows the
grant-specific parts of talking to a token endpoint: which form fields to send
and how to fold a token response back into a new session value.

Sessions are immutable. `apply_refresh_result` returns a new value; the OAuth
middleware owning the session swaps it in after a successful refresh.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Protocol, TypeVar

from pydantic import ValidationError

from .exceptions import TokenResponseMalformedError
from .models.tokens import TokenResponse

DEFAULT_EXPIRY_MARGIN = 0.95

# Sentinel expiry for sessions that never held a token.
NEVER = datetime.min.replace(tzinfo=timezone.utc)

S = TypeVar("S", bound="OAuthSession")


class OAuthSession(Protocol):
    scope: str
    access_token: str
    expires_at: datetime

    def token_request_body(self, client_id: str, client_secret: str) -> dict[str, str]: ...

    def apply_refresh_result(
        self: S,
        payload: Any,
        *,
        now: datetime,
        margin: float = DEFAULT_EXPIRY_MARGIN,
    ) -> S: ...

    def is_expired(self, now: datetime) -> bool: ...


def parse_token_response(payload: Any) -> TokenResponse:
    """
    Validate a decoded token endpoint body.

    Raises:
        TokenResponseMalformedError: If the payload is not a JSON object or
            `access_token` / `expires_in` are missing or mistyped.
    """
    if not isinstance(payload, Mapping):
        raise TokenResponseMalformedError("Token response must be a JSON object")
    try:
        return TokenResponse.model_validate(dict(payload))
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise TokenResponseMalformedError(f"Token response is malformed ({fields})") from e


def expiry_after(now: datetime, expires_in: int, margin: float) -> datetime:
    try:
        return now + timedelta(seconds=expires_in * margin)
    except OverflowError as e:
        raise TokenResponseMalformedError(
            f"Token lifetime out of range (expires_in={expires_in})"
        ) from e


@dataclass(frozen=True, slots=True)
class ClientCredentialsSession:
    """Session for the `client_credentials` grant."""

    grant_type: ClassVar[str] = "client_credentials"

    scope: str
    access_token: str = ""
    expires_at: datetime = NEVER

    def token_request_body(self, client_id: str, client_secret: str) -> dict[str, str]:
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": self.grant_type,
            "scope": self.scope,
        }

    def apply_refresh_result(
        self,
        payload: Any,
        *,
        now: datetime,
        margin: float = DEFAULT_EXPIRY_MARGIN,
    ) -> ClientCredentialsSession:
        token = parse_token_response(payload)
        return replace(
            self,
            access_token=token.access_token,
            expires_at=expiry_after(now, token.expires_in, margin),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class RefreshTokenSession:
    """
    Session for the `refresh_token` grant.

    Used after an authorization-code exchange happened elsewhere. When the
    token endpoint rotates the refresh token, the new one is kept.
    """

    grant_type: ClassVar[str] = "refresh_token"

    scope: str
    refresh_token: str
    access_token: str = ""
    expires_at: datetime = NEVER

    def token_request_body(self, client_id: str, client_secret: str) -> dict[str, str]:
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }

    def apply_refresh_result(
        self,
        payload: Any,
        *,
        now: datetime,
        margin: float = DEFAULT_EXPIRY_MARGIN,
    ) -> RefreshTokenSession:
        token = parse_token_response(payload)
        return replace(
            self,
            access_token=token.access_token,
            refresh_token=token.refresh_token or self.refresh_token,
            expires_at=expiry_after(now, token.expires_in, margin),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
