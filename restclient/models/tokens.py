"""Token endpoint payloads."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TokenResponse(BaseModel):
    """
    JSON body returned by an OAuth2 token endpoint.

    Only `access_token` and `expires_in` are required; the remaining fields
    depend on the grant type. Validation is strict: `expires_in` must be a JSON
    integer, not a string, float or boolean.
    """

    model_config = ConfigDict(extra="ignore", strict=True)

    access_token: str = Field(min_length=1)
    expires_in: int = Field(ge=0)
    token_type: str | None = None
    scope: str | None = None
    refresh_token: str | None = None
