"""
Client policies (cross-cutting behavioral controls).

Policies are plain immutable values handed to the middleware that enforces
them.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AuthPolicy:
    """
    Retry and expiry behavior of the OAuth middleware.

    Attributes:
        max_trials: Attempts per request before giving up on repeated 401s.
            Each 401 except the last one triggers a token refresh.
        expiry_margin: Fraction of the server-declared token lifetime after
            which the token is considered expired locally.
    """

    max_trials: int = 3
    expiry_margin: float = 0.95

    def __post_init__(self) -> None:
        if self.max_trials < 0:
            raise ValueError("max_trials must be >= 0")
        if not 0 < self.expiry_margin < 1:
            raise ValueError("expiry_margin must be between 0 and 1 (exclusive)")
