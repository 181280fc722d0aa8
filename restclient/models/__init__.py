"""
Data models.

All Pydantic models used by the client are available from this module.
"""

from __future__ import annotations

from .tokens import TokenResponse

__all__ = ["TokenResponse"]
