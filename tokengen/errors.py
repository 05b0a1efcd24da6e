"""
errors.py

Exception types raised by the authorization-code flow.
Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

from __future__ import annotations

from typing import Optional


class TokenGenError(Exception):
    """Base class for all oauth-tokengen errors."""


class ConfigurationError(TokenGenError):
    """Required configuration is missing. Fatal; the user must rerun."""

    def __init__(self, missing: list[tuple[str, Optional[str]]]):
        self.missing = list(missing)
        names = ", ".join(flag for flag, _ in self.missing)
        super().__init__(f"required configuration missing: {names}")


class OAuthExchangeError(TokenGenError):
    """
    The token endpoint rejected the authorization code, or could not be reached.

    Attributes:
        status_code: HTTP status from the token endpoint, None for transport errors.
        error: OAuth2 error code from the response body (e.g. "invalid_grant").
        description: OAuth2 error_description, if the provider sent one.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: str = "",
        description: str = "",
    ):
        self.status_code = status_code
        self.error = error
        self.description = description
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.args[0]]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.error:
            parts.append(f"error={self.error}")
        if self.description:
            parts.append(f"description={self.description}")
        return " | ".join(parts)


class FlowTimeoutError(TokenGenError):
    """No callback completed the flow before the wait timed out."""


class FlowCancelledError(TokenGenError):
    """The flow was cancelled before a callback completed it."""
