"""
OAuth token and flow result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Token:
    """Token pair returned by the token endpoint."""

    access_token: str
    refresh_token: str = field(default="", repr=False)
    token_type: str = ""
    expiry: Optional[datetime] = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Success:
    """The callback exchange produced a token."""

    token: Token


@dataclass(frozen=True)
class Failure:
    """The flow ended without a token."""

    error: Exception


FlowResult = Union[Success, Failure]
