"""
config.py

Loads environment defaults from .env using python-dotenv.
Exposes them as typed constants grouped by section, and builds the
immutable FlowConfig record from command-line flags.
Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

# ---------------------------------------------------------------------------
# Load nearest .env from the working directory (never overrides real env)
# ---------------------------------------------------------------------------
load_dotenv(find_dotenv(usecwd=True))


def _get_optional(key: str, default: str = "") -> str:
    """
    Retrieve an optional environment variable with a default.

    Args:
        key: The environment variable name.
        default: Fallback value if not set.

    Returns:
        The value string or default.
    """
    return os.getenv(key, default).strip() or default


def _get_int(key: str, default: int = 0) -> int:
    """
    Retrieve an environment variable as an integer.

    Args:
        key: The environment variable name.
        default: Fallback if not set or not a valid int.

    Returns:
        The integer value.
    """
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# ===========================================================================
# Section 1 - OAuth client credentials (env fallbacks for the CLI flags)
# ===========================================================================

CLIENT_ID_ENV = "OAUTH_CLIENT_ID"
CLIENT_SECRET_ENV = "OAUTH_CLIENT_SECRET"

DEFAULT_REDIRECT_URL = "http://localhost:8080/callback"
DEFAULT_PORT = 8080
CALLBACK_PATH = "/callback"

AUTH_STYLES = ("auto", "header", "params")

# ===========================================================================
# Section 2 - Token endpoint and callback listener
# ===========================================================================

HTTP_TIMEOUT_SECONDS: int = _get_int("TOKENGEN_HTTP_TIMEOUT", 30)

# Connections that send no request (browser preconnects) are dropped after this.
REQUEST_TIMEOUT_SECONDS: int = _get_int("TOKENGEN_REQUEST_TIMEOUT", 5)

# ===========================================================================
# Section 3 - Logging
# ===========================================================================

LOG_LEVEL: str = _get_optional("TOKENGEN_LOG_LEVEL", "INFO").upper()
LOGS_DIR: Path = Path(
    _get_optional(
        "TOKENGEN_LOGS_DIR", str(Path.home() / ".oauth-tokengen" / "logs")
    )
).expanduser()
LOG_FILE: Path = LOGS_DIR / "tokengen.log"

LOGS_DIR.mkdir(parents=True, exist_ok=True)


# ===========================================================================
# Flow configuration record
# ===========================================================================

def parse_scopes(raw: str) -> tuple[str, ...]:
    """Split a comma-separated scope list, dropping blanks."""
    return tuple(part.strip() for part in (raw or "").split(",") if part.strip())


@dataclass(frozen=True)
class FlowConfig:
    """
    Immutable settings for one authorization-code flow.

    Created once at startup from merged flag/environment input and read-only
    thereafter.
    """

    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    authorization_url: str = ""
    token_url: str = ""
    redirect_url: str = DEFAULT_REDIRECT_URL
    scopes: tuple[str, ...] = ()
    port: int = DEFAULT_PORT
    state: Optional[str] = None
    timeout: Optional[float] = None
    auth_style: str = "auto"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "FlowConfig":
        """
        Build a FlowConfig from parsed CLI flags.

        Client id and secret fall back to OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET
        when the flag is empty. All other fields come from flags only.

        Args:
            args: Namespace produced by main.parse_args().

        Returns:
            The merged FlowConfig.

        Example:
            cfg = FlowConfig.from_args(parse_args(["--auth-url", "..."]))
        """
        return cls(
            client_id=(args.client_id or "").strip() or _get_optional(CLIENT_ID_ENV),
            client_secret=(args.client_secret or "").strip()
            or _get_optional(CLIENT_SECRET_ENV),
            authorization_url=(args.auth_url or "").strip(),
            token_url=(args.token_url or "").strip(),
            redirect_url=(args.redirect_url or "").strip(),
            scopes=parse_scopes(args.scopes),
            port=args.port,
            state=args.state or None,
            timeout=args.timeout,
            auth_style=args.auth_style,
        )

    def missing_fields(self) -> list[tuple[str, Optional[str]]]:
        """
        Return the required fields that are empty.

        Returns:
            A list of (flag, env var or None) pairs, in flag order.
        """
        checks = [
            (self.client_id, "--client-id", CLIENT_ID_ENV),
            (self.client_secret, "--client-secret", CLIENT_SECRET_ENV),
            (self.authorization_url, "--auth-url", None),
            (self.token_url, "--token-url", None),
        ]
        return [(flag, env) for value, flag, env in checks if not value]

    def as_dict(self) -> dict[str, object]:
        """
        Return the configuration as a flat dictionary.
        Useful for debugging - does NOT include the client secret.
        """
        return {
            "client_id": self.client_id,
            "client_secret": "***set***" if self.client_secret else "",
            "authorization_url": self.authorization_url,
            "token_url": self.token_url,
            "redirect_url": self.redirect_url,
            "scopes": ",".join(self.scopes),
            "port": self.port,
            "state": "(fixed)" if self.state else "(random)",
            "timeout": self.timeout,
            "auth_style": self.auth_style,
        }
