"""
oauth_client.py

OAuth2 authorization-code client.
Builds the provider authorization URL for a state token and exchanges
the returned authorization code for an access/refresh token pair.
Part of oauth-tokengen - local OAuth2 authorization-code helper.

Client authentication styles:
    header  HTTP Basic auth with the form-encoded client id and secret
    params  client_id / client_secret sent in the request body
    auto    try header first, fall back to params if the provider rejects it
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, quote_plus, urlencode

import requests
from requests.auth import HTTPBasicAuth

import config
from tokengen.errors import OAuthExchangeError
from tokengen.types import Token

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "text/plain")

_log = logging.getLogger("tokengen.client")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOG_FILE, encoding="utf-8")
    _handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [client] %(message)s")
    )
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    _log.propagate = False


def _utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def _resolve_expiry(expires_in: Any) -> Optional[datetime]:
    """Turn a relative expires_in value into an absolute UTC expiry."""
    if expires_in is None or expires_in == "":
        return None

    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        _log.warning("Ignoring non-numeric expires_in: %r", expires_in)
        return None

    if seconds <= 0:
        return None
    return _utc_now() + timedelta(seconds=seconds)


def _parse_body(response: requests.Response) -> dict:
    """Decode a token endpoint response as JSON or form-encoded values."""
    content_type = response.headers.get("Content-Type", "")
    media_type = content_type.split(";")[0].strip().lower()

    if media_type in _FORM_CONTENT_TYPES:
        return {key: values[0] for key, values in parse_qs(response.text).items()}

    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _token_from_payload(payload: dict) -> Token:
    """Build a Token from a decoded token endpoint response."""
    access_token = str(payload.get("access_token") or "").strip()
    if not access_token:
        raise OAuthExchangeError(
            "server response missing access_token",
            error=str(payload.get("error") or ""),
            description=str(payload.get("error_description") or ""),
        )

    return Token(
        access_token=access_token,
        refresh_token=str(payload.get("refresh_token") or ""),
        token_type=str(payload.get("token_type") or ""),
        expiry=_resolve_expiry(payload.get("expires_in")),
        scope=str(payload.get("scope") or ""),
        raw=dict(payload),
    )


class OAuthClient:
    """
    Client for one OAuth2 provider's authorization and token endpoints.

    Example:
        client = OAuthClient.from_config(flow_config)
        url = client.authorization_url("state-token")
        token = client.exchange("authcode123")
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        authorization_url: str,
        token_url: str,
        redirect_url: str = "",
        scopes: Iterable[str] = (),
        auth_style: str = "auto",
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
    ):
        if auth_style not in config.AUTH_STYLES:
            raise ValueError(
                f"Invalid auth style: {auth_style}. Must be one of {', '.join(config.AUTH_STYLES)}."
            )

        self.client_id = client_id
        self.client_secret = client_secret
        self.authorization_endpoint = authorization_url
        self.token_url = token_url
        self.redirect_url = redirect_url
        self.scopes = tuple(scopes)
        self.auth_style = auth_style
        self.timeout = timeout

    @classmethod
    def from_config(cls, flow_config: config.FlowConfig) -> "OAuthClient":
        """Create a client from a FlowConfig."""
        return cls(
            client_id=flow_config.client_id,
            client_secret=flow_config.client_secret,
            authorization_url=flow_config.authorization_url,
            token_url=flow_config.token_url,
            redirect_url=flow_config.redirect_url,
            scopes=flow_config.scopes,
            auth_style=flow_config.auth_style,
        )

    def authorization_url(self, state: str) -> str:
        """
        Build the provider authorization URL for a state token.

        Args:
            state: Opaque value the provider echoes back on the callback.

        Returns:
            The authorization endpoint with client_id, redirect_uri,
            response_type, scope and state as query parameters.
        """
        params = {"client_id": self.client_id, "response_type": "code"}
        if self.redirect_url:
            params["redirect_uri"] = self.redirect_url
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        if state:
            params["state"] = state

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(sorted(params.items()))}"

    def exchange(self, code: str) -> Token:
        """
        Exchange an authorization code for tokens.

        Args:
            code: The authorization code received on the callback.

        Returns:
            The Token issued by the provider.

        Raises:
            OAuthExchangeError: The provider rejected the code, the response
                had no access_token, or the endpoint was unreachable.
        """
        if not code:
            raise ValueError("authorization code is empty")

        payload = {"grant_type": "authorization_code", "code": code}
        if self.redirect_url:
            payload["redirect_uri"] = self.redirect_url

        if self.auth_style != "auto":
            return self._request_token(payload, self.auth_style)

        try:
            token = self._request_token(payload, "header")
        except OAuthExchangeError as exc:
            if exc.status_code is None:
                raise
            _log.info(
                "Token endpoint rejected header client auth (%s); retrying with params",
                exc.status_code,
            )
            token = self._request_token(payload, "params")
            self.auth_style = "params"
            return token

        self.auth_style = "header"
        return token

    def _request_token(self, payload: dict, style: str) -> Token:
        """POST one token request using the given client auth style."""
        data = dict(payload)
        auth = None
        if style == "header":
            auth = HTTPBasicAuth(quote_plus(self.client_id), quote_plus(self.client_secret))
        else:
            data["client_id"] = self.client_id
            if self.client_secret:
                data["client_secret"] = self.client_secret

        _log.info("Requesting token from %s (auth_style=%s)", self.token_url, style)

        try:
            response = requests.post(
                self.token_url,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            _log.error("Token request to %s failed: %s", self.token_url, exc)
            raise OAuthExchangeError(f"token request failed: {exc}") from exc

        body = _parse_body(response)

        if not response.ok:
            _log.error(
                "Token endpoint rejected the request (%s): %s",
                response.status_code,
                body.get("error") or response.reason,
            )
            raise OAuthExchangeError(
                "token endpoint rejected the request",
                status_code=response.status_code,
                error=str(body.get("error") or ""),
                description=str(body.get("error_description") or ""),
            )

        return _token_from_payload(body)
