"""Shared fixtures for oauth-tokengen tests.

Log output is redirected to a temp directory before any project module is
imported, since config creates LOGS_DIR at import time.
"""

import os
import tempfile

os.environ.setdefault("TOKENGEN_LOGS_DIR", tempfile.mkdtemp(prefix="tokengen-logs-"))

from datetime import datetime, timedelta, timezone  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import requests  # noqa: E402

from config import FlowConfig  # noqa: E402
from tokengen.completion import CompletionSignal  # noqa: E402
from tokengen.oauth_client import OAuthClient  # noqa: E402
from tokengen.types import Token  # noqa: E402

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
FIXED_STATE = "fixed-state"


@pytest.fixture
def flow_config():
    """Configuration from the documented end-to-end scenario, on a free port."""
    return FlowConfig(
        client_id="abc",
        client_secret="xyz",
        authorization_url="https://idp.test/auth",
        token_url="https://idp.test/token",
        redirect_url="http://localhost:9090/callback",
        scopes=("read", "write"),
        port=0,
    )


@pytest.fixture
def token():
    return Token(
        access_token="AT1",
        refresh_token="RT1",
        token_type="Bearer",
        expiry=T0 + timedelta(seconds=3600),
    )


@pytest.fixture
def fake_client(flow_config, token):
    """OAuthClient double: real authorization URLs, stubbed exchange()."""
    real = OAuthClient.from_config(flow_config)
    client = MagicMock(spec=OAuthClient)
    client.authorization_url.side_effect = real.authorization_url
    client.exchange.return_value = token
    return client


@pytest.fixture
def signal():
    return CompletionSignal()


@pytest.fixture
def http():
    """requests session that ignores proxy settings from the environment."""
    session = requests.Session()
    session.trust_env = False
    yield session
    session.close()
