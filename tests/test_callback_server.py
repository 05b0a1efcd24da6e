"""Tests for the CallbackServer routes and lifecycle."""

import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import FIXED_STATE
from tokengen.callback_server import SUCCESS_MESSAGE, CallbackServer
from tokengen.completion import CompletionSignal
from tokengen.errors import OAuthExchangeError
from tokengen.types import Failure, Success


@pytest.fixture
def server(fake_client, signal):
    server = CallbackServer(fake_client, FIXED_STATE, signal, port=0)
    server.start()
    yield server
    server.stop()


def _url(server, path):
    return f"http://127.0.0.1:{server.port}{path}"


def _callback(http, server, **params):
    return http.get(_url(server, "/callback"), params=params, timeout=5)


class TestEntryRoute:
    def test_redirects_to_authorization_url(self, http, server, signal):
        response = http.get(_url(server, "/"), allow_redirects=False, timeout=5)

        assert response.status_code == 307
        location = urlsplit(response.headers["Location"])
        query = parse_qs(location.query)
        assert f"{location.scheme}://{location.netloc}{location.path}" == "https://idp.test/auth"
        assert query["client_id"] == ["abc"]
        assert query["redirect_uri"] == ["http://localhost:9090/callback"]
        assert query["scope"] == ["read write"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [FIXED_STATE]
        assert not signal.is_set()

    def test_repeated_visits_do_not_change_state(self, http, server, signal):
        first = http.get(_url(server, "/"), allow_redirects=False, timeout=5)
        second = http.get(_url(server, "/"), allow_redirects=False, timeout=5)

        assert first.headers["Location"] == second.headers["Location"]
        assert not signal.is_set()


class TestCallbackRoute:
    def test_success_delivers_token_once(self, http, server, signal, fake_client, token):
        response = _callback(http, server, state=FIXED_STATE, code="authcode123")

        assert response.status_code == 200
        assert response.text == SUCCESS_MESSAGE
        assert signal.wait(1) == Success(token)
        fake_client.exchange.assert_called_once_with("authcode123")

    @pytest.mark.parametrize("state", ["wrong-state", ""])
    def test_state_mismatch_leaves_signal_unwritten(self, http, server, signal, fake_client, state):
        response = _callback(http, server, state=state, code="authcode123")

        assert response.status_code == 400
        assert response.text == "state mismatch"
        assert not signal.is_set()
        fake_client.exchange.assert_not_called()

        retry = _callback(http, server, state=FIXED_STATE, code="authcode123")
        assert retry.status_code == 200
        assert isinstance(signal.wait(1), Success)

    def test_missing_state_parameter(self, http, server, signal):
        response = _callback(http, server, code="authcode123")

        assert response.status_code == 400
        assert response.text == "state mismatch"
        assert not signal.is_set()

    def test_missing_code_leaves_signal_unwritten(self, http, server, signal, fake_client):
        response = _callback(http, server, state=FIXED_STATE, code="")

        assert response.status_code == 400
        assert response.text == "code not found"
        assert not signal.is_set()
        fake_client.exchange.assert_not_called()

        retry = _callback(http, server, state=FIXED_STATE, code="authcode123")
        assert retry.status_code == 200

    def test_provider_error_is_reported(self, http, server, signal):
        response = _callback(
            http,
            server,
            state=FIXED_STATE,
            error="access_denied",
            error_description="user declined",
        )

        assert response.status_code == 400
        assert "access_denied" in response.text
        assert "user declined" in response.text
        assert not signal.is_set()

    def test_exchange_failure_delivers_failure(self, http, server, signal, fake_client):
        error = OAuthExchangeError("token endpoint rejected the request", status_code=400)
        fake_client.exchange.side_effect = error

        response = _callback(http, server, state=FIXED_STATE, code="badcode")

        assert response.status_code == 500
        assert response.text == "failed to exchange token"
        assert signal.wait(1) == Failure(error)

    def test_callback_after_completion_is_rejected(self, http, server, fake_client):
        assert _callback(http, server, state=FIXED_STATE, code="one").status_code == 200

        late = _callback(http, server, state=FIXED_STATE, code="two")

        assert late.status_code == 410
        fake_client.exchange.assert_called_once_with("one")

    def test_form_post(self, http, server, signal):
        response = http.post(
            _url(server, "/callback"),
            data={"state": FIXED_STATE, "code": "authcode123"},
            timeout=5,
        )

        assert response.status_code == 200
        assert isinstance(signal.wait(1), Success)

    def test_form_body_overrides_query(self, http, server, signal):
        response = http.post(
            _url(server, "/callback") + "?state=wrong-state",
            data={"state": FIXED_STATE, "code": "authcode123"},
            timeout=5,
        )

        assert response.status_code == 200

    def test_head_not_allowed(self, http, server, fake_client):
        response = http.head(_url(server, "/callback"), timeout=5)

        assert response.status_code == 405
        assert response.headers["Allow"] == "GET, POST"
        fake_client.exchange.assert_not_called()


def test_unknown_path_is_not_found(http, server):
    response = http.get(_url(server, "/favicon.ico"), timeout=5)
    assert response.status_code == 404


def test_dispatch_without_network(fake_client, token):
    signal = CompletionSignal()
    server = CallbackServer(fake_client, FIXED_STATE, signal, port=0)

    response = server.dispatch("GET", "/callback", {"state": FIXED_STATE, "code": "c"})

    assert response.status == 200
    assert signal.wait(0) == Success(token)


def test_empty_state_rejected(fake_client, signal):
    with pytest.raises(ValueError):
        CallbackServer(fake_client, "", signal)


def test_bind_failure_raises(fake_client, signal):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    port = blocker.getsockname()[1]

    server = CallbackServer(fake_client, FIXED_STATE, signal, port=port)
    try:
        with pytest.raises(OSError):
            server.start()
        assert not server.running
    finally:
        blocker.close()


def test_lifecycle(fake_client, signal):
    server = CallbackServer(fake_client, FIXED_STATE, signal, port=0)
    assert not server.running

    server.start()
    try:
        assert server.running
        assert server.port > 0
        assert server.entry_url == f"http://localhost:{server.port}/"
    finally:
        server.stop()

    assert not server.running
    server.stop()


def test_concurrent_callbacks_exchange_once(fake_client, signal, token):
    server = CallbackServer(fake_client, FIXED_STATE, signal, port=0)
    exchanging = threading.Event()
    release = threading.Event()

    def slow_exchange(code):
        exchanging.set()
        release.wait(5)
        return token

    fake_client.exchange.side_effect = slow_exchange
    params = {"state": FIXED_STATE, "code": "first"}

    with ThreadPoolExecutor(max_workers=1) as executor:
        first = executor.submit(server.dispatch, "GET", "/callback", params)
        assert exchanging.wait(5)

        second = server.dispatch("GET", "/callback", {"state": FIXED_STATE, "code": "second"})
        release.set()

        assert second.status == 410
        assert first.result(timeout=5).status == 200

    fake_client.exchange.assert_called_once_with("first")
    assert signal.wait(0) == Success(token)


def test_invalid_content_length_is_rejected(server, signal):
    with socket.create_connection(("127.0.0.1", server.port), timeout=5) as conn:
        conn.sendall(
            b"POST /callback HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Content-Length: abc\r\n"
            b"\r\n"
        )
        status_line = conn.makefile("rb").readline()

    assert status_line.split()[1] == b"400"
    assert not signal.is_set()


def test_stop_does_not_wait_on_idle_connection(fake_client, signal):
    server = CallbackServer(fake_client, FIXED_STATE, signal, port=0)
    server.start()

    with socket.create_connection(("127.0.0.1", server.port), timeout=5):
        # Give the accept loop a moment to hand the socket to a handler thread.
        time.sleep(0.1)
        started = time.monotonic()
        server.stop()
        elapsed = time.monotonic() - started

    assert elapsed < 2
    assert not server.running
