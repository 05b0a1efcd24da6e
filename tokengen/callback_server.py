"""
callback_server.py

Local HTTP server that catches the OAuth2 redirect callback.
Serves two routes for the lifetime of one authorization flow:

    /          307 redirect to the provider authorization URL
    /callback  validates state, exchanges the code, publishes the result

Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

import config
from tokengen.completion import CompletionSignal
from tokengen.oauth_client import OAuthClient
from tokengen.types import Failure, Success

SUCCESS_MESSAGE = "authentication successful! you can close this window."

_log = logging.getLogger("tokengen.server")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOG_FILE, encoding="utf-8")
    _handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [server] %(message)s")
    )
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    _log.propagate = False


@dataclass
class RouteResponse:
    """Status, plain-text body and extra headers produced by a route."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)


class _CallbackHTTPServer(ThreadingHTTPServer):
    # Non-daemon handlers finish writing their response even after stop(),
    # but server_close() does not wait on them: an idle keep-alive or
    # preconnect socket must never hold up the flow.
    daemon_threads = False
    block_on_close = False


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    """Translates raw HTTP requests into CallbackServer.dispatch() calls."""

    server_version = "oauth-tokengen"
    timeout = config.REQUEST_TIMEOUT_SECONDS

    def __init__(self, *args, callback_server: "CallbackServer", **kwargs):
        self.callback_server = callback_server
        super().__init__(*args, **kwargs)

    def do_GET(self):
        self._respond({})

    def do_HEAD(self):
        self._respond({}, send_body=False)

    def do_POST(self):
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            _log.warning("CALLBACK REJECTED | invalid Content-Length header")
            self._send(RouteResponse(400, "invalid content length"))
            return
        raw = self.rfile.read(length) if length > 0 else b""

        form: dict[str, list[str]] = {}
        content_type = self.headers.get("Content-Type", "")
        if content_type.split(";")[0].strip().lower() == "application/x-www-form-urlencoded":
            form = parse_qs(raw.decode("utf-8", errors="replace"), keep_blank_values=True)

        self._respond(form)

    def _respond(self, form: dict[str, list[str]], send_body: bool = True) -> None:
        parsed = urlsplit(self.path)
        values = parse_qs(parsed.query, keep_blank_values=True)
        # Form body values take precedence over the query string.
        values.update(form)
        params = {key: items[0] for key, items in values.items() if items}

        response = self.callback_server.dispatch(self.command, parsed.path, params)
        self._send(response, send_body)

    def _send(self, response: RouteResponse, send_body: bool = True) -> None:
        body = response.body.encode("utf-8")

        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def log_message(self, format, *args):
        _log.debug("%s - %s", self.address_string(), format % args)


class CallbackServer:
    """
    Short-lived HTTP listener for one authorization-code flow.

    The router is owned by the instance; nothing is registered globally,
    so several servers can coexist in one process (e.g. in tests).

    Example:
        signal = CompletionSignal()
        server = CallbackServer(client, state, signal, port=8080)
        server.start()
        result = signal.wait()
        server.stop()
    """

    def __init__(
        self,
        client: OAuthClient,
        state: str,
        signal: CompletionSignal,
        port: int = config.DEFAULT_PORT,
        host: str = "127.0.0.1",
    ):
        """
        Args:
            client: OAuth client used to build the redirect and exchange codes.
            state: The state token for this flow. Must not be empty.
            signal: Completion channel the result is delivered on.
            port: TCP port to listen on. 0 picks a free port.
            host: Interface to bind. Defaults to loopback only.
        """
        if not state:
            raise ValueError("state token must not be empty")

        self.client = client
        self.state = state
        self.signal = signal
        self._address = (host, port)
        self._routes: dict[str, tuple[frozenset[str], Callable[[dict], RouteResponse]]] = {
            "/": (frozenset({"GET", "HEAD", "POST"}), self._handle_entry),
            config.CALLBACK_PATH: (frozenset({"GET", "POST"}), self._handle_callback),
        }
        self._httpd: Optional[_CallbackHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        # Only the first valid callback may spend an authorization code.
        self._claim_lock = threading.Lock()
        self._claimed = False

    @property
    def port(self) -> int:
        """The bound port once started, otherwise the configured one."""
        if self._httpd is not None:
            return self._httpd.server_address[1]
        return self._address[1]

    @property
    def entry_url(self) -> str:
        return f"http://localhost:{self.port}/"

    @property
    def running(self) -> bool:
        return self._httpd is not None

    def start(self) -> None:
        """
        Bind the listener and serve requests on a background thread.

        Binding happens on the calling thread, so a port that is already in
        use raises OSError here rather than inside the server thread.

        Raises:
            OSError: The listener could not be bound.
        """
        if self._httpd is not None:
            _log.warning("CALLBACK SERVER | Already running on port %d", self.port)
            return

        handler = partial(_CallbackRequestHandler, callback_server=self)
        self._httpd = _CallbackHTTPServer(self._address, handler)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="tokengen-callback-server",
            daemon=True,
        )
        self._thread.start()

        _log.info("CALLBACK SERVER STARTED | host=%s | port=%d", self._address[0], self.port)

    def stop(self) -> None:
        """
        Stop serving and close the listening socket.

        Returns without waiting on open client connections. Handler threads
        already writing a response still finish it, and idle connections
        are dropped after config.REQUEST_TIMEOUT_SECONDS.
        """
        if self._httpd is None:
            return

        httpd, self._httpd = self._httpd, None
        httpd.shutdown()
        httpd.server_close()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

        _log.info("CALLBACK SERVER STOPPED | port=%d", httpd.server_address[1])

    def dispatch(self, method: str, path: str, params: dict[str, str]) -> RouteResponse:
        """
        Route one request.

        Args:
            method: HTTP method, e.g. "GET".
            path: Request path without the query string.
            params: Merged query/form parameters, first value per key.

        Returns:
            The RouteResponse to send back to the browser.
        """
        route = self._routes.get(path)
        if route is None:
            return RouteResponse(404, "not found")

        methods, handler = route
        if method not in methods:
            return RouteResponse(405, "method not allowed", {"Allow": ", ".join(sorted(methods))})

        return handler(params)

    def _handle_entry(self, params: dict[str, str]) -> RouteResponse:
        url = self.client.authorization_url(self.state)
        return RouteResponse(307, "Temporary Redirect", {"Location": url})

    def _handle_callback(self, params: dict[str, str]) -> RouteResponse:
        if params.get("state", "") != self.state:
            _log.warning("CALLBACK REJECTED | state mismatch")
            return RouteResponse(400, "state mismatch")

        provider_error = params.get("error", "")
        if provider_error:
            description = params.get("error_description", "")
            _log.warning(
                "CALLBACK REJECTED | provider error=%s | description=%s",
                provider_error,
                description,
            )
            message = f"authorization failed: {provider_error}"
            if description:
                message = f"{message} ({description})"
            return RouteResponse(400, message)

        code = params.get("code", "")
        if not code:
            _log.warning("CALLBACK REJECTED | code not found")
            return RouteResponse(400, "code not found")

        with self._claim_lock:
            if self._claimed or self.signal.is_set():
                _log.warning("CALLBACK IGNORED | flow already completed")
                return RouteResponse(410, "flow already completed")
            self._claimed = True

        _log.info("CALLBACK ACCEPTED | exchanging authorization code")

        try:
            token = self.client.exchange(code)
        except Exception as exc:
            _log.error("token exchange error: %s", exc)
            self.signal.deliver(Failure(exc))
            return RouteResponse(500, "failed to exchange token")

        if not self.signal.deliver(Success(token)):
            _log.warning("CALLBACK IGNORED | flow completed by an earlier callback")
            return RouteResponse(410, "flow already completed")

        _log.info("CALLBACK COMPLETED | token_type=%s", token.token_type or "(none)")
        return RouteResponse(200, SUCCESS_MESSAGE)
