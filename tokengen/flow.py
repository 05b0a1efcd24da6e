"""
flow.py

Sequences one interactive authorization-code flow end to end:
validate config -> start callback server -> announce entry URL ->
wait for the completion signal -> stop the server -> render the token.
Part of oauth-tokengen - local OAuth2 authorization-code helper.

Lifecycle: idle -> listening -> awaiting_callback -> completed | failed
"""

from __future__ import annotations

import logging
import secrets
import sys
import threading
from typing import Optional, TextIO

import config
from tokengen.callback_server import CallbackServer
from tokengen.completion import CompletionSignal
from tokengen.errors import ConfigurationError, FlowCancelledError, FlowTimeoutError
from tokengen.oauth_client import OAuthClient
from tokengen.types import Failure, FlowResult, Success, Token

EXIT_OK = 0
EXIT_FAILURE = 1

_log = logging.getLogger("tokengen.flow")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOG_FILE, encoding="utf-8")
    _handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [flow] %(message)s")
    )
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    _log.propagate = False


def generate_state() -> str:
    """Return a fresh URL-safe random state token."""
    return secrets.token_urlsafe(32)


def render_token(token: Token) -> str:
    """
    Format a token for the terminal.

    Returns:
        Four "label: value" lines preceded by an empty line. A token with
        no expiry prints "expiry: none".
    """
    expiry = token.expiry.isoformat() if token.expiry else "none"
    return (
        f"\naccess token: {token.access_token}\n"
        f"refresh token: {token.refresh_token}\n"
        f"token type: {token.token_type}\n"
        f"expiry: {expiry}"
    )


class FlowCoordinator:
    """
    Runs one authorization-code flow and reports its outcome.

    Example:
        coordinator = FlowCoordinator(flow_config)
        sys.exit(coordinator.run())
    """

    def __init__(
        self,
        flow_config: config.FlowConfig,
        client: Optional[OAuthClient] = None,
        state: Optional[str] = None,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        """
        Args:
            flow_config: Merged CLI/environment configuration.
            client: OAuth client to use. Built from flow_config when omitted.
            state: Fixed state token. Falls back to flow_config.state, then
                to a random token.
            out: Stream for the entry URL and token. Defaults to sys.stdout.
            err: Stream for failures. Defaults to sys.stderr.
        """
        self.config = flow_config
        self.client = client
        self.state = state or flow_config.state or generate_state()
        self.signal = CompletionSignal()
        self.server: Optional[CallbackServer] = None
        self.phase = "idle"
        self.ready = threading.Event()
        self._out = out
        self._err = err

    def validate(self) -> None:
        """
        Check that every required field is set.

        Raises:
            ConfigurationError: One or more required fields are empty.
        """
        missing = self.config.missing_fields()
        if missing:
            _log.error("CONFIG INVALID | missing=%s", ", ".join(flag for flag, _ in missing))
            raise ConfigurationError(missing)

    def run(self) -> int:
        """
        Run the flow to completion.

        Returns:
            EXIT_OK when a token was printed, EXIT_FAILURE otherwise.

        Raises:
            ConfigurationError: Required configuration is missing. Raised
                before any network activity.
        """
        self.validate()
        _log.info("FLOW STARTING | config=%s", self.config.as_dict())

        client = self.client or OAuthClient.from_config(self.config)
        self.server = CallbackServer(client, self.state, self.signal, port=self.config.port)

        try:
            self.server.start()
        except OSError as exc:
            _log.critical("failed to start server: %s", exc)
            self._write(f"failed to start server: {exc}", error=True)
            self._set_phase("failed")
            return EXIT_FAILURE

        self._set_phase("listening")
        self._write(
            f"please visit http://localhost:{self.server.port} to start the authentication flow"
        )
        self.ready.set()

        try:
            result = self._await_result()
        finally:
            self.server.stop()

        return self._finish(result)

    def cancel(self, reason: str = "flow cancelled") -> bool:
        """
        End the wait with a FlowCancelledError failure.

        Returns:
            False if the flow had already produced a result.
        """
        return self.signal.deliver(Failure(FlowCancelledError(reason)))

    def _await_result(self) -> FlowResult:
        self._set_phase("awaiting_callback")
        try:
            result = self.signal.wait(self.config.timeout)
        except KeyboardInterrupt:
            self.cancel("interrupted by user")
        else:
            if result is None:
                self.signal.deliver(
                    Failure(FlowTimeoutError(f"no callback received within {self.config.timeout}s"))
                )
        # Whatever was delivered first wins, including a late success.
        return self.signal.wait(0)

    def _finish(self, result: FlowResult) -> int:
        if isinstance(result, Success):
            self._set_phase("completed")
            self._write(render_token(result.token))
            return EXIT_OK

        self._set_phase("failed")
        _log.error("FLOW FAILED | %s: %s", type(result.error).__name__, result.error)
        self._write(f"authentication failed: {result.error}", error=True)
        return EXIT_FAILURE

    def _set_phase(self, phase: str) -> None:
        _log.info("FLOW STATE CHANGE | %s -> %s", self.phase, phase)
        self.phase = phase

    def _write(self, text: str, error: bool = False) -> None:
        stream = (self._err or sys.stderr) if error else (self._out or sys.stdout)
        print(text, file=stream, flush=True)
