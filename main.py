"""
main.py

Entry point for oauth-tokengen.
Parses flags (with environment fallback for the client credentials),
runs one interactive authorization-code flow and exits with its status.
Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

import argparse
import logging
import sys
from typing import Optional
from urllib.parse import urlsplit

import config
from tokengen.errors import ConfigurationError
from tokengen.flow import EXIT_FAILURE, FlowCoordinator

_COMPONENT_LOGGERS = ("tokengen.main", "tokengen.flow", "tokengen.server", "tokengen.client")
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

_log = logging.getLogger("tokengen.main")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOG_FILE, encoding="utf-8")
    _handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [main] %(message)s")
    )
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    _log.propagate = False


def _port(value: str) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return port


def _positive_float(value: str) -> float:
    seconds = float(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0: {value}")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    """
    Build the command line parser.

    Returns:
        The configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="oauth-tokengen",
        description="Obtain OAuth2 tokens using a local callback server.",
    )
    parser.add_argument(
        "--client-id",
        default="",
        help=f"oauth2 client id (or use {config.CLIENT_ID_ENV} env var)",
    )
    parser.add_argument(
        "--client-secret",
        default="",
        help=f"oauth2 client secret (or use {config.CLIENT_SECRET_ENV} env var)",
    )
    parser.add_argument("--auth-url", default="", help="authorization url")
    parser.add_argument("--token-url", default="", help="token url")
    parser.add_argument(
        "--redirect-url",
        default=config.DEFAULT_REDIRECT_URL,
        help=f"redirect url (default: {config.DEFAULT_REDIRECT_URL})",
    )
    parser.add_argument("--scopes", default="", help="comma-separated list of scopes")
    parser.add_argument(
        "--port",
        type=_port,
        default=config.DEFAULT_PORT,
        help=f"local server port (default: {config.DEFAULT_PORT})",
    )
    parser.add_argument(
        "--state",
        default="",
        help="fixed state token instead of a random one (for testing)",
    )
    parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=None,
        help="seconds to wait for the callback (default: wait forever)",
    )
    parser.add_argument(
        "--auth-style",
        choices=config.AUTH_STYLES,
        default="auto",
        help="how client credentials are sent to the token url (default: auto)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="print debug logging to stderr",
    )
    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    return build_parser().parse_args(argv)


def configure_console_logging(verbose: bool = False) -> logging.Handler:
    """
    Mirror component logs to stderr.

    Args:
        verbose: Show DEBUG and up instead of WARNING and up.

    Returns:
        The console handler that was attached.
    """
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)

    for name in _COMPONENT_LOGGERS:
        logger = logging.getLogger(name)
        logger.addHandler(console_handler)
        if verbose:
            logger.setLevel(logging.DEBUG)
    return console_handler


def check_redirect_url(flow_config: config.FlowConfig) -> list[str]:
    """
    Warn when the provider would redirect somewhere this listener is not.

    Returns:
        The warning messages that were logged.
    """
    warnings: list[str] = []
    if not flow_config.redirect_url:
        return warnings

    parsed = urlsplit(flow_config.redirect_url)
    if parsed.path != config.CALLBACK_PATH:
        warnings.append(
            f"redirect url path '{parsed.path or '/'}' does not match the local "
            f"callback route '{config.CALLBACK_PATH}'"
        )

    try:
        redirect_port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError:
        redirect_port = None

    if (
        parsed.hostname in _LOCAL_HOSTS
        and flow_config.port != 0
        and redirect_port != flow_config.port
    ):
        warnings.append(
            f"redirect url port {redirect_port} differs from the local server port {flow_config.port}"
        )

    for message in warnings:
        _log.warning(message)
    return warnings


def print_missing_config(
    parser: argparse.ArgumentParser, exc: ConfigurationError
) -> None:
    """Print which required flags/env vars are missing, then the usage text."""
    print(
        "required configuration missing. either use flags or environment variables:",
        file=sys.stderr,
    )
    for flag, env in exc.missing:
        hint = f"{flag} (or {env})" if env else flag
        print(f"  {hint}", file=sys.stderr)
    print(file=sys.stderr)
    parser.print_help(sys.stderr)


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Process exit status: 0 on success, 1 on missing configuration,
        listener bind failure, or a failed flow.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    console_handler = configure_console_logging(args.verbose)

    try:
        flow_config = config.FlowConfig.from_args(args)
        check_redirect_url(flow_config)
        coordinator = FlowCoordinator(flow_config)

        try:
            return coordinator.run()
        except ConfigurationError as exc:
            print_missing_config(parser, exc)
            return EXIT_FAILURE
    finally:
        for name in _COMPONENT_LOGGERS:
            logging.getLogger(name).removeHandler(console_handler)
        _log.info("oauth-tokengen finished")


if __name__ == "__main__":
    sys.exit(main())
