"""CLI entry point for the OAuth relay server.

Usage:
    auth-relay [--port N] [--host ADDR] [--client-id ID] [--client-secret SECRET]
               [--redirect-url URL] [--credentials-file PATH] [--ttl SECONDS]

Flags override the matching environment variables (PORT, HOST, CLIENT_ID,
CLIENT_SECRET, REDIRECT_URI, CREDENTIALS_FILE, TOKEN_TTL_SECONDS).
"""

import argparse
import os
import sys

import uvicorn
from loguru import logger
from pydantic import ValidationError

from auth_relay.config import ConfigurationError, get_settings

# Flag destination -> environment variable read by Settings
FLAG_ENV_VARS = {
    "port": "PORT",
    "host": "HOST",
    "client_id": "CLIENT_ID",
    "client_secret": "CLIENT_SECRET",
    "redirect_url": "REDIRECT_URI",
    "credentials_file": "CREDENTIALS_FILE",
    "ttl": "TOKEN_TTL_SECONDS",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auth-relay",
        description="Relay OAuth tokens from a browser login to a headless CLI",
    )
    parser.add_argument("--port", type=int, help="Port to listen on (default: 8080)")
    parser.add_argument("--host", help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--client-id", help="OAuth client ID")
    parser.add_argument("--client-secret", help="OAuth client secret")
    parser.add_argument(
        "--redirect-url",
        help="OAuth redirect URL (default: http://localhost:PORT/callback)",
    )
    parser.add_argument(
        "--credentials-file",
        help="Google OAuth client JSON file (web or installed)",
    )
    parser.add_argument(
        "--ttl",
        type=int,
        help="Seconds a token stays retrievable (default: 300)",
    )
    return parser


def flag_overrides(args: argparse.Namespace) -> dict[str, str]:
    """Environment variables for every flag given on the command line."""
    overrides = {}
    for dest, env_var in FLAG_ENV_VARS.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[env_var] = str(value)
    return overrides


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    os.environ.update(flag_overrides(args))

    get_settings.cache_clear()
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    try:
        settings.get_client_credentials()
    except ConfigurationError as e:
        # Not fatal: callbacks will fail until credentials are provided
        logger.warning(str(e))

    uvicorn.run(
        "auth_relay.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
