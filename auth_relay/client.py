"""CLI-side poll client for the OAuth relay.

After sending the user to the provider's consent page, the CLI calls
poll_for_token() with the same state value. It polls GET /token/{state}
until the relay hands out the token, the token turns out to be gone, or the
deadline passes.

Responses:
- 200: token ready, returned to the caller
- 202: still pending, keep polling
- 410: already retrieved by someone else, TokenConsumedError
- 404: unknown or expired, TokenNotFoundError
Network errors, unparseable bodies and any other status keep polling.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import quote

import httpx
from loguru import logger

DEFAULT_POLL_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 2.0
REQUEST_TIMEOUT = 10.0


class RelayClientError(Exception):
    """Base exception for poll client errors."""

    def __init__(self, message: str, state: str = "") -> None:
        super().__init__(message)
        self.state = state


class TokenConsumedError(RelayClientError):
    """Raised when the token was already retrieved."""


class TokenNotFoundError(RelayClientError):
    """Raised when the relay has no token for the state (never stored or expired)."""


class PollTimeoutError(RelayClientError):
    """Raised when no token arrived before the deadline."""


@dataclass(frozen=True)
class PolledToken:
    """Token handed out by the relay."""

    access_token: str
    refresh_token: str
    token_type: str
    expiry: str


def build_poll_url(server_url: str, state: str) -> str:
    """URL of the one-time token endpoint for `state`."""
    return f"{server_url.rstrip('/')}/token/{quote(state, safe='')}"


def _poll_once(client: httpx.Client, url: str, state: str) -> PolledToken | None:
    """One poll. Returns the token, None to keep polling, or raises."""
    try:
        response = client.get(url)
    except httpx.HTTPError as e:
        logger.debug("Poll request failed, retrying", extra={"error": str(e)})
        return None

    if response.status_code == 410:
        raise TokenConsumedError("Token has already been retrieved", state)
    if response.status_code == 404:
        raise TokenNotFoundError("Token not found or expired", state)
    if response.status_code != 200:
        return None

    try:
        payload = response.json()
    except ValueError:
        logger.debug("Unparseable poll response, retrying")
        return None
    if not isinstance(payload, dict) or not payload.get("access_token"):
        return None

    return PolledToken(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or "",
        token_type=payload.get("token_type") or "Bearer",
        expiry=payload.get("expiry") or "",
    )


def poll_for_token(
    server_url: str,
    state: str,
    timeout: float = DEFAULT_POLL_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
    *,
    client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PolledToken:
    """Poll the relay until the token for `state` is handed out.

    Args:
        server_url: Base URL of the relay (e.g. "https://relay.example.com")
        state: OAuth state value used for the authorization request
        timeout: Overall deadline in seconds
        interval: Delay between polls in seconds
        client: Optional httpx.Client (injectable for testing)
        sleep: Sleep function (injectable for testing)
        clock: Monotonic time source (injectable for testing)

    Raises:
        TokenConsumedError: If the token was already retrieved
        TokenNotFoundError: If the relay has no token for the state
        PollTimeoutError: If the deadline passes first
    """
    url = build_poll_url(server_url, state)
    deadline = clock() + timeout
    owns_client = client is None
    http = client or httpx.Client(timeout=REQUEST_TIMEOUT)

    try:
        while clock() < deadline:
            token = _poll_once(http, url, state)
            if token is not None:
                return token
            sleep(interval)
    finally:
        if owns_client:
            http.close()

    raise PollTimeoutError(f"Timed out after {timeout:g}s waiting for token", state)
