"""Authorization-code exchange with the identity provider.

This module provides the ProviderExchange class which:
1. Posts the authorization code to the provider's token endpoint
2. Validates the token response
3. Builds the TokenRecord that is parked for the CLI

It never stores anything itself. Authorization codes are single-use, so a
failed exchange is reported and not retried.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from loguru import logger

from auth_relay.config import GOOGLE_TOKEN_URL
from auth_relay.logging import state_prefix
from auth_relay.tokens import TokenRecord

DEFAULT_EXCHANGE_TIMEOUT = 30.0


class ExchangeError(Exception):
    """Base exception for authorization-code exchange errors."""

    pass


class MissingCredentialsError(ExchangeError):
    """Raised when the server has no OAuth client credentials."""


class ProviderRejectedError(ExchangeError):
    """Raised when the token endpoint answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderUnavailableError(ExchangeError):
    """Raised when the token endpoint cannot be reached."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class MalformedTokenResponseError(ExchangeError):
    """Raised when a successful response does not carry a usable token."""


class ProviderExchange:
    """Exchanges authorization codes for tokens at an OAuth token endpoint."""

    def __init__(
        self,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            token_url: Provider token endpoint
            timeout: Timeout in seconds for the exchange request
            transport: Optional httpx transport (injectable for testing)
        """
        self._token_url = token_url
        self._timeout = timeout
        self._transport = transport

    async def exchange(
        self,
        code: str,
        state: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> TokenRecord:
        """Exchange an authorization code for a token record.

        Raises:
            MissingCredentialsError: If client_id or client_secret is empty
            ProviderUnavailableError: On network failure or timeout
            ProviderRejectedError: If the provider returns a non-2xx status
            MalformedTokenResponseError: If the response lacks an access token
        """
        if not client_id or not client_secret:
            raise MissingCredentialsError("OAuth client credentials are not configured")

        form = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._token_url, data=form, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            logger.warning(
                "Token endpoint unreachable",
                extra={"state_prefix": state_prefix(state), "error": str(e)},
            )
            raise ProviderUnavailableError(f"Token endpoint unreachable: {e}", e) from e

        if not response.is_success:
            logger.warning(
                "Token endpoint rejected exchange",
                extra={
                    "state_prefix": state_prefix(state),
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            raise ProviderRejectedError(
                f"Token exchange failed with status {response.status_code}",
                response.status_code,
                response.text,
            )

        return build_record(_parse_token_response(response))


def _parse_token_response(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as e:
        raise MalformedTokenResponseError(f"Token response is not JSON: {e}") from e

    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise MalformedTokenResponseError("Token response has no access_token")
    return payload


def build_record(payload: dict[str, Any], now: datetime | None = None) -> TokenRecord:
    """Build an unconsumed TokenRecord from a provider token response."""
    now = now or datetime.now(UTC)
    try:
        expires_in = int(payload.get("expires_in") or 0)
    except (TypeError, ValueError) as e:
        raise MalformedTokenResponseError(f"Invalid expires_in: {e}") from e

    return TokenRecord(
        access_token=str(payload["access_token"]),
        refresh_token=str(payload.get("refresh_token") or ""),
        token_type=str(payload.get("token_type") or "Bearer"),
        expiry=now + timedelta(seconds=expires_in),
        consumed=False,
        created_at=now,
    )
