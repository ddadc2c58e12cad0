"""REST API endpoints for the OAuth relay.

This module contains all HTTP endpoints. Business logic is delegated to:
- ProviderExchange: Authorization-code exchange with the identity provider
- TokenController: Parking, status and one-time retrieval of tokens

Endpoints:
- GET /callback        - OAuth redirect target, exchanges code and parks the token
- GET /status/{state}  - Token status without consuming it
- GET /token/{state}   - One-time token retrieval for the polling CLI
- GET /health          - Health check
- GET /health/ready    - Readiness check
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse
from loguru import logger

from auth_relay.config import ConfigurationError, Settings, get_settings
from auth_relay.exchange import ExchangeError, MissingCredentialsError, ProviderExchange
from auth_relay.logging import audit_exchange_failed, state_prefix
from auth_relay.pages import error_page, success_page
from auth_relay.rate_limit import CALLBACK_RATE_LIMIT, POLL_RATE_LIMIT, limiter
from auth_relay.store import StoreUnavailableError
from auth_relay.tokens import TokenController, TokenStatus

router = APIRouter()


def get_controller(request: Request) -> TokenController:
    """FastAPI dependency to get the token controller.

    The controller is stored in app.state when the application is created.
    """
    return request.app.state.controller


def get_exchange(request: Request) -> ProviderExchange:
    """FastAPI dependency to get the provider exchange adapter."""
    return request.app.state.exchange


# =============================================================================
# Health Endpoints
# =============================================================================


@router.get("/health")
async def health_check() -> dict:
    """Basic health check endpoint."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/health/ready")
async def readiness_check(settings: Settings = Depends(get_settings)) -> dict:
    """Readiness check for Kubernetes/Cloud Run."""
    return {
        "status": "ready",
        "environment": settings.environment,
        "store_backend": settings.store_backend,
    }


# =============================================================================
# OAuth Callback
# =============================================================================


@router.get("/callback", response_model=None)
@limiter.limit(CALLBACK_RATE_LIMIT)
async def oauth_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    settings: Settings = Depends(get_settings),
    controller: TokenController = Depends(get_controller),
    exchange: ProviderExchange = Depends(get_exchange),
) -> HTMLResponse:
    """Handle the provider redirect: exchange the code and park the token."""
    # Provider reported an error instead of a code
    if error:
        logger.warning(
            "OAuth provider returned an error",
            extra={"state_prefix": state_prefix(state), "error": error},
        )
        return error_page(f"OAuth error: {error} - {error_description or ''}".rstrip(" -"))

    if not code:
        return error_page("Missing authorization code")

    if not state:
        return error_page("Missing state parameter")

    try:
        client_id, client_secret = settings.get_client_credentials()
    except ConfigurationError as e:
        logger.error("OAuth client credentials missing", extra={"error": str(e)})
        return error_page("Server misconfigured - missing OAuth credentials", 500)

    try:
        record = await exchange.exchange(
            code=code,
            state=state,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=settings.effective_redirect_uri,
        )
    except MissingCredentialsError:
        logger.error("OAuth client credentials missing")
        return error_page("Server misconfigured - missing OAuth credentials", 500)
    except ExchangeError as e:
        audit_exchange_failed(state, type(e).__name__)
        return error_page("Failed to exchange authorization code for token", 500)

    try:
        await controller.store(state, record)
    except StoreUnavailableError:
        logger.error("Could not park token", extra={"state_prefix": state_prefix(state)})
        return error_page("Failed to save the token. Please start the login again.", 500)

    return success_page(state)


# =============================================================================
# CLI Polling Endpoints
# =============================================================================


@router.get("/status/{state}")
@limiter.limit(POLL_RATE_LIMIT)
async def token_status(
    request: Request,
    state: str,
    controller: TokenController = Depends(get_controller),
) -> dict:
    """Report the token status without consuming it."""
    status = await controller.status(state)
    return {"status": status.value}


@router.get("/token/{state}")
@limiter.limit(POLL_RATE_LIMIT)
async def retrieve_token(
    request: Request,
    state: str,
    controller: TokenController = Depends(get_controller),
) -> JSONResponse:
    """Hand the token to the CLI. Succeeds once per state."""
    result = await controller.consume(state)

    if result.status is TokenStatus.READY and result.record is not None:
        return JSONResponse(status_code=200, content=result.record.to_response())

    if result.status is TokenStatus.PENDING:
        return JSONResponse(
            status_code=202,
            content={"status": "pending", "message": "Token not yet available, please try again"},
        )

    if result.status is TokenStatus.CONSUMED:
        return JSONResponse(
            status_code=410,
            content={"error": "consumed", "message": "Token has already been retrieved"},
        )

    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "message": "Token not found or expired"},
    )
