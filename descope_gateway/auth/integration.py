"""
Integration module for the gateway's OAuth 2.1 surface.

This module wires the discovery, registration and revocation routes, the
OAuth error handlers and the bearer token validator into a FastAPI app.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import GatewayError
from .metadata import build_metadata
from .middleware import BearerTokenValidator, IdentityProvider
from .routes import create_auth_router
from .settings import GatewaySettings

logger = logging.getLogger(__name__)


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render a gateway error as an OAuth error body."""
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort handler: log the failure, never leak internals."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        {"error": "server_error", "error_description": "Internal server error"},
        status_code=500,
    )


def integrate_oauth(app: FastAPI, settings: GatewaySettings, provider: IdentityProvider) -> BearerTokenValidator:
    """
    Integrate OAuth 2.1 authorization with the application.

    The OAuth routes are included before any protected route so discovery,
    registration and revocation stay reachable without a token.

    Args:
        app: The FastAPI application
        settings: Gateway settings
        provider: The upstream identity provider

    Returns:
        The bearer token validator to guard protected routes with

    Raises:
        ConfigurationError: If the discovery document cannot be built
    """
    metadata = build_metadata(settings)

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(create_auth_router(settings, metadata, provider))

    logger.info(
        f"OAuth 2.1 integration set up (registration {'disabled' if settings.dcr_disabled else 'enabled'}, "
        f"required scopes: {settings.required_scopes or 'none'})"
    )
    return BearerTokenValidator(provider, settings.required_scopes)
