"""
Composition root for the Descope MCP authorization gateway.

Builds the FastAPI application: OAuth discovery, registration, revocation
and authorization redirect routes, the bearer-token guarded MCP endpoint,
and the health check. Run with ``descope-gateway`` or
``uvicorn --factory descope_gateway.main:create_app_from_env``.
"""
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from mcp.types import INTERNAL_ERROR
from starlette import status
from starlette.routing import Route

from . import __version__
from .auth.errors import ConfigurationError
from .auth.integration import integrate_oauth
from .auth.metadata import WELL_KNOWN_PATH
from .auth.middleware import IdentityProvider
from .auth.provider import DescopeProvider, Principal
from .auth.settings import REQUIRED_ENV_VARS, GatewaySettings
from .transport.adapter import MethodRegistry, StreamableHTTPTransport, jsonrpc_error
from .transport.disconnect import ClientDisconnectMiddleware
from .transport.session import SESSION_HEADER
from .weather import WeatherTools, register_weather_methods

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s.%(msecs)03d - PID:%(process)d - %(filename)s:%(lineno)d - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _log_routes(app: FastAPI) -> None:
    logger.info("Registered routes:")
    for route in app.routes:
        if isinstance(route, Route) and route.methods:
            logger.info(f"  {route.path} [{', '.join(sorted(route.methods))}]")


def create_app(
    settings: GatewaySettings,
    provider: Optional[IdentityProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[MethodRegistry] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Gateway settings
        provider: Identity provider; defaults to Descope over ``http_client``
        http_client: Shared upstream HTTP client; created and owned here when omitted
        registry: MCP method registry; defaults to the weather tools

    Returns:
        The FastAPI application, not yet started

    Raises:
        ConfigurationError: If the discovery document cannot be built
    """
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.upstream_timeout)
    if provider is None:
        provider = DescopeProvider(settings.descope, http_client, timeout=settings.upstream_timeout)
    if registry is None:
        registry = register_weather_methods(
            MethodRegistry(),
            WeatherTools(http_client, settings.nws_api_base, timeout=settings.upstream_timeout),
        )

    transport = StreamableHTTPTransport(
        registry,
        stateless=settings.stateless,
        log_request_bodies=settings.log_request_bodies,
        session_ttl=settings.session_ttl,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application startup. Initializing...")
        await transport.start()
        _log_routes(app)
        logger.info(f"MCP endpoint: {settings.server_url}{settings.mcp_path}")
        logger.info(f"OAuth metadata: {settings.server_url}{WELL_KNOWN_PATH}")

        yield

        logger.info("Application shutdown. Cleaning up...")
        await transport.close()
        if owns_client:
            await http_client.aclose()
        logger.info("Cleanup complete.")

    app = FastAPI(
        title="Descope MCP Authorization Gateway",
        description="OAuth 2.1 authorization surface and streamable HTTP transport for an MCP server",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(ClientDisconnectMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", SESSION_HEADER, "Mcp-Protocol-Version"],
        expose_headers=[SESSION_HEADER, "WWW-Authenticate"],
    )

    # OAuth routes are registered first so they never sit behind the bearer guard
    validator = integrate_oauth(app, settings, provider)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": _utc_timestamp()}

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {
            "message": "Weather MCP Server is running",
            "endpoints": {
                "mcp": settings.mcp_path,
                "health": "/health",
                "oauth_metadata": WELL_KNOWN_PATH,
            },
            "environment": {
                "hasDescopeProjectId": bool(settings.descope.project_id),
                "hasDescopeManagementKey": bool(settings.descope.management_key),
                "serverUrl": settings.server_url,
            },
        }

    @app.post(settings.mcp_path)
    async def mcp_post(request: Request, principal: Principal = Depends(validator)) -> Response:
        try:
            return await transport.handle_post(request, principal)
        except Exception as e:
            # Nothing has been written for this request yet
            logger.error(f"Error handling MCP request: {e}", exc_info=True)
            return JSONResponse(
                jsonrpc_error(None, INTERNAL_ERROR, "Internal server error"),
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

    @app.get(settings.mcp_path)
    async def mcp_get(principal: Principal = Depends(validator)) -> Dict[str, Any]:
        logger.info(f"Received GET request to {settings.mcp_path}")
        return {
            "message": "MCP endpoint is available. Use POST with JSON-RPC 2.0 format.",
            "server": "weather-mcp-server",
            "version": __version__,
        }

    @app.delete(settings.mcp_path)
    async def mcp_delete(request: Request, principal: Principal = Depends(validator)) -> Response:
        return await transport.handle_delete(request)

    return app


def create_app_from_env() -> FastAPI:
    """Application factory reading settings from the process environment."""
    load_dotenv()
    settings = GatewaySettings.load_from_env(dict(os.environ))
    return create_app(settings)


def main() -> None:
    load_dotenv()
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    logger.info("Environment variables loaded:")
    for name in REQUIRED_ENV_VARS:
        logger.info(f"- {name}: {'Set' if os.environ.get(name) else 'Missing'}")

    try:
        settings = GatewaySettings.load_from_env(dict(os.environ))
    except ConfigurationError as e:
        if e.missing:
            logger.error(f"Missing required environment variables: {e.missing}")
            logger.error("Please check your .env file and ensure all required variables are set.")
        else:
            logger.error(f"Invalid configuration: {e.error_description}")
        sys.exit(1)

    logger.info(f"Server URL: {settings.server_url}")
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
