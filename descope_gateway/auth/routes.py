"""
OAuth routes for the MCP authorization gateway.

This module implements the unauthenticated half of the OAuth 2.1 surface:
discovery (RFC 8414), dynamic client registration (RFC 7591), token
revocation (RFC 7009) and the authorization redirect to Descope.
"""
import logging
from typing import Any, Dict
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from mcp.shared.auth import OAuthClientMetadata
from pydantic import ValidationError
from starlette import status

from .errors import ProtocolError, RegistrationDisabledError, UpstreamUnavailableError
from .metadata import DISCOVERY_CORS_HEADERS, WELL_KNOWN_PATH, AuthorizationServerMetadata
from .middleware import IdentityProvider
from .settings import GatewaySettings

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

REVOCATION_HINTS = ("access_token", "refresh_token")


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def parse_client_metadata(body: Any) -> OAuthClientMetadata:
    """
    Validate a registration payload without contacting the identity provider.

    Raises:
        ProtocolError: ``invalid_client_metadata`` for any malformed payload
    """
    if not isinstance(body, dict):
        raise ProtocolError("invalid_client_metadata", "Registration payload must be a JSON object")

    redirect_uris = body.get("redirect_uris")
    if not isinstance(redirect_uris, list) or not redirect_uris:
        raise ProtocolError("invalid_client_metadata", "redirect_uris must be a non-empty array")

    try:
        metadata = OAuthClientMetadata.model_validate(body)
    except ValidationError as e:
        raise ProtocolError("invalid_client_metadata", _describe_validation_error(e))

    if metadata.grant_types and "authorization_code" not in metadata.grant_types:
        raise ProtocolError(
            "invalid_client_metadata",
            "Client must support 'authorization_code' grant type",
        )
    if metadata.response_types and "code" not in metadata.response_types:
        raise ProtocolError("invalid_client_metadata", "Client must support 'code' response type")
    return metadata


def create_auth_router(
    settings: GatewaySettings,
    metadata: AuthorizationServerMetadata,
    provider: IdentityProvider,
) -> APIRouter:
    """
    Build the router for the unauthenticated OAuth endpoints.

    Args:
        settings: Gateway settings
        metadata: The discovery document served at the well-known path
        provider: The upstream identity provider

    Returns:
        A router to include in the application ahead of protected routes
    """
    router = APIRouter(tags=["auth"])
    metadata_json = metadata.to_json()

    @router.get(WELL_KNOWN_PATH)
    async def authorization_server_metadata() -> JSONResponse:
        logger.info("OAuth metadata requested")
        return JSONResponse(metadata_json, headers={**DISCOVERY_CORS_HEADERS, "Cache-Control": "public, max-age=3600"})

    @router.options(WELL_KNOWN_PATH)
    async def authorization_server_metadata_preflight() -> Response:
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers=DISCOVERY_CORS_HEADERS)

    @router.post("/register")
    async def register_client(request: Request) -> JSONResponse:
        if settings.dcr_disabled:
            logger.info("Rejected registration request: dynamic client registration is disabled")
            raise RegistrationDisabledError()

        try:
            body = await request.json()
        except (ValueError, RecursionError):
            raise ProtocolError("invalid_client_metadata", "Request body must be valid JSON")

        client_metadata = parse_client_metadata(body)
        client_info = await provider.register_client(client_metadata)
        return JSONResponse(
            client_info.model_dump(mode="json", exclude_none=True),
            status_code=status.HTTP_201_CREATED,
            headers=NO_STORE,
        )

    @router.post("/revoke")
    async def revoke_token(request: Request) -> JSONResponse:
        params: Dict[str, Any]
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                params = await request.json()
            except (ValueError, RecursionError):
                raise ProtocolError("invalid_request", "Request body must be valid JSON")
            if not isinstance(params, dict):
                raise ProtocolError("invalid_request", "Request body must be a JSON object")
        else:
            params = dict(await request.form())

        token = params.get("token")
        if not isinstance(token, str) or not token:
            raise ProtocolError("invalid_request", "Missing token parameter")

        hint = params.get("token_type_hint")
        if hint not in REVOCATION_HINTS:
            hint = None

        try:
            await provider.revoke_token(token, hint)
        except UpstreamUnavailableError as e:
            # RFC 7009: the response must not reveal anything about the token
            logger.error(f"Token revocation was not forwarded: {e.error_description}")
        else:
            logger.info("Token revocation forwarded to identity provider")
        return JSONResponse({}, status_code=status.HTTP_200_OK, headers=NO_STORE)

    @router.get("/authorize")
    async def authorize(request: Request) -> RedirectResponse:
        params = request.query_params
        if params.get("response_type") != "code":
            raise ProtocolError("unsupported_response_type", "response_type must be 'code'")
        for name in ("client_id", "redirect_uri", "code_challenge"):
            if not params.get(name):
                raise ProtocolError("invalid_request", f"Missing {name} parameter")
        if params.get("code_challenge_method", "S256") != "S256":
            raise ProtocolError("invalid_request", "code_challenge_method must be S256")

        forwarded = dict(params)
        forwarded.setdefault("code_challenge_method", "S256")
        url = f"{settings.descope.authorize_url}?{urlencode(forwarded)}"
        logger.info(f"Redirecting authorization request for client {params['client_id']} to identity provider")
        return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)

    return router
