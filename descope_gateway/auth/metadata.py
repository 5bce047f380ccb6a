"""
OAuth 2.0 Authorization Server Metadata (RFC 8414) for the gateway.
"""
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .errors import ConfigurationError
from .settings import GatewaySettings

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"

DISCOVERY_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class AuthorizationServerMetadata(BaseModel):
    """Discovery document, built once at startup and served verbatim."""
    model_config = ConfigDict(frozen=True)

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    revocation_endpoint: str
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    code_challenge_methods_supported: List[str] = ["S256"]
    token_endpoint_auth_methods_supported: List[str] = ["client_secret_post", "none"]
    revocation_endpoint_auth_methods_supported: List[str] = ["client_secret_post", "none"]
    scopes_supported: List[str] = []

    def to_json(self) -> dict:
        return self.model_dump(exclude_none=True)


def build_metadata(settings: GatewaySettings) -> AuthorizationServerMetadata:
    """
    Build the discovery document from settings.

    Args:
        settings: Gateway settings

    Returns:
        The immutable metadata document

    Raises:
        ConfigurationError: If the issuer or an endpoint is missing
    """
    # Every endpoint is derived from one of these two base URLs
    bases = {"SERVER_URL": settings.server_url, "DESCOPE_BASE_URL": settings.descope.base_url}
    invalid = [name for name, value in bases.items() if not value or not value.startswith(("http://", "https://"))]
    if invalid:
        raise ConfigurationError(
            error="invalid_configuration",
            error_description=f"Authorization server metadata is incomplete: {', '.join(invalid)} not set",
            missing=invalid,
        )

    endpoints = {
        "issuer": settings.server_url,
        "authorization_endpoint": settings.authorization_url,
        "token_endpoint": settings.descope.token_url,
        "revocation_endpoint": settings.revocation_url,
    }
    metadata = AuthorizationServerMetadata(
        registration_endpoint=None if settings.dcr_disabled else settings.registration_url,
        scopes_supported=list(settings.supported_scopes),
        **endpoints,
    )
    logger.info(f"Authorization server metadata built for issuer {metadata.issuer}")
    return metadata
