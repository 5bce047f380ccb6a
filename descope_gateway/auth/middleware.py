"""
Bearer token validation for protected MCP routes.

The validator is a FastAPI dependency: it runs to completion before the
route handler body executes and hands the resulting ``Principal`` to the
handler as an ordinary argument.
"""
import logging
from typing import List, Optional, Protocol, Sequence

from fastapi import Request
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata

from .errors import AuthenticationError, AuthorizationError
from .provider import Principal

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Boundary to the hosted identity provider."""

    async def verify_token(self, token: str) -> Principal:
        ...

    async def register_client(self, metadata: OAuthClientMetadata) -> OAuthClientInformationFull:
        ...

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        ...


def extract_bearer_token(authorization: Optional[str], realm: str = "mcp") -> str:
    """
    Pull the token out of an ``Authorization: Bearer <token>`` header.

    Raises:
        AuthenticationError: If the header is absent or not a bearer credential
    """
    if not authorization:
        raise AuthenticationError.missing_credentials(realm)
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthenticationError("invalid_request", "Malformed Authorization header", realm=realm)
    return token


class BearerTokenValidator:
    """Dependency that authenticates the request and enforces required scopes."""

    def __init__(self, provider: IdentityProvider, required_scopes: Sequence[str] = (), realm: str = "mcp"):
        self.provider = provider
        self.required_scopes: List[str] = list(required_scopes)
        self.realm = realm

    async def __call__(self, request: Request) -> Principal:
        token = extract_bearer_token(request.headers.get("authorization"), self.realm)

        try:
            principal = await self.provider.verify_token(token)
        except AuthenticationError as e:
            e.realm = self.realm
            logger.warning(f"Rejected bearer token on {request.url.path}: {e.error_description}")
            raise

        if self.required_scopes and not principal.has_scope(self.required_scopes):
            missing = [s for s in self.required_scopes if s not in principal.scopes]
            logger.warning(f"Principal {principal.subject} denied access to {request.url.path} - missing scope: {missing}")
            raise AuthorizationError(self.required_scopes, realm=self.realm)

        logger.debug(f"Principal {principal.subject} authenticated for {request.url.path}")
        return principal
