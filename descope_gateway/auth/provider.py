"""
Descope identity provider adapter for the MCP authorization gateway.

This module owns every call the gateway makes to the hosted identity
provider: JWKS retrieval for bearer token verification, dynamic client
registration through the management API, and token revocation. Nothing
here persists tokens or clients; the provider is the source of truth.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from mcp.server.auth.provider import AccessToken
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata
from pydantic import ConfigDict, Field

from .errors import AuthenticationError, ProtocolError, UpstreamUnavailableError
from .settings import DescopeSettings

logger = logging.getLogger(__name__)

JWKS_CACHE_SECONDS = 300
# Minimum gap between refetches triggered by an unknown kid
JWKS_REFRESH_INTERVAL_SECONDS = 30

# RFC 7591 section 3.2.2
REGISTRATION_ERROR_CODES = {
    "invalid_redirect_uri",
    "invalid_client_metadata",
    "invalid_software_statement",
    "unapproved_software_statement",
}


class Principal(AccessToken):
    """Validated identity attached to a single request."""
    model_config = ConfigDict(frozen=True)

    subject: str
    claims: Dict[str, Any] = Field(default_factory=dict)

    def has_scope(self, scope) -> bool:
        """Check if the principal was granted the specified scope(s)."""
        if isinstance(scope, str):
            return scope in self.scopes
        return all(s in self.scopes for s in scope)


def extract_scopes_from_claims(claims: Dict[str, Any]) -> List[str]:
    """
    Extract granted scopes from JWT claims.

    Descope puts OAuth scopes in ``scope`` and project level permissions in
    ``permissions``; some clients mint ``scp`` arrays instead.
    """
    scopes: List[str] = []

    if "scope" in claims:
        if isinstance(claims["scope"], str):
            scopes.extend(claims["scope"].split())
        elif isinstance(claims["scope"], list):
            scopes.extend([s for s in claims["scope"] if isinstance(s, str)])

    for claim in ("scp", "permissions"):
        if claim in claims and isinstance(claims[claim], list):
            scopes.extend([s for s in claims[claim] if isinstance(s, str)])

    # Keep first-seen order, drop duplicates
    return list(dict.fromkeys(scopes))


class DescopeProvider:
    """
    Adapter for a Descope project acting as the upstream authorization server.

    The HTTP client is injected so the composition root controls its
    lifecycle; every call is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        settings: DescopeSettings,
        http_client: httpx.AsyncClient,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.http_client = http_client
        self.timeout = timeout
        self._clock = clock
        # Signing keys only; tokens themselves are never cached
        self._jwks_keys: Dict[str, Any] = {}
        self._jwks_fetched_at: Optional[float] = None
        self._jwks_last_refresh: Optional[float] = None

    @property
    def _management_auth(self) -> str:
        return f"Bearer {self.settings.project_id}:{self.settings.management_key}"

    async def _get_jwks(self) -> Dict[str, Any]:
        """
        Fetch the JSON Web Key Set from Descope.

        Returns:
            The JWKS document

        Raises:
            UpstreamUnavailableError: If the key set cannot be retrieved
        """
        try:
            response = await self.http_client.get(self.settings.jwks_url, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.error(f"Timed out fetching JWKS from {self.settings.jwks_url}")
            raise UpstreamUnavailableError("Identity provider timed out")
        except httpx.RequestError as e:
            logger.error(f"Failed to fetch JWKS from {self.settings.jwks_url}: {e}")
            raise UpstreamUnavailableError("Identity provider is unreachable")

        if response.status_code != 200:
            logger.error(f"JWKS request returned HTTP {response.status_code}")
            raise UpstreamUnavailableError("Identity provider returned an error", status_code=502)
        try:
            jwks = response.json()
        except ValueError:
            logger.error("JWKS response was not valid JSON")
            raise UpstreamUnavailableError("Identity provider returned an invalid key set", status_code=502)
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            logger.error("JWKS response has no 'keys' array")
            raise UpstreamUnavailableError("Identity provider returned an invalid key set", status_code=502)
        return jwks

    async def _get_signing_key(self, kid: str):
        """Return the public key for ``kid``, refreshing the key set when stale or unknown."""
        now = self._clock()
        fresh = (
            self._jwks_fetched_at is not None
            and now - self._jwks_fetched_at < JWKS_CACHE_SECONDS
        )
        if fresh and kid in self._jwks_keys:
            return self._jwks_keys[kid]
        if (
            fresh
            and self._jwks_last_refresh is not None
            and now - self._jwks_last_refresh < JWKS_REFRESH_INTERVAL_SECONDS
        ):
            logger.debug(f"Unknown kid {kid}; key set refreshed recently, not refetching")
            return None

        self._jwks_last_refresh = now
        jwks = await self._get_jwks()
        keys = {}
        for key in jwks["keys"]:
            if not isinstance(key, dict) or not key.get("kid"):
                continue
            if key.get("kty") != "RSA":
                continue
            try:
                keys[key["kid"]] = RSAAlgorithm.from_jwk(key)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unusable JWK {key.get('kid')}: {e}")
        self._jwks_keys = keys
        self._jwks_fetched_at = self._clock()
        return keys.get(kid)

    async def verify_token(self, token: str) -> Principal:
        """
        Verify a bearer token issued by Descope.

        Args:
            token: The raw bearer token

        Returns:
            The principal built from the validated claims

        Raises:
            AuthenticationError: If the token is expired, malformed or forged
            UpstreamUnavailableError: If the signing keys cannot be fetched
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            logger.warning("Bearer token is not a well-formed JWT")
            raise AuthenticationError("invalid_token", "Invalid token")

        kid = header.get("kid")
        if not kid:
            logger.warning("JWT token missing key ID (kid) in header")
            raise AuthenticationError("invalid_token", "Token missing key ID")

        public_key = await self._get_signing_key(kid)
        if public_key is None:
            logger.warning(f"No matching key found for kid: {kid}")
            raise AuthenticationError("invalid_token", "Unable to verify token signature")

        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=["RS256"],
                audience=self.settings.audience,
                issuer=self.settings.issuer,
                options={
                    "require": ["exp", "sub"],
                    "verify_aud": bool(self.settings.audience),
                    "verify_iss": bool(self.settings.issuer),
                },
            )
        except jwt.ExpiredSignatureError:
            logger.warning("JWT token has expired")
            raise AuthenticationError("invalid_token", "Token has expired")
        except jwt.InvalidAudienceError:
            logger.warning("JWT token has invalid audience")
            raise AuthenticationError("invalid_token", "Invalid token audience")
        except jwt.InvalidIssuerError:
            logger.warning("JWT token has invalid issuer")
            raise AuthenticationError("invalid_token", "Invalid token issuer")
        except jwt.InvalidSignatureError:
            logger.warning("JWT token has invalid signature")
            raise AuthenticationError("invalid_token", "Invalid token signature")
        except jwt.InvalidTokenError as e:
            logger.warning(f"JWT token is invalid: {e}")
            raise AuthenticationError("invalid_token", "Invalid token")

        aud = claims.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else None
        return Principal(
            token=token,
            client_id=str(claims.get("azp") or claims.get("client_id") or aud or "unknown"),
            scopes=extract_scopes_from_claims(claims),
            expires_at=int(claims["exp"]),
            subject=str(claims["sub"]),
            claims=claims,
        )

    async def register_client(self, metadata: OAuthClientMetadata) -> OAuthClientInformationFull:
        """
        Create a third-party application in Descope for a registering client.

        Args:
            metadata: Validated RFC 7591 client metadata

        Returns:
            The issued client information; ``client_secret`` only for confidential clients

        Raises:
            ProtocolError: If Descope rejects the metadata
            UpstreamUnavailableError: If Descope cannot be reached or fails
        """
        scopes = metadata.scope.split() if metadata.scope else []
        payload = {
            "name": metadata.client_name or "MCP Client",
            "description": f"Dynamically registered MCP client {metadata.client_name or ''}".strip(),
            "logo": str(metadata.logo_uri) if metadata.logo_uri else "",
            "approvedCallbackUrls": [str(uri) for uri in metadata.redirect_uris],
            "permissionsScopes": [{"name": s, "description": s} for s in scopes],
        }

        try:
            response = await self.http_client.post(
                self.settings.create_app_url,
                json=payload,
                headers={"Authorization": self._management_auth},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            logger.error("Timed out registering client with Descope")
            raise UpstreamUnavailableError("Identity provider timed out")
        except httpx.RequestError as e:
            logger.error(f"Client registration request error: {e}")
            raise UpstreamUnavailableError("Identity provider is unreachable")

        if response.status_code in (401, 403):
            logger.error(f"Descope rejected the management key (HTTP {response.status_code})")
            raise UpstreamUnavailableError("Identity provider rejected the registration request", status_code=502)
        if 400 <= response.status_code < 500:
            error, description = self._parse_upstream_error(response)
            logger.warning(f"Descope rejected client metadata: {error} - {description}")
            raise ProtocolError(error, description)
        if response.status_code >= 300:
            logger.error(f"Client registration failed with HTTP {response.status_code}")
            raise UpstreamUnavailableError("Identity provider failed to register the client", status_code=502)

        try:
            data = response.json()
            client_id = data["id"]
        except (ValueError, KeyError, TypeError):
            logger.error("Client registration response is missing the application id")
            raise UpstreamUnavailableError("Identity provider returned an invalid registration", status_code=502)
        if not client_id:
            raise UpstreamUnavailableError("Identity provider returned an invalid registration", status_code=502)

        confidential = metadata.token_endpoint_auth_method != "none"
        info = metadata.model_dump(mode="json", exclude_none=True)
        info.update(
            client_id=str(client_id),
            client_id_issued_at=int(time.time()),
        )
        if confidential:
            info["client_secret"] = data.get("cleartext")
            info["client_secret_expires_at"] = 0
        logger.info(f"Registered client with ID {client_id}")
        return OAuthClientInformationFull.model_validate(info)

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """
        Forward an RFC 7009 revocation request to Descope.

        Raises:
            UpstreamUnavailableError: If Descope cannot be reached
        """
        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        try:
            response = await self.http_client.post(
                self.settings.revoke_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            logger.error("Timed out revoking token with Descope")
            raise UpstreamUnavailableError("Identity provider timed out")
        except httpx.RequestError as e:
            logger.error(f"Token revocation request error: {e}")
            raise UpstreamUnavailableError("Identity provider is unreachable")

        if response.status_code >= 400:
            # Unknown or already revoked tokens are not an error for the caller
            logger.info(f"Descope answered revocation with HTTP {response.status_code}")

    @staticmethod
    def _parse_upstream_error(response: httpx.Response):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error = body.get("error")
        if error not in REGISTRATION_ERROR_CODES:
            error = "invalid_client_metadata"
        description = (
            body.get("error_description")
            or body.get("errorDescription")
            or body.get("errorMessage")
            or "Client metadata rejected by identity provider"
        )
        return error, str(description)
