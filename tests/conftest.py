"""
Shared fixtures for the gateway tests.
"""
import json
import time
from typing import Any, Dict, List, Optional

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata

from descope_gateway.auth.errors import AuthenticationError
from descope_gateway.auth.provider import Principal
from descope_gateway.auth.settings import GatewaySettings
from descope_gateway.main import create_app

PROJECT_ID = "P2testproject"
MANAGEMENT_KEY = "K2management"
BASE_URL = "https://api.descope.test"
SERVER_URL = "https://mcp.example.com"
KID = "test-key-1"


class FakeIdentityProvider:
    """In-memory identity provider recording every call made to it."""

    def __init__(self):
        self.principals: Dict[str, Principal] = {}
        self.failures: Dict[str, Exception] = {}
        self.verify_calls: List[str] = []
        self.registered: List[OAuthClientMetadata] = []
        self.revoked: List[tuple] = []
        self.register_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None

    def add_token(self, token: str, scopes=("openid",), subject: str = "user-123") -> Principal:
        principal = Principal(
            token=token,
            client_id="client-abc",
            scopes=list(scopes),
            expires_at=int(time.time()) + 3600,
            subject=subject,
        )
        self.principals[token] = principal
        return principal

    def fail_token(self, token: str, error: Exception) -> None:
        self.failures[token] = error

    async def verify_token(self, token: str) -> Principal:
        self.verify_calls.append(token)
        if token in self.failures:
            raise self.failures[token]
        if token not in self.principals:
            raise AuthenticationError("invalid_token", "Invalid token")
        return self.principals[token]

    async def register_client(self, metadata: OAuthClientMetadata) -> OAuthClientInformationFull:
        if self.register_error is not None:
            raise self.register_error
        self.registered.append(metadata)
        info = metadata.model_dump(mode="json", exclude_none=True)
        info.update(client_id=f"client-{len(self.registered)}", client_secret="issued-secret")
        return OAuthClientInformationFull.model_validate(info)

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append((token, token_type_hint))


@pytest.fixture
def env() -> Dict[str, str]:
    return {
        "DESCOPE_PROJECT_ID": PROJECT_ID,
        "DESCOPE_MANAGEMENT_KEY": MANAGEMENT_KEY,
        "SERVER_URL": SERVER_URL,
        "DESCOPE_BASE_URL": BASE_URL,
    }


@pytest.fixture
def settings(env) -> GatewaySettings:
    return GatewaySettings.load_from_env(env)


@pytest.fixture
def provider() -> FakeIdentityProvider:
    provider = FakeIdentityProvider()
    provider.add_token("good-token")
    return provider


@pytest.fixture
def client(settings, provider):
    with TestClient(create_app(settings, provider=provider)) as client:
        yield client


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": "Bearer good-token"}


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key) -> Dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_private_key.public_key()))
    jwk.update(kid=KID, use="sig", alg="RS256")
    return {"keys": [jwk]}


@pytest.fixture
def make_token(rsa_private_key):
    """Mint RS256 tokens the way Descope signs session tokens."""

    def _make(claims: Optional[Dict[str, Any]] = None, expires_in: int = 3600,
              kid: str = KID, key=None) -> str:
        now = int(time.time())
        payload = {
            "sub": "user-123",
            "iat": now,
            "exp": now + expires_in,
            "azp": "client-abc",
            "scope": "openid profile",
        }
        payload.update(claims or {})
        return jwt.encode(payload, key or rsa_private_key, algorithm="RS256", headers={"kid": kid})

    return _make
