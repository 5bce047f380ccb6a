"""Tests for the bearer token validator."""
from typing import Dict, Optional

import pytest
from starlette.requests import Request

from descope_gateway.auth.errors import AuthenticationError, AuthorizationError, UpstreamUnavailableError
from descope_gateway.auth.middleware import BearerTokenValidator, extract_bearer_token


def make_request(authorization: Optional[str] = None) -> Request:
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    return Request({
        "type": "http",
        "method": "POST",
        "scheme": "https",
        "server": ("mcp.example.com", 443),
        "path": "/mcp",
        "query_string": b"",
        "headers": headers,
    })


class TestExtractBearerToken:
    def test_extracts_token(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer_token("bearer abc") == "abc"

    def test_missing_header(self):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer_token(None)

        error = exc_info.value
        assert error.status_code == 401
        assert error.error == "invalid_request"
        assert error.headers()["WWW-Authenticate"] == 'Bearer realm="mcp"'

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer ", "Bearer a b", "abc"])
    def test_malformed_header(self, header):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer_token(header)

        assert exc_info.value.error == "invalid_request"
        assert exc_info.value.headers()["WWW-Authenticate"].startswith("Bearer ")


class TestBearerTokenValidator:
    async def test_valid_token_yields_principal(self, provider):
        validator = BearerTokenValidator(provider)
        principal = await validator(make_request("Bearer good-token"))

        assert principal.subject == "user-123"
        assert principal.scopes == ["openid"]

    async def test_invalid_token(self, provider):
        validator = BearerTokenValidator(provider)
        with pytest.raises(AuthenticationError) as exc_info:
            await validator(make_request("Bearer forged"))

        error = exc_info.value
        assert error.status_code == 401
        assert error.error == "invalid_token"
        assert 'error="invalid_token"' in error.headers()["WWW-Authenticate"]

    async def test_expired_token(self, provider):
        provider.fail_token("old-token", AuthenticationError("invalid_token", "Token has expired"))
        validator = BearerTokenValidator(provider)
        with pytest.raises(AuthenticationError) as exc_info:
            await validator(make_request("Bearer old-token"))

        assert exc_info.value.error == "invalid_token"
        assert exc_info.value.error_description == "Token has expired"

    async def test_missing_required_scope(self, provider):
        validator = BearerTokenValidator(provider, required_scopes=["mcp:read"])
        with pytest.raises(AuthorizationError) as exc_info:
            await validator(make_request("Bearer good-token"))

        error = exc_info.value
        assert error.status_code == 403
        assert error.error == "insufficient_scope"
        assert 'scope="mcp:read"' in error.headers()["WWW-Authenticate"]

    async def test_all_required_scopes_present(self, provider):
        provider.add_token("scoped-token", scopes=["openid", "mcp:read", "mcp:write"])
        validator = BearerTokenValidator(provider, required_scopes=["mcp:read", "mcp:write"])

        principal = await validator(make_request("Bearer scoped-token"))
        assert principal.has_scope(["mcp:read", "mcp:write"])

    async def test_every_request_is_revalidated(self, provider):
        validator = BearerTokenValidator(provider)
        await validator(make_request("Bearer good-token"))
        await validator(make_request("Bearer good-token"))

        assert provider.verify_calls == ["good-token", "good-token"]

    async def test_missing_header_never_reaches_provider(self, provider):
        validator = BearerTokenValidator(provider)
        with pytest.raises(AuthenticationError):
            await validator(make_request())
        assert provider.verify_calls == []

    async def test_outage_is_not_reported_as_invalid_token(self, provider):
        provider.fail_token("good-token", UpstreamUnavailableError("Identity provider timed out"))
        validator = BearerTokenValidator(provider)
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await validator(make_request("Bearer good-token"))
        assert exc_info.value.status_code == 503

    async def test_realm_is_applied(self, provider):
        validator = BearerTokenValidator(provider, realm="weather")
        with pytest.raises(AuthenticationError) as exc_info:
            await validator(make_request("Bearer forged"))
        assert exc_info.value.headers()["WWW-Authenticate"].startswith('Bearer realm="weather"')


class TestProtectedRoute:
    def _post(self, client, headers: Dict[str, str]):
        return client.post("/mcp", json={"jsonrpc": "2.0", "method": "ping", "id": 1}, headers=headers)

    def test_missing_header(self, client):
        response = self._post(client, {})

        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Bearer")
        assert response.json()["error"] == "invalid_request"

    def test_invalid_token(self, client):
        response = self._post(client, {"Authorization": "Bearer forged"})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"

    def test_valid_token(self, client, auth_headers):
        response = self._post(client, auth_headers)

        assert response.status_code == 200
        assert response.json() == {"jsonrpc": "2.0", "result": {}, "id": 1}
