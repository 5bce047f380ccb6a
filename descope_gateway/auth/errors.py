"""
Error taxonomy for the authorization gateway.

Every error carries an OAuth-style machine readable ``error`` code and a
human readable ``error_description``. The HTTP mapping lives with the
exception so that route handlers and exception handlers agree on it.
"""
from typing import Dict, List, Optional


class GatewayError(Exception):
    """Base class for errors that are converted into OAuth-shaped responses."""

    status_code: int = 400

    def __init__(self, error: str, error_description: str = ""):
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description

    def to_body(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.error_description:
            body["error_description"] = self.error_description
        return body

    def headers(self) -> Dict[str, str]:
        return {"Cache-Control": "no-store"}


class ConfigurationError(GatewayError):
    """Missing or invalid settings. Fatal at startup."""

    status_code = 500

    def __init__(self, error: str, error_description: str = "", missing: Optional[List[str]] = None):
        super().__init__(error, error_description)
        self.missing = missing or []


class ProtocolError(GatewayError):
    """Malformed OAuth request from the caller."""

    status_code = 400


class RegistrationDisabledError(GatewayError):
    """Dynamic client registration is switched off."""

    status_code = 404

    def __init__(self):
        super().__init__("not_found", "Dynamic client registration is disabled")


class AuthenticationError(GatewayError):
    """Missing, expired or invalid bearer token."""

    status_code = 401

    def __init__(self, error: str = "invalid_token", error_description: str = "",
                 realm: str = "mcp", bare_challenge: bool = False):
        super().__init__(error, error_description)
        self.realm = realm
        self.bare_challenge = bare_challenge

    @classmethod
    def missing_credentials(cls, realm: str = "mcp") -> "AuthenticationError":
        return cls("invalid_request", "Missing bearer token", realm=realm, bare_challenge=True)

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        # RFC 6750 section 3.1: no error code when the request carried no credentials
        if self.bare_challenge:
            headers["WWW-Authenticate"] = f'Bearer realm="{self.realm}"'
        else:
            headers["WWW-Authenticate"] = (
                f'Bearer realm="{self.realm}", error="{self.error}", '
                f'error_description="{self.error_description}"'
            )
        return headers


class AuthorizationError(GatewayError):
    """Valid token that lacks a required scope."""

    status_code = 403

    def __init__(self, required_scopes: List[str], realm: str = "mcp"):
        scope = " ".join(required_scopes)
        super().__init__("insufficient_scope", f"Required scope: {scope}")
        self.required_scopes = list(required_scopes)
        self.realm = realm

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["WWW-Authenticate"] = (
            f'Bearer realm="{self.realm}", error="insufficient_scope", '
            f'scope="{" ".join(self.required_scopes)}"'
        )
        return headers


class UpstreamUnavailableError(GatewayError):
    """The identity provider could not be reached or answered garbage."""

    def __init__(self, error_description: str, status_code: int = 503):
        error = "temporarily_unavailable" if status_code == 503 else "server_error"
        super().__init__(error, error_description)
        self.status_code = status_code


class TransportError(Exception):
    """A JSON-RPC level failure raised by a method handler."""

    def __init__(self, code: int, message: str, data: Optional[object] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
