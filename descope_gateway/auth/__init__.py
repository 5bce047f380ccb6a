"""
Authentication module for the Descope MCP gateway.

This module implements the OAuth 2.1 authorization surface of the gateway,
delegating token issuance and client storage to a Descope project.
"""

from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    GatewayError,
    ProtocolError,
    UpstreamUnavailableError,
)
from .integration import integrate_oauth
from .middleware import BearerTokenValidator
from .provider import DescopeProvider, Principal
from .settings import DescopeSettings, GatewaySettings

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "GatewayError",
    "ProtocolError",
    "UpstreamUnavailableError",
    "integrate_oauth",
    "BearerTokenValidator",
    "DescopeProvider",
    "Principal",
    "DescopeSettings",
    "GatewaySettings",
]
