"""
MCP streamable HTTP transport.
"""
from .adapter import (
    Exchange,
    ExchangeState,
    MethodRegistry,
    RequestContext,
    StreamableHTTPTransport,
)
from .disconnect import ClientDisconnectMiddleware
from .session import SESSION_HEADER, SessionRegistry

__all__ = [
    "Exchange",
    "ExchangeState",
    "MethodRegistry",
    "RequestContext",
    "StreamableHTTPTransport",
    "ClientDisconnectMiddleware",
    "SESSION_HEADER",
    "SessionRegistry",
]
