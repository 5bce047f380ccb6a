"""
Streamable HTTP transport adapter for MCP.

Maps one inbound JSON-RPC message per HTTP request onto a registered method
handler and writes exactly one response for it. Each request is an
``Exchange`` that moves Idle -> Dispatching -> Responded; nothing is shared
between exchanges except the read-only method registry and, in stateful
mode, the session registry.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from mcp.types import (
    CONNECTION_CLOSED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)
from starlette import status

from ..auth.errors import TransportError
from ..auth.provider import Principal
from .session import DEFAULT_SESSION_TTL_SECONDS, SESSION_HEADER, SessionRegistry

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = -32001

RequestId = Union[str, int]


class ExchangeState(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    RESPONDED = "responded"


class Exchange:
    """One request/response exchange. Allows a single terminal write."""

    def __init__(self):
        self.state = ExchangeState.IDLE
        self.response: Optional[Response] = None

    @property
    def responded(self) -> bool:
        return self.state is ExchangeState.RESPONDED

    def dispatch(self) -> None:
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError(f"Cannot dispatch an exchange in state {self.state.value}")
        self.state = ExchangeState.DISPATCHING

    def respond(self, response: Response) -> bool:
        """Record the response unless one was already written."""
        if self.responded:
            logger.warning("Dropping a second response for the same request")
            return False
        self.response = response
        self.state = ExchangeState.RESPONDED
        return True


@dataclass(frozen=True)
class RequestContext:
    """Per-request values handed to method handlers."""
    principal: Optional[Principal]
    request_id: Optional[RequestId]
    session_id: Optional[str]
    exchange: Exchange

    def send_result(self, result: Any) -> bool:
        """Write the JSON-RPC result now; the handler may keep running afterwards."""
        return self.exchange.respond(
            JSONResponse(jsonrpc_result(self.request_id, result), headers=_session_headers(self.session_id))
        )


MethodHandler = Callable[[Dict[str, Any], RequestContext], Awaitable[Any]]


class MethodRegistry:
    """Registry of JSON-RPC method handlers, populated before the server starts."""

    def __init__(self):
        self._handlers: Dict[str, MethodHandler] = {}

    def register(self, method: str, handler: Optional[MethodHandler] = None):
        """Register ``handler`` for ``method``; usable as a decorator."""
        def decorator(func: MethodHandler) -> MethodHandler:
            if method in self._handlers:
                raise ValueError(f"Handler already registered for {method}")
            self._handlers[method] = func
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def get(self, method: str) -> Optional[MethodHandler]:
        return self._handlers.get(method)

    @property
    def methods(self) -> List[str]:
        return sorted(self._handlers)


def jsonrpc_result(request_id: Optional[RequestId], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": request_id}


def jsonrpc_error(request_id: Optional[RequestId], code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "error": error, "id": request_id}


def _session_headers(session_id: Optional[str]) -> Dict[str, str]:
    return {SESSION_HEADER: session_id} if session_id else {}


def _is_request_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def _correlation_id(message: Any) -> Optional[RequestId]:
    if isinstance(message, dict) and _is_request_id(message.get("id")):
        return message["id"]
    return None


class StreamableHTTPTransport:
    """
    Request/response bridge between HTTP and the method registry.

    Constructed and started by the composition root. In stateless mode no
    session id is generated and successive requests are unrelated.
    """

    def __init__(self, registry: MethodRegistry, stateless: bool = True, log_request_bodies: bool = False,
                 session_ttl: float = DEFAULT_SESSION_TTL_SECONDS):
        self.registry = registry
        self.stateless = stateless
        self.sessions: Optional[SessionRegistry] = None if stateless else SessionRegistry(ttl=session_ttl)
        self.log_request_bodies = log_request_bodies
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info(f"MCP transport started ({'stateless' if self.stateless else 'stateful'} mode)")

    async def close(self) -> None:
        self._running = False
        if self.sessions is not None:
            self.sessions.clear()
        logger.info("MCP transport closed")

    @staticmethod
    def _error(request_id: Optional[RequestId], code: int, message: str,
               status_code: int = status.HTTP_200_OK, session_id: Optional[str] = None) -> JSONResponse:
        return JSONResponse(
            jsonrpc_error(request_id, code, message),
            status_code=status_code,
            headers=_session_headers(session_id),
        )

    def _resolve_session(self, request: Request, method: str,
                         request_id: Optional[RequestId]) -> Tuple[Optional[str], Optional[Response]]:
        if self.sessions is None:
            return None, None
        if method == "initialize":
            return self.sessions.create(), None

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return None, self._error(request_id, INVALID_REQUEST,
                                     f"Bad Request: {SESSION_HEADER} header is required",
                                     status.HTTP_400_BAD_REQUEST)
        if not self.sessions.exists(session_id):
            return None, self._error(request_id, SESSION_NOT_FOUND, "Session not found",
                                     status.HTTP_404_NOT_FOUND)
        return session_id, None

    async def handle_post(self, request: Request, principal: Optional[Principal] = None) -> Response:
        """
        Handle one POSTed JSON-RPC message.

        Args:
            request: The inbound HTTP request
            principal: The authenticated principal for this request

        Returns:
            The single response for this request
        """
        exchange = Exchange()

        if not self._running:
            exchange.respond(self._error(None, CONNECTION_CLOSED, "Transport closed",
                                         status.HTTP_503_SERVICE_UNAVAILABLE))
            return exchange.response

        body = await request.body()
        try:
            message = json.loads(body)
        except (ValueError, RecursionError):
            logger.warning("Received MCP request with unparseable body")
            exchange.respond(self._error(None, PARSE_ERROR, "Parse error", status.HTTP_400_BAD_REQUEST))
            return exchange.response

        if self.log_request_bodies:
            logger.debug(f"Received MCP request: {json.dumps(message)}")
            logger.debug(f"Request header names: {sorted(request.headers.keys())}")

        request_id = _correlation_id(message)
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            exchange.respond(self._error(request_id, INVALID_REQUEST, "Invalid Request", status.HTTP_400_BAD_REQUEST))
            return exchange.response

        if "method" not in message:
            if "id" in message and ("result" in message or "error" in message):
                # A client reply to a server request; nothing to answer in stateless mode
                exchange.respond(Response(status_code=status.HTTP_202_ACCEPTED))
                return exchange.response
            exchange.respond(self._error(request_id, INVALID_REQUEST, "Invalid Request", status.HTTP_400_BAD_REQUEST))
            return exchange.response

        method = message["method"]
        is_notification = "id" not in message
        if not isinstance(method, str) or (not is_notification and request_id is None):
            exchange.respond(self._error(request_id, INVALID_REQUEST, "Invalid Request", status.HTTP_400_BAD_REQUEST))
            return exchange.response

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            exchange.respond(self._error(request_id, INVALID_PARAMS, "Invalid params"))
            return exchange.response

        session_id, failure = self._resolve_session(request, method, request_id)
        if failure is not None:
            exchange.respond(failure)
            return exchange.response

        context = RequestContext(principal=principal, request_id=request_id, session_id=session_id, exchange=exchange)
        exchange.dispatch()

        if is_notification:
            await self._run_notification(method, params, context)
            exchange.respond(Response(status_code=status.HTTP_202_ACCEPTED, headers=_session_headers(session_id)))
            return exchange.response

        handler = self.registry.get(method)
        if handler is None:
            logger.info(f"MCP method not found: {method}")
            exchange.respond(self._error(request_id, METHOD_NOT_FOUND, "Method not found", session_id=session_id))
            return exchange.response

        failed = True
        try:
            result = await handler(params, context)
        except TransportError as e:
            logger.warning(f"MCP method '{method}' failed: {e.code} {e.message}")
            outcome = jsonrpc_error(request_id, e.code, e.message, e.data)
        except Exception as e:
            logger.error(f"Error handling MCP request '{method}': {e}", exc_info=True)
            outcome = jsonrpc_error(request_id, INTERNAL_ERROR, "Internal error")
        else:
            failed = False
            outcome = jsonrpc_result(request_id, result)

        if failed and method == "initialize" and session_id is not None:
            self.sessions.end(session_id)
            session_id = None

        if exchange.responded:
            if failed:
                logger.warning(f"MCP method '{method}' failed after its response was sent; error not written")
        else:
            exchange.respond(JSONResponse(outcome, headers=_session_headers(session_id)))
        return exchange.response

    async def _run_notification(self, method: str, params: Dict[str, Any], context: RequestContext) -> None:
        handler = self.registry.get(method)
        if handler is None:
            logger.debug(f"Ignoring notification without handler: {method}")
            return
        try:
            await handler(params, context)
        except Exception as e:
            # Notifications have no response channel to report on
            logger.error(f"Error handling MCP notification '{method}': {e}", exc_info=True)

    async def handle_delete(self, request: Request) -> Response:
        """Terminate a session (stateful mode only)."""
        if self.sessions is None:
            return self._error(None, INVALID_REQUEST, "Method not allowed: transport is stateless",
                               status.HTTP_405_METHOD_NOT_ALLOWED)
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return self._error(None, INVALID_REQUEST, f"Bad Request: {SESSION_HEADER} header is required",
                               status.HTTP_400_BAD_REQUEST)
        if not self.sessions.end(session_id):
            return self._error(None, SESSION_NOT_FOUND, "Session not found", status.HTTP_404_NOT_FOUND)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
