"""
Client disconnect middleware.

Cancels the in-flight request handler as soon as the ASGI server reports
``http.disconnect``. A cancelled MCP exchange never writes its response, and
any upstream call it was awaiting is abandoned.
"""
import asyncio
import logging
from contextlib import suppress

from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


class ClientDisconnectMiddleware:
    """Pure ASGI middleware; only ``http`` scopes are watched."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        disconnected = asyncio.Event()
        response_complete = False
        inbox: "asyncio.Queue[Message]" = asyncio.Queue()

        async def watch_client() -> None:
            # Relay every inbound message to the handler until the client leaves
            while True:
                message = await receive()
                await inbox.put(message)
                if message["type"] == "http.disconnect":
                    disconnected.set()
                    return

        async def send_while_connected(message: Message) -> None:
            nonlocal response_complete
            if disconnected.is_set():
                return
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                response_complete = True

        handler = asyncio.create_task(self.app(scope, inbox.get, send_while_connected))
        watcher = asyncio.create_task(watch_client())
        try:
            await asyncio.wait({handler, watcher}, return_when=asyncio.FIRST_COMPLETED)
            # Servers report a disconnect once the response is out; that is not an abort
            if not handler.done() and not response_complete:
                handler.cancel()
                with suppress(asyncio.CancelledError):
                    await handler
                logger.info(f"Request cancelled: client disconnected ({scope.get('method')} {scope.get('path')})")
                return
            await handler
        finally:
            handler.cancel()
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
