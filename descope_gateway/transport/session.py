"""
Session tracking for the stateful mode of the streamable HTTP transport.
"""
import logging
import secrets
import time
from typing import Callable, Dict

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"

DEFAULT_SESSION_TTL_SECONDS = 1800.0


class SessionRegistry:
    """
    Session ids minted on ``initialize``. Owned by one transport instance.

    Each id keeps its last-seen time; ids idle for longer than ``ttl``
    seconds are dropped the next time the registry is touched, so clients
    that never send ``DELETE`` do not accumulate.
    """

    def __init__(self, ttl: float = DEFAULT_SESSION_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, float] = {}

    def _expire(self, now: float) -> None:
        expired = [sid for sid, seen in self._sessions.items() if now - seen >= self.ttl]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Expired {len(expired)} idle MCP session(s)")

    def create(self) -> str:
        now = self._clock()
        self._expire(now)
        session_id = secrets.token_hex(16)
        self._sessions[session_id] = now
        logger.info(f"Created MCP session {session_id[:8]}...")
        return session_id

    def exists(self, session_id: str) -> bool:
        """Check a session id and refresh its last-seen time."""
        now = self._clock()
        self._expire(now)
        if session_id not in self._sessions:
            return False
        self._sessions[session_id] = now
        return True

    def end(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        logger.info(f"Ended MCP session {session_id[:8]}...")
        return True

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
